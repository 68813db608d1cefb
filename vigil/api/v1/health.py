"""Health check: database connectivity and queue backlog."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vigil.core.config import settings
from vigil.core.database import check_db_connected, get_db
from vigil.models import QueuedMessage
from vigil.schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def _pending_messages(db: Session) -> int | None:
    try:
        return db.query(QueuedMessage).filter(QueuedMessage.status == "pending").count()
    except SQLAlchemyError:
        logger.warning("Could not count pending queue messages")
        return None


@router.get("/", response_model=HealthResponse)
def get_health(db: Session = Depends(get_db)) -> HealthResponse:
    """
    Service status for load balancers and monitoring.

    A growing queue_pending means no worker is consuming the queue.
    """
    connected = check_db_connected(db)
    return HealthResponse(
        status="ok",
        environment=settings.APP_ENV,
        database="connected" if connected else "disconnected",
        queue_pending=_pending_messages(db) if connected else None,
    )
