"""
Queue worker entrypoint. Runs until interrupted:

  python -m vigil.worker

Start more than one process to scale out; rows are claimed with SKIP LOCKED.
"""

import logging
import sys
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

import httpx
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vigil.core.config import get_settings
from vigil.core.database import SessionLocal
from vigil.services.providers.debricked import DebrickedAuthService
from vigil.workers.dispatcher import MessageDispatcher, build_handlers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def _run_batch(dispatcher: MessageDispatcher) -> None:
    try:
        processed = dispatcher.run_once()
        if processed:
            logger.info("Processed queued messages: count=%s", processed)
    except Exception as e:
        logger.exception("Dispatcher batch failed: %s", e)


def main() -> int:
    """Poll the queue every WORKER_INTERVAL_SEC and dispatch due messages."""
    settings = get_settings()
    http_client = httpx.Client(timeout=settings.DEBRICKED_REQUEST_TIMEOUT_SEC)
    auth = DebrickedAuthService(settings, http_client)
    dispatcher = MessageDispatcher(
        SessionLocal,
        lambda session: build_handlers(session, settings, http_client, auth),
        batch_size=settings.WORKER_BATCH_SIZE,
        claim_timeout=timedelta(seconds=settings.WORKER_CLAIM_TIMEOUT_SEC),
    )

    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        func=lambda: _run_batch(dispatcher),
        trigger=IntervalTrigger(seconds=settings.WORKER_INTERVAL_SEC),
        id="queue_dispatcher",
        name="Dispatch due queued messages",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Worker started (interval=%ss, batch=%s)", settings.WORKER_INTERVAL_SEC, settings.WORKER_BATCH_SIZE)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Worker stopping")
    finally:
        http_client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
