"""ORM model backing the durable message queue used by the event channel."""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from vigil.models.base import Base


class QueuedMessage(Base):
    """
    One queued message. Workers claim rows whose available_at has passed.

    status: pending -> processing -> done | failed
    """

    __tablename__ = "queued_messages"
    __table_args__ = (
        Index("ix_queued_messages_due", "status", "available_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(64), nullable=False)
    payload = Column(JSONB, nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    available_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
