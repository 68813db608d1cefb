"""ORM models for scanned repositories and their notification settings."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from vigil.models.base import Base


class Repository(Base):
    """A source repository whose dependency files are scanned."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(1024), nullable=False)
    url = Column(String(2048), nullable=True)
    default_branch = Column(String(255), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    notification_settings = relationship(
        "NotificationSetting",
        back_populates="repository",
        cascade="all, delete-orphan",
    )


class NotificationSetting(Base):
    """
    Per-repository notification recipients.

    emails: list of addresses for email actions.
    slack_channels: list of channel names for chat actions.
    """

    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(
        Integer,
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    channel = Column(String(64), nullable=False, default="email")
    emails = Column(JSONB, nullable=True)
    slack_channels = Column(JSONB, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    repository = relationship("Repository", back_populates="notification_settings")
