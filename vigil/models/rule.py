"""ORM models for notification rules, their actions, and action execution history."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from vigil.models.base import Base


class Rule(Base):
    """
    Operator-defined notification rule.

    scope: "global" or "repository:<id>"; repository rules replace global ones.
    trigger_type: scan_completed, vulnerability_threshold, upload_in_progress, upload_failed.
    """

    __tablename__ = "rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(512), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(String(128), nullable=False)
    trigger_payload = Column(JSONB, nullable=True)
    scope = Column(String(128), nullable=False, default="global", index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    actions = relationship(
        "RuleAction",
        back_populates="rule",
        order_by="RuleAction.id",
        cascade="all, delete-orphan",
    )


class RuleAction(Base):
    """Side effect executed when its rule matches: email, chat, or webhook."""

    __tablename__ = "rule_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(
        Integer,
        ForeignKey("rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action_type = Column(String(64), nullable=False)
    action_payload = Column(JSONB, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    rule = relationship("Rule", back_populates="actions")


class ActionExecution(Base):
    """Audit row for one executed rule action (succeeded, failed, or skipped)."""

    __tablename__ = "action_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False)
    rule_action_id = Column(
        Integer,
        ForeignKey("rule_actions.id", ondelete="CASCADE"),
        nullable=False,
    )
    scan_id = Column(
        Integer,
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(32), nullable=False)
    result_payload = Column(JSONB, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
