"""Initial schema: repositories, scans, results, mappings, rules, queue.

Revision ID: 20261019000000
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _jsonb(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=1024), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=True),
        sa.Column("default_branch", sa.String(length=255), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "notification_settings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("repository_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=64), nullable=False),
        _jsonb("emails"),
        _jsonb("slack_channels"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(["repository_id"], ["repositories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_notification_settings_repository_id"),
        "notification_settings",
        ["repository_id"],
        unique=False,
    )

    op.create_table(
        "scans",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("repository_id", sa.Integer(), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("provider_code", sa.String(length=64), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("vulnerability_count", sa.Integer(), nullable=False, server_default="0"),
        _jsonb("raw_summary"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'uploaded', 'queued', 'running', 'completed', 'failed', 'timeout')",
            name="ck_scans_status",
        ),
        sa.ForeignKeyConstraint(["repository_id"], ["repositories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_scans_repository_id"), "scans", ["repository_id"], unique=False)
    op.create_index(op.f("ix_scans_status"), "scans", ["status"], unique=False)

    op.create_table(
        "files_in_scan",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_id", sa.Integer(), nullable=False),
        sa.Column("file_name", sa.String(length=1024), nullable=False),
        sa.Column("file_path", sa.String(length=2048), nullable=False),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="uploaded"),
        _created_at(),
        sa.ForeignKeyConstraint(["scan_id"], ["scans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_files_in_scan_scan_id"), "files_in_scan", ["scan_id"], unique=False)

    op.create_table(
        "scan_results",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("vulnerability_count", sa.Integer(), nullable=False, server_default="0"),
        _jsonb("summary_json"),
        _created_at(),
        sa.ForeignKeyConstraint(["scan_id"], ["scans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scan_id"),
    )

    op.create_table(
        "file_scan_results",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("file_id", sa.Integer(), nullable=False),
        sa.Column("scan_result_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        _jsonb("raw_payload"),
        _created_at(),
        sa.ForeignKeyConstraint(["file_id"], ["files_in_scan.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["scan_result_id"], ["scan_results.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_file_scan_results_file_id"), "file_scan_results", ["file_id"], unique=False
    )
    op.create_index(
        op.f("ix_file_scan_results_scan_result_id"),
        "file_scan_results",
        ["scan_result_id"],
        unique=False,
    )

    op.create_table(
        "vulnerabilities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=1024), nullable=False),
        sa.Column("cve", sa.String(length=128), nullable=True),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("package_name", sa.String(length=1024), nullable=True),
        sa.Column("package_version", sa.String(length=256), nullable=True),
        sa.Column("ecosystem", sa.String(length=128), nullable=True),
        _jsonb("references"),
        _jsonb("package_metadata"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ignored", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(["scan_id"], ["scans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_vulnerabilities_scan_id"), "vulnerabilities", ["scan_id"], unique=False)
    op.create_index(op.f("ix_vulnerabilities_cve"), "vulnerabilities", ["cve"], unique=False)

    op.create_table(
        "external_mappings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider_code", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("external_id", sa.String(length=1024), nullable=False),
        sa.Column("linked_entity_type", sa.String(length=128), nullable=False),
        sa.Column("linked_entity_id", sa.String(length=255), nullable=False),
        _jsonb("raw_payload"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider_code",
            "type",
            "external_id",
            name="uq_external_mappings_provider_type_external",
        ),
    )
    op.create_index(
        "uq_external_mappings_ci_upload_linked",
        "external_mappings",
        ["provider_code", "type", "linked_entity_type", "linked_entity_id"],
        unique=True,
        postgresql_where=sa.text("type = 'ci_upload'"),
    )

    op.create_table(
        "rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("trigger_type", sa.String(length=128), nullable=False),
        _jsonb("trigger_payload"),
        sa.Column("scope", sa.String(length=128), nullable=False, server_default="global"),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_rules_scope"), "rules", ["scope"], unique=False)

    op.create_table(
        "rule_actions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        _jsonb("action_payload"),
        _created_at(),
        sa.ForeignKeyConstraint(["rule_id"], ["rules.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_rule_actions_rule_id"), "rule_actions", ["rule_id"], unique=False)

    op.create_table(
        "action_executions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=False),
        sa.Column("rule_action_id", sa.Integer(), nullable=False),
        sa.Column("scan_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        _jsonb("result_payload"),
        _created_at(),
        sa.ForeignKeyConstraint(["rule_id"], ["rules.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rule_action_id"], ["rule_actions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["scan_id"], ["scans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_action_executions_scan_id"), "action_executions", ["scan_id"], unique=False
    )

    op.create_table(
        "queued_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        _jsonb("payload", nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column(
            "available_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_queued_messages_due", "queued_messages", ["status", "available_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_queued_messages_due", table_name="queued_messages")
    op.drop_table("queued_messages")
    op.drop_index(op.f("ix_action_executions_scan_id"), table_name="action_executions")
    op.drop_table("action_executions")
    op.drop_index(op.f("ix_rule_actions_rule_id"), table_name="rule_actions")
    op.drop_table("rule_actions")
    op.drop_index(op.f("ix_rules_scope"), table_name="rules")
    op.drop_table("rules")
    op.drop_index("uq_external_mappings_ci_upload_linked", table_name="external_mappings")
    op.drop_table("external_mappings")
    op.drop_index(op.f("ix_vulnerabilities_cve"), table_name="vulnerabilities")
    op.drop_index(op.f("ix_vulnerabilities_scan_id"), table_name="vulnerabilities")
    op.drop_table("vulnerabilities")
    op.drop_index(op.f("ix_file_scan_results_scan_result_id"), table_name="file_scan_results")
    op.drop_index(op.f("ix_file_scan_results_file_id"), table_name="file_scan_results")
    op.drop_table("file_scan_results")
    op.drop_table("scan_results")
    op.drop_index(op.f("ix_files_in_scan_scan_id"), table_name="files_in_scan")
    op.drop_table("files_in_scan")
    op.drop_index(op.f("ix_scans_status"), table_name="scans")
    op.drop_index(op.f("ix_scans_repository_id"), table_name="scans")
    op.drop_table("scans")
    op.drop_index(
        op.f("ix_notification_settings_repository_id"), table_name="notification_settings"
    )
    op.drop_table("notification_settings")
    op.drop_table("repositories")
