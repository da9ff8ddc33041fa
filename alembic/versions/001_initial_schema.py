"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""

import uuid
from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    ]


def _timestamp_indexes(table: str) -> None:
    op.create_index(op.f(f"ix_{table}_created_at"), table, ["created_at"], unique=False)
    op.create_index(op.f(f"ix_{table}_updated_at"), table, ["updated_at"], unique=False)


STATUS_MAP = {
    "draft": "To Do",
    "under_review": "In Review",
    "approved": "Done",
    "rejected": "Closed",
}
PRIORITY_MAP = {
    "critical": "Highest",
    "high": "High",
    "medium": "Medium",
    "low": "Low",
}
DESCRIPTION_SECTIONS = {
    "heading": "Problem Statement",
    "sections": [
        {"field": "businessImpact", "heading": "Business Impact"},
        {"field": "budget", "heading": "Budget", "format": "currency"},
    ],
}

# Seeded field mapping rules, frozen at this revision
DEFAULT_RULES = [
    (1, "title", "summary", "bidirectional", "identity", None, False, None, True, True),
    (
        2,
        "problemStatement",
        "description",
        "bidirectional",
        "brd_description",
        DESCRIPTION_SECTIONS,
        False,
        None,
        False,
        True,
    ),
    (
        3,
        "status",
        "status",
        "bidirectional",
        "enum_remap",
        {"mapping": STATUS_MAP, "reverse_mapping": {"In Progress": "under_review"}},
        False,
        None,
        True,
        True,
    ),
    (
        4,
        "priority",
        "priority",
        "bidirectional",
        "enum_remap",
        {"mapping": PRIORITY_MAP, "reverse_mapping": {"Lowest": "low"}},
        False,
        "medium",
        False,
        True,
    ),
    (5, "labels", "labels", "bidirectional", "identity", None, False, None, False, True),
    (6, "title", "customfield_10011", "brd_to_jira", "identity", None, True, None, False, True),
    (7, "budget", "customfield_10014", "brd_to_jira", "story_points", None, True, None, False, False),
]


def upgrade() -> None:
    # Create connections table
    op.create_table(
        "connections",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("remote_site_id", sa.String(), nullable=False),
        sa.Column("site_url", sa.String(), nullable=True),
        sa.Column("site_name", sa.String(), nullable=True),
        sa.Column("access_token_enc", sa.Text(), nullable=False),
        sa.Column("refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("requires_reauth", sa.Boolean(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_connections_id"), "connections", ["id"], unique=False)
    op.create_index(op.f("ix_connections_user_id"), "connections", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_connections_remote_site_id"), "connections", ["remote_site_id"], unique=False
    )
    op.create_index(
        op.f("ix_connections_is_active"), "connections", ["is_active"], unique=False
    )
    op.create_index(
        "idx_connection_user_site", "connections", ["user_id", "remote_site_id"], unique=False
    )
    _timestamp_indexes("connections")

    # Create oauth_states table
    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("state"),
    )
    op.create_index(
        op.f("ix_oauth_states_expires_at"), "oauth_states", ["expires_at"], unique=False
    )
    op.create_index(
        op.f("ix_oauth_states_created_at"), "oauth_states", ["created_at"], unique=False
    )

    # Create webhook_registrations table
    op.create_table(
        "webhook_registrations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("remote_webhook_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("events", sa.JSON(), nullable=False),
        sa.Column("jql", sa.String(), nullable=True),
        sa.Column("secret_enc", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["connection_id"], ["connections.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_webhook_registrations_id"), "webhook_registrations", ["id"], unique=False
    )
    op.create_index(
        op.f("ix_webhook_registrations_connection_id"),
        "webhook_registrations",
        ["connection_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_webhook_registrations_is_active"),
        "webhook_registrations",
        ["is_active"],
        unique=False,
    )
    _timestamp_indexes("webhook_registrations")

    # Create brds table
    op.create_table(
        "brds",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("problem_statement", sa.Text(), nullable=True),
        sa.Column("business_impact", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("priority", sa.String(length=32), nullable=False),
        sa.Column("budget", sa.Numeric(14, 2), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_brds_id"), "brds", ["id"], unique=False)
    op.create_index(op.f("ix_brds_status"), "brds", ["status"], unique=False)
    op.create_index(op.f("ix_brds_is_deleted"), "brds", ["is_deleted"], unique=False)
    _timestamp_indexes("brds")

    # Create sync_mappings table
    op.create_table(
        "sync_mappings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("local_id", sa.String(), nullable=False),
        sa.Column("remote_key", sa.String(), nullable=False),
        sa.Column("remote_id", sa.String(), nullable=True),
        sa.Column("remote_project_key", sa.String(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified_local", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified_remote", sa.DateTime(timezone=True), nullable=True),
        sa.Column("base_snapshot", sa.JSON(), nullable=False),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False),
        sa.Column("auto_sync", sa.Boolean(), nullable=False),
        sa.Column("conflict_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["connection_id"], ["connections.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "connection_id", "local_id", name="uq_mapping_connection_local"
        ),
        sa.UniqueConstraint(
            "connection_id", "remote_key", name="uq_mapping_connection_remote"
        ),
    )
    op.create_index(op.f("ix_sync_mappings_id"), "sync_mappings", ["id"], unique=False)
    op.create_index(
        op.f("ix_sync_mappings_connection_id"), "sync_mappings", ["connection_id"], unique=False
    )
    op.create_index(
        op.f("ix_sync_mappings_local_id"), "sync_mappings", ["local_id"], unique=False
    )
    op.create_index(
        op.f("ix_sync_mappings_remote_key"), "sync_mappings", ["remote_key"], unique=False
    )
    _timestamp_indexes("sync_mappings")

    # Create field_mapping_rules table
    rules_table = op.create_table(
        "field_mapping_rules",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("source_field", sa.String(), nullable=False),
        sa.Column("target_field", sa.String(), nullable=False),
        sa.Column("direction", sa.String(length=32), nullable=False),
        sa.Column("transform", sa.String(), nullable=True),
        sa.Column("transform_options", sa.JSON(), nullable=True),
        sa.Column("is_custom", sa.Boolean(), nullable=False),
        sa.Column("default_value", sa.JSON(), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_field_mapping_rules_id"), "field_mapping_rules", ["id"], unique=False
    )
    op.create_index(
        op.f("ix_field_mapping_rules_active"), "field_mapping_rules", ["active"], unique=False
    )
    _timestamp_indexes("field_mapping_rules")

    # Create sync_jobs table
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("direction", sa.String(length=32), nullable=False),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("processed_items", sa.Integer(), nullable=False),
        sa.Column("failed_items", sa.Integer(), nullable=False),
        sa.Column("local_ids", sa.JSON(), nullable=False),
        sa.Column("remote_keys", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["connection_id"], ["connections.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_sync_jobs_id"), "sync_jobs", ["id"], unique=False)
    op.create_index(
        op.f("ix_sync_jobs_connection_id"), "sync_jobs", ["connection_id"], unique=False
    )
    op.create_index(
        op.f("ix_sync_jobs_operation_type"), "sync_jobs", ["operation_type"], unique=False
    )
    op.create_index(op.f("ix_sync_jobs_status"), "sync_jobs", ["status"], unique=False)
    op.create_index(
        op.f("ix_sync_jobs_next_attempt_at"), "sync_jobs", ["next_attempt_at"], unique=False
    )
    op.create_index(
        op.f("ix_sync_jobs_completed_at"), "sync_jobs", ["completed_at"], unique=False
    )
    op.create_index(
        "idx_sync_job_status_created", "sync_jobs", ["status", "created_at"], unique=False
    )
    op.create_index(
        "idx_sync_job_connection_status",
        "sync_jobs",
        ["connection_id", "status"],
        unique=False,
    )
    _timestamp_indexes("sync_jobs")

    # Create sync_conflicts table
    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("sync_job_id", sa.String(), nullable=True),
        sa.Column("mapping_id", sa.String(), nullable=False),
        sa.Column("local_id", sa.String(), nullable=True),
        sa.Column("remote_key", sa.String(), nullable=True),
        sa.Column("conflict_type", sa.String(length=32), nullable=False),
        sa.Column("field", sa.String(), nullable=False),
        sa.Column("base_value", sa.JSON(), nullable=True),
        sa.Column("local_value", sa.JSON(), nullable=True),
        sa.Column("remote_value", sa.JSON(), nullable=True),
        sa.Column("resolution_strategy", sa.String(length=32), nullable=True),
        sa.Column("resolved_value", sa.JSON(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["sync_job_id"], ["sync_jobs.id"]),
        sa.ForeignKeyConstraint(["mapping_id"], ["sync_mappings.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_sync_conflicts_id"), "sync_conflicts", ["id"], unique=False)
    op.create_index(
        op.f("ix_sync_conflicts_sync_job_id"), "sync_conflicts", ["sync_job_id"], unique=False
    )
    op.create_index(
        op.f("ix_sync_conflicts_mapping_id"), "sync_conflicts", ["mapping_id"], unique=False
    )
    op.create_index(
        op.f("ix_sync_conflicts_local_id"), "sync_conflicts", ["local_id"], unique=False
    )
    op.create_index(
        op.f("ix_sync_conflicts_resolved_at"), "sync_conflicts", ["resolved_at"], unique=False
    )
    op.create_index(
        op.f("ix_sync_conflicts_status"), "sync_conflicts", ["status"], unique=False
    )
    op.create_index(
        "idx_conflict_mapping_status", "sync_conflicts", ["mapping_id", "status"], unique=False
    )
    op.create_index(
        "idx_conflict_field_type_status",
        "sync_conflicts",
        ["field", "conflict_type", "status"],
        unique=False,
    )
    _timestamp_indexes("sync_conflicts")

    # Create sync_history table
    op.create_table(
        "sync_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("performed_by", sa.String(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["job_id"], ["sync_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_sync_history_job_id"), "sync_history", ["job_id"], unique=False)
    op.create_index(
        op.f("ix_sync_history_created_at"), "sync_history", ["created_at"], unique=False
    )

    # Seed default field mapping rules
    op.bulk_insert(
        rules_table,
        [
            {
                "id": str(uuid.uuid4()),
                "position": position,
                "source_field": source,
                "target_field": target,
                "direction": direction,
                "transform": transform,
                "transform_options": options,
                "is_custom": is_custom,
                "default_value": default,
                "required": required,
                "active": active,
            }
            for (
                position,
                source,
                target,
                direction,
                transform,
                options,
                is_custom,
                default,
                required,
                active,
            ) in DEFAULT_RULES
        ],
    )


def downgrade() -> None:
    op.drop_table("sync_history")
    op.drop_table("sync_conflicts")
    op.drop_table("sync_jobs")
    op.drop_table("field_mapping_rules")
    op.drop_table("sync_mappings")
    op.drop_table("brds")
    op.drop_table("webhook_registrations")
    op.drop_table("oauth_states")
    op.drop_table("connections")
