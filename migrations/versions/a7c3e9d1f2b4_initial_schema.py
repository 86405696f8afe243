"""Initial schema: actors, records, correction requests, notifications, audit, outbox.

Revision ID: a7c3e9d1f2b4
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a7c3e9d1f2b4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "actors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("verification_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rejection_reason", sa.String(2000), nullable=True),
        sa.Column("verified_by_actor_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["verified_by_actor_id"], ["actors.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("idx_actors_role_status", "actors", ["role", "verification_status"])

    op.create_table(
        "records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("clinician_id", sa.Integer(), nullable=False),
        sa.Column("entered_by", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("has_active_correction", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fields", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("verified_by", sa.Integer(), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.String(2000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subject_id"], ["actors.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["clinician_id"], ["actors.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["entered_by"], ["actors.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["verified_by"], ["actors.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_records_subject", "records", ["subject_id"])
    op.create_index("idx_records_clinician_status", "records", ["clinician_id", "status"])
    op.create_index("idx_records_entered_by", "records", ["entered_by"])

    op.create_table(
        "correction_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("requested_by", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(2000), nullable=False),
        sa.Column("requested_changes", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("processed_by", sa.Integer(), nullable=True),
        sa.Column("response", sa.String(2000), nullable=True),
        sa.Column("applied_changes", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["record_id"], ["records.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requested_by"], ["actors.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["processed_by"], ["actors.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_correction_requests_record_status", "correction_requests", ["record_id", "status"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("recipient_role", sa.String(32), nullable=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("action_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("message", sa.String(1000), nullable=False, server_default=""),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["recipient_id"], ["actors.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("event_id", "recipient_id", name="uq_notification_event_recipient"),
    )
    op.create_index("idx_notifications_recipient_read", "notifications", ["recipient_id", "read"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(2000), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["actor_id"], ["actors.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index("idx_outbox_status", "outbox_events", ["status"])


def downgrade() -> None:
    op.drop_index("idx_outbox_status", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_table("audit_events")
    op.drop_index("idx_notifications_recipient_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_correction_requests_record_status", table_name="correction_requests")
    op.drop_table("correction_requests")
    op.drop_index("idx_records_entered_by", table_name="records")
    op.drop_index("idx_records_clinician_status", table_name="records")
    op.drop_index("idx_records_subject", table_name="records")
    op.drop_table("records")
    op.drop_index("idx_actors_role_status", table_name="actors")
    op.drop_table("actors")
