"""Notifications table

Revision ID: 001
Revises:
Create Date: 2024-06-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOTIFICATION_TYPES = (
    "follow",
    "like",
    "comment",
    "mention",
    "donation",
    "campaign_update",
    "campaign_approved",
    "campaign_rejected",
    "event_invite",
    "event_update",
    "event_started",
    "event_reminder",
    "event_rsvp_change",
    "post_removed",
    "campaign_removed",
    "event_removed",
    "user_warned",
    "user_banned",
    "admin_reported",
    "system",
    "withdrawal_released",
    "refund_processed",
    "escrow_threshold_reached",
    "escrow_approved",
)


def upgrade() -> None:
    values = ", ".join(f"'{value}'" for value in NOTIFICATION_TYPES)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE notification_type AS ENUM ({values});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("receiver", sa.String(64), nullable=False),
        sa.Column("sender", sa.String(64), nullable=True),
        sa.Column(
            "type",
            postgresql.ENUM(*NOTIFICATION_TYPES, name="notification_type", create_type=False),
            nullable=False,
        ),
        sa.Column("post", sa.String(64), nullable=True),
        sa.Column("campaign", sa.String(64), nullable=True),
        sa.Column("event", sa.String(64), nullable=True),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # Unread list and per-type feed for one user
    op.create_index(
        "ix_notifications_receiver_read",
        "notifications",
        ["receiver", "is_read", "created_at"],
    )
    op.create_index(
        "ix_notifications_receiver_type",
        "notifications",
        ["receiver", "type", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_notifications_receiver_type")
    op.drop_index("ix_notifications_receiver_read")
    op.drop_table("notifications")
    op.execute("DROP TYPE IF EXISTS notification_type")
