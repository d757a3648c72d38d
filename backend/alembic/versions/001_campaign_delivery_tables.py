"""Add campaign, recipient and engagement tracking tables

Revision ID: 001_campaign_delivery
Revises:
Create Date: 2026-10-19

Note: These tables are also created by SQLAlchemy's Base.metadata.create_all()
in app startup. This migration exists for schema versioning and production
upgrade paths.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_campaign_delivery"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _event_columns() -> list:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("message_id", sa.String(255), nullable=False),
        sa.Column("recipient_id", sa.String(255), nullable=False),
        sa.Column("campaign_id", sa.String(255), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
    ]


def upgrade() -> None:
    # ----------------------------------------------------------------
    # Campaigns table
    # ----------------------------------------------------------------
    op.create_table(
        "campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),

        # Content
        sa.Column("subject", sa.String(300), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("from_name", sa.String(255), nullable=True),
        sa.Column("from_address", sa.String(255), nullable=True),
        sa.Column("reply_to", sa.String(255), nullable=True),

        # Lifecycle
        sa.Column("status", sa.String(50), nullable=False, server_default="draft"),
        sa.Column("scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("progress", sa.Integer(), server_default="0"),

        # Delivery statistics
        sa.Column("total_recipients", sa.Integer(), server_default="0"),
        sa.Column("sent_count", sa.Integer(), server_default="0"),
        sa.Column("failed_count", sa.Integer(), server_default="0"),
        sa.Column("delivered_count", sa.Integer(), server_default="0"),
        sa.Column("bounced_count", sa.Integer(), server_default="0"),

        # Engagement statistics
        sa.Column("opened_count", sa.Integer(), server_default="0"),
        sa.Column("unique_opened_count", sa.Integer(), server_default="0"),
        sa.Column("clicked_count", sa.Integer(), server_default="0"),
        sa.Column("unique_clicked_count", sa.Integer(), server_default="0"),
        sa.Column("unsubscribed_count", sa.Integer(), server_default="0"),
        sa.Column("unique_unsubscribed_count", sa.Integer(), server_default="0"),
        sa.Column("spam_complaint_count", sa.Integer(), server_default="0"),
        sa.Column("unique_spam_complaint_count", sa.Integer(), server_default="0"),
        sa.Column("open_rate", sa.Float(), server_default="0"),
        sa.Column("click_rate", sa.Float(), server_default="0"),
        sa.Column("click_through_rate", sa.Float(), server_default="0"),
        sa.Column("stats_refreshed_at", sa.DateTime(), nullable=True),

        # Run bookkeeping
        sa.Column("sending_started_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("send_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),

        # Soft delete
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),

        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_campaigns_status", "campaigns", ["status"])
    op.create_index("ix_campaigns_is_deleted", "campaigns", ["is_deleted"])
    op.create_index("idx_campaigns_status_scheduled_at", "campaigns", ["status", "scheduled_at"])

    # ----------------------------------------------------------------
    # Campaign recipients
    # ----------------------------------------------------------------
    op.create_table(
        "campaign_recipients",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "campaign_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("subscriber_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("bounce_reason", sa.Text(), nullable=True),
        sa.Column("subscription_status", sa.String(50), nullable=False, server_default="subscribed"),
        sa.Column("unsubscribed_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("opened_at", sa.DateTime(), nullable=True),
        sa.Column("clicked_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_campaign_recipients_message_id", "campaign_recipients", ["message_id"])
    op.create_index(
        "idx_campaign_recipients_campaign_position", "campaign_recipients", ["campaign_id", "position"]
    )
    op.create_index(
        "idx_campaign_recipients_campaign_subscriber", "campaign_recipients", ["campaign_id", "subscriber_id"]
    )

    # ----------------------------------------------------------------
    # Engagement events
    # ----------------------------------------------------------------
    op.create_table(
        "email_opens",
        *_event_columns(),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("device_type", sa.String(20), server_default="other"),
        sa.Column("opened_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("message_id", "recipient_id", name="uq_email_opens_message_recipient"),
    )
    op.create_table(
        "email_clicks",
        *_event_columns(),
        sa.Column("link_url", sa.Text(), nullable=False),
        sa.Column("link_id", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("device_type", sa.String(20), server_default="other"),
        sa.Column("utm_source", sa.String(255), nullable=True),
        sa.Column("utm_medium", sa.String(255), nullable=True),
        sa.Column("utm_campaign", sa.String(255), nullable=True),
        sa.Column("clicked_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "email_unsubscribes",
        *_event_columns(),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("unsubscribed_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "spam_complaints",
        *_event_columns(),
        sa.Column("complaint_type", sa.String(20), nullable=False, server_default="spam"),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("complained_at", sa.DateTime(), nullable=False),
    )

    for table, timestamp in (
        ("email_opens", "opened_at"),
        ("email_clicks", "clicked_at"),
        ("email_unsubscribes", "unsubscribed_at"),
        ("spam_complaints", "complained_at"),
    ):
        op.create_index(f"ix_{table}_message_id", table, ["message_id"])
        op.create_index(f"ix_{table}_recipient_id", table, ["recipient_id"])
        op.create_index(f"ix_{table}_campaign_id", table, ["campaign_id"])
        op.create_index(f"ix_{table}_{timestamp}", table, [timestamp])
        op.create_index(f"idx_{table}_campaign_recipient", table, ["campaign_id", "recipient_id"])


def downgrade() -> None:
    op.drop_table("spam_complaints")
    op.drop_table("email_unsubscribes")
    op.drop_table("email_clicks")
    op.drop_table("email_opens")
    op.drop_table("campaign_recipients")
    op.drop_table("campaigns")
