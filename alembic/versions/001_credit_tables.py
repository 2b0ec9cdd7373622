"""Create feed store tables.

Revision ID: 001_credit_tables
Revises:
Create Date: 2026-10-19

Creates five tables:
- feed_items: Cached feed row per order (unique order_id)
- status_history: Append-only bank/CRM status transitions
- sync_metadata: Key/value sync cursors
- application_requests: Audit copy of submitted payloads
- sent_messages: Partner-chat messages attributed to managers
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_credit_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── feed_items table ────────────────────────────────────────────────

    op.create_table(
        "feed_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(100), nullable=True),
        sa.Column("application_id", sa.String(255), nullable=False),
        sa.Column("credit_company", sa.String(50), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("bank_status", sa.String(100), nullable=True),
        sa.Column("document_status", sa.String(100), nullable=True),
        sa.Column("crm_status", sa.String(100), nullable=True),
        sa.Column("payment_type", sa.String(100), nullable=True),
        sa.Column("order_status", sa.String(100), nullable=True),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("manager_name", sa.String(255), nullable=True),
        sa.Column(
            "conditions_changed",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("comparison", sa.JSON(), nullable=True),
        sa.Column("order_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint("order_id", name="uq_feed_items_order_id"),
    )
    op.create_index("ix_feed_items_application_id", "feed_items", ["application_id"])
    op.create_index("ix_feed_items_order_created_at", "feed_items", ["order_created_at"])

    # ── status_history table ────────────────────────────────────────────

    op.create_table(
        "status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("application_id", sa.String(255), nullable=False),
        sa.Column("status_type", sa.String(20), nullable=False),
        sa.Column("old_status", sa.String(100), nullable=True),
        sa.Column("new_status", sa.String(100), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("manager_name", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_status_history_application_id", "status_history", ["application_id"])

    # ── sync_metadata table ─────────────────────────────────────────────

    op.create_table(
        "sync_metadata",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    # ── application_requests table ──────────────────────────────────────

    op.create_table(
        "application_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("application_id", sa.String(255), nullable=False),
        sa.Column("credit_company", sa.String(50), nullable=False),
        sa.Column(
            "request_data",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
        sa.Column("files_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "file_names",
            sa.JSON(),
            server_default=sa.text("'[]'::json"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint("application_id", name="uq_application_requests_application_id"),
    )
    op.create_index("ix_application_requests_order_id", "application_requests", ["order_id"])

    # ── sent_messages table ─────────────────────────────────────────────

    op.create_table(
        "sent_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("application_id", sa.String(255), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("manager_id", sa.Integer(), nullable=False),
        sa.Column("manager_name", sa.String(255), nullable=False),
        sa.Column(
            "sent_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_sent_messages_application_id", "sent_messages", ["application_id"])


def downgrade() -> None:
    op.drop_index("ix_sent_messages_application_id", table_name="sent_messages")
    op.drop_table("sent_messages")
    op.drop_index("ix_application_requests_order_id", table_name="application_requests")
    op.drop_table("application_requests")
    op.drop_table("sync_metadata")
    op.drop_index("ix_status_history_application_id", table_name="status_history")
    op.drop_table("status_history")
    op.drop_index("ix_feed_items_order_created_at", table_name="feed_items")
    op.drop_index("ix_feed_items_application_id", table_name="feed_items")
    op.drop_table("feed_items")
