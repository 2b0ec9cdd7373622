"""Feed store persistence models.

Five SQLAlchemy models on the shared declarative Base:
- FeedItemModel: Cached CRM-facing feed row, one per order (unique order_id)
- StatusHistoryModel: Append-only bank/CRM status transitions
- SyncMetadataModel: Key/value cursors (feed_last_sync, lastHistoryId)
- ApplicationRequestModel: Audit copy of each payload submitted to a provider
- SentMessageModel: Partner-chat messages attributed to CRM managers

Column types are dialect-neutral (sa.JSON) so the same metadata serves
Postgres in production and any SQLAlchemy backend in local runs.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.credit_bridge.core.database import Base


class FeedItemModel(Base):
    """Cached summary of one order with a credit application.

    Rows are upserted by order_id on every sync and never removed by the
    scheduled loop; only an explicit delete removes them.
    """

    __tablename__ = "feed_items"
    __table_args__ = (
        Index("ix_feed_items_application_id", "application_id"),
        Index("ix_feed_items_order_created_at", "order_created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    order_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    application_id: Mapped[str] = mapped_column(String(255), nullable=False)
    credit_company: Mapped[str | None] = mapped_column(String(50), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bank_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    document_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    crm_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    manager_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    manager_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    conditions_changed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    comparison: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    order_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class StatusHistoryModel(Base):
    """Append-only record of a bank or CRM status transition."""

    __tablename__ = "status_history"
    __table_args__ = (
        Index("ix_status_history_application_id", "application_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status_type: Mapped[str] = mapped_column(String(20), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    new_status: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    manager_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncMetadataModel(Base):
    __tablename__ = "sync_metadata"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class ApplicationRequestModel(Base):
    """Payload sent to a provider when the application was created.

    File bodies are never stored; only their count and names.
    """

    __tablename__ = "application_requests"
    __table_args__ = (
        Index("ix_application_requests_order_id", "order_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    application_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    credit_company: Mapped[str] = mapped_column(String(50), nullable=False)
    request_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    files_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    file_names: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SentMessageModel(Base):
    __tablename__ = "sent_messages"
    __table_args__ = (
        Index("ix_sent_messages_application_id", "application_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[str] = mapped_column(String(255), nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    manager_id: Mapped[int] = mapped_column(Integer, nullable=False)
    manager_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
