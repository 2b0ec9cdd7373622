"""Feed store repository -- async CRUD for the feed cache and audit tables.

Provides FeedRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models for feed
items, status history, sync metadata, application requests, and sent
messages.

Feed reads never touch a partner API; everything here is local storage.
Upserts are select-then-write inside one session so the repository stays
dialect-neutral.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.credit_bridge.core.exceptions import PersistenceError
from src.credit_bridge.credit.models import (
    ApplicationRequestModel,
    FeedItemModel,
    SentMessageModel,
    StatusHistoryModel,
    SyncMetadataModel,
)
from src.credit_bridge.credit.schemas import (
    ARCHIVED_ORDER_STATUSES,
    ApplicationRequestCreate,
    ApplicationRequestRead,
    Comparison,
    FeedFilter,
    FeedItemData,
    HistorySource,
    SentMessageCreate,
    SentMessageRead,
    StatusHistoryCreate,
    StatusHistoryRead,
    StatusType,
)

logger = structlog.get_logger(__name__)

FEED_LAST_SYNC_KEY = "feed_last_sync"


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_feed_item(model: FeedItemModel) -> FeedItemData:
    """Convert FeedItemModel to FeedItemData schema."""
    comparison = None
    if model.comparison:
        comparison = Comparison.model_validate(model.comparison)

    return FeedItemData(
        order_id=model.order_id,
        order_number=model.order_number,
        application_id=model.application_id,
        credit_company=model.credit_company,
        customer_name=model.customer_name,
        bank_status=model.bank_status,
        document_status=model.document_status,
        crm_status=model.crm_status,
        payment_type=model.payment_type,
        order_status=model.order_status,
        manager_id=model.manager_id,
        manager_name=model.manager_name,
        conditions_changed=bool(model.conditions_changed),
        comparison=comparison,
        order_created_at=model.order_created_at,
        last_updated=model.last_updated,
    )


def _apply_feed_item(model: FeedItemModel, item: FeedItemData) -> None:
    """Copy every writable field of a feed item onto the model."""
    model.order_number = item.order_number
    model.application_id = item.application_id
    model.credit_company = item.credit_company
    model.customer_name = item.customer_name
    model.bank_status = item.bank_status
    model.document_status = item.document_status
    model.crm_status = item.crm_status
    model.payment_type = item.payment_type
    model.order_status = item.order_status
    model.manager_id = item.manager_id
    model.manager_name = item.manager_name
    model.conditions_changed = item.conditions_changed
    model.comparison = (
        item.comparison.model_dump(mode="json") if item.comparison else None
    )
    model.order_created_at = item.order_created_at
    model.last_updated = datetime.now(timezone.utc)


def _model_to_history(model: StatusHistoryModel) -> StatusHistoryRead:
    return StatusHistoryRead(
        id=model.id,
        application_id=model.application_id,
        status_type=StatusType(model.status_type),
        old_status=model.old_status,
        new_status=model.new_status,
        source=HistorySource(model.source),
        details=model.details,
        manager_id=model.manager_id,
        manager_name=model.manager_name,
        created_at=model.created_at,
    )


def _model_to_application_request(
    model: ApplicationRequestModel,
) -> ApplicationRequestRead:
    return ApplicationRequestRead(
        id=model.id,
        order_id=model.order_id,
        application_id=model.application_id,
        credit_company=model.credit_company,
        request_data=model.request_data or {},
        files_count=model.files_count or 0,
        file_names=list(model.file_names or []),
        created_at=model.created_at,
    )


def _model_to_sent_message(model: SentMessageModel) -> SentMessageRead:
    return SentMessageRead(
        id=model.id,
        application_id=model.application_id,
        message_text=model.message_text,
        manager_id=model.manager_id,
        manager_name=model.manager_name,
        sent_at=model.sent_at,
    )


def build_feed_query(filters: FeedFilter | None = None):
    """Build the feed SELECT for the given filters, newest orders first.

    archive=True keeps archived lifecycle statuses only; archive=False
    keeps rows with no lifecycle status or a non-archived one.
    """
    stmt = select(FeedItemModel)
    if filters is not None:
        if filters.bank_status is not None:
            stmt = stmt.where(FeedItemModel.bank_status == filters.bank_status)
        if filters.conditions_changed is not None:
            stmt = stmt.where(
                FeedItemModel.conditions_changed == filters.conditions_changed
            )
        if filters.credit_company is not None:
            stmt = stmt.where(FeedItemModel.credit_company == filters.credit_company)
        archived = sorted(ARCHIVED_ORDER_STATUSES)
        if filters.archive is True:
            stmt = stmt.where(FeedItemModel.order_status.in_(archived))
        elif filters.archive is False:
            stmt = stmt.where(
                or_(
                    FeedItemModel.order_status.is_(None),
                    FeedItemModel.order_status.notin_(archived),
                )
            )
    return stmt.order_by(FeedItemModel.order_created_at.desc())


# ── Repository ──────────────────────────────────────────────────────────────


class FeedRepository:
    """Async persistence for the feed cache, history, and audit records.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Feed Items ──────────────────────────────────────────────────────────

    async def upsert_feed_item(self, item: FeedItemData) -> FeedItemData:
        """Insert or update the feed row for item.order_id.

        Raises:
            PersistenceError: If the write fails.
        """
        try:
            async for session in self._session_factory():
                stmt = select(FeedItemModel).where(
                    FeedItemModel.order_id == item.order_id
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    model = FeedItemModel(order_id=item.order_id)
                    session.add(model)
                _apply_feed_item(model, item)
                await session.commit()
                await session.refresh(model)
                return _model_to_feed_item(model)
        except Exception as exc:
            logger.error(
                "feed.upsert_failed", order_id=item.order_id, error=str(exc)
            )
            raise PersistenceError(
                f"Failed to upsert feed item for order {item.order_id}",
                application_id=item.application_id,
            ) from exc

    async def upsert_many(self, items: list[FeedItemData]) -> list[FeedItemData]:
        """Upsert each item independently; one failure never blocks the rest.

        Returns:
            The rows that were written.
        """
        written: list[FeedItemData] = []
        for item in items:
            try:
                written.append(await self.upsert_feed_item(item))
            except PersistenceError:
                logger.warning("feed.upsert_many_item_skipped", order_id=item.order_id)
        return written

    async def get_all_feed_items(
        self, filters: FeedFilter | None = None
    ) -> list[FeedItemData]:
        async for session in self._session_factory():
            result = await session.execute(build_feed_query(filters))
            return [_model_to_feed_item(m) for m in result.scalars().all()]

    async def get_feed_item(self, order_id: int) -> FeedItemData | None:
        async for session in self._session_factory():
            stmt = select(FeedItemModel).where(FeedItemModel.order_id == order_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_feed_item(model)

    async def get_feed_item_by_application_id(
        self, application_id: str
    ) -> FeedItemData | None:
        async for session in self._session_factory():
            stmt = (
                select(FeedItemModel)
                .where(FeedItemModel.application_id == application_id)
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_feed_item(model)

    async def update_application_status(
        self,
        application_id: str,
        bank_status: str,
        crm_status: str | None = None,
    ) -> int:
        """Set bank (and optionally CRM) status on every row for an application.

        Returns:
            Number of rows updated.
        """
        values: dict = {
            "bank_status": bank_status,
            "last_updated": datetime.now(timezone.utc),
        }
        if crm_status is not None:
            values["crm_status"] = crm_status

        async for session in self._session_factory():
            stmt = (
                update(FeedItemModel)
                .where(FeedItemModel.application_id == application_id)
                .values(**values)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def delete_feed_item(self, order_id: int) -> bool:
        """Delete the feed row for an order.

        Returns:
            True if a row was deleted, False if none existed.
        """
        async for session in self._session_factory():
            stmt = delete(FeedItemModel).where(FeedItemModel.order_id == order_id)
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)

    async def count_feed_items(self) -> int:
        async for session in self._session_factory():
            result = await session.execute(select(func.count(FeedItemModel.id)))
            return int(result.scalar_one())

    # ── Sync Metadata ───────────────────────────────────────────────────────

    async def get_sync_metadata(self, key: str) -> str | None:
        async for session in self._session_factory():
            model = await session.get(SyncMetadataModel, key)
            return model.value if model is not None else None

    async def save_sync_metadata(self, key: str, value: str) -> None:
        async for session in self._session_factory():
            model = await session.get(SyncMetadataModel, key)
            if model is None:
                session.add(SyncMetadataModel(key=key, value=value))
            else:
                model.value = value
            await session.commit()

    async def get_last_sync_time(self) -> datetime | None:
        value = await self.get_sync_metadata(FEED_LAST_SYNC_KEY)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning("feed.last_sync_unparsable", value=value)
            return None

    async def update_last_sync_time(self) -> datetime:
        now = datetime.now(timezone.utc)
        await self.save_sync_metadata(FEED_LAST_SYNC_KEY, now.isoformat())
        return now

    # ── Status History ──────────────────────────────────────────────────────

    async def save_status_history(
        self, data: StatusHistoryCreate
    ) -> StatusHistoryRead | None:
        """Append a status transition.

        History is an audit trail; a failed write is logged and returns None
        so the caller's state change still stands.
        """
        try:
            async for session in self._session_factory():
                model = StatusHistoryModel(
                    application_id=data.application_id,
                    status_type=data.status_type.value,
                    old_status=data.old_status,
                    new_status=data.new_status,
                    source=data.source.value,
                    details=data.details,
                    manager_id=data.manager_id,
                    manager_name=data.manager_name,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_history(model)
        except Exception as exc:
            logger.error(
                "history.save_failed",
                application_id=data.application_id,
                error=str(exc),
            )
            return None

    async def get_status_history(self, application_id: str) -> list[StatusHistoryRead]:
        async for session in self._session_factory():
            stmt = (
                select(StatusHistoryModel)
                .where(StatusHistoryModel.application_id == application_id)
                .order_by(StatusHistoryModel.created_at.asc(), StatusHistoryModel.id.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_history(m) for m in result.scalars().all()]

    # ── Application Requests ────────────────────────────────────────────────

    async def save_application_request(
        self, data: ApplicationRequestCreate
    ) -> ApplicationRequestRead:
        """Insert or replace the audit record for data.application_id."""
        async for session in self._session_factory():
            stmt = select(ApplicationRequestModel).where(
                ApplicationRequestModel.application_id == data.application_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = ApplicationRequestModel(application_id=data.application_id)
                session.add(model)
            model.order_id = data.order_id
            model.credit_company = data.credit_company
            model.request_data = data.request_data
            model.files_count = data.files_count
            model.file_names = list(data.file_names)
            await session.commit()
            await session.refresh(model)
            return _model_to_application_request(model)

    async def get_application_request(
        self, application_id: str
    ) -> ApplicationRequestRead | None:
        async for session in self._session_factory():
            stmt = select(ApplicationRequestModel).where(
                ApplicationRequestModel.application_id == application_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_application_request(model)

    async def get_application_request_by_order_id(
        self, order_id: int
    ) -> ApplicationRequestRead | None:
        async for session in self._session_factory():
            stmt = (
                select(ApplicationRequestModel)
                .where(ApplicationRequestModel.order_id == order_id)
                .order_by(ApplicationRequestModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_application_request(model)

    # ── Sent Messages ───────────────────────────────────────────────────────

    async def save_sent_message(self, data: SentMessageCreate) -> SentMessageRead:
        async for session in self._session_factory():
            model = SentMessageModel(
                application_id=data.application_id,
                message_text=data.message_text,
                manager_id=data.manager_id,
                manager_name=data.manager_name,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sent_message(model)

    async def get_sent_messages(self, application_id: str) -> list[SentMessageRead]:
        async for session in self._session_factory():
            stmt = (
                select(SentMessageModel)
                .where(SentMessageModel.application_id == application_id)
                .order_by(SentMessageModel.sent_at.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_sent_message(m) for m in result.scalars().all()]
