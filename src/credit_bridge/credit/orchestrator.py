"""Application submission orchestrator.

Validates CRM order data, routes the order to its provider adapter,
creates the application, and records the linkage. Also hosts the
manager-initiated follow-ups on an existing application: sending
documents, fetching contracts, refusing, and partner chat.

Error handling:
- ValidationError / DuplicateSubmissionError: raised before any provider call
- ProviderCommunicationError: provider rejected or was unreachable; nothing linked
- PersistenceError: provider holds the application but the CRM link failed
- Audit and history writes, post-link payment update and document upload:
  logged, never propagated
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from src.credit_bridge.core.exceptions import (
    CreditBridgeError,
    DuplicateSubmissionError,
    PersistenceError,
    UnsupportedOperationError,
    ValidationError,
)
from src.credit_bridge.credit.crm.adapter import CRMClient
from src.credit_bridge.credit.formatting import contains_cyrillic
from src.credit_bridge.credit.guard import SubmissionGuard
from src.credit_bridge.credit.providers import ProviderRegistry
from src.credit_bridge.credit.providers.base import ProviderAdapter
from src.credit_bridge.credit.repository import FeedRepository
from src.credit_bridge.credit.schemas import (
    ApplicationRequestCreate,
    ApplicationRequestRead,
    Comparison,
    ContractsResult,
    CrmStatus,
    FeedItemData,
    FilesSentResult,
    HistorySource,
    ManagerContext,
    MessagesResult,
    OrderData,
    OrderFile,
    OrderStatusUpdateResult,
    PartnerMessage,
    RefusalResult,
    SentMessageCreate,
    SentMessageRead,
    StatusHistoryCreate,
    StatusType,
    SubmissionOutcome,
    SubmissionResult,
)

logger = structlog.get_logger(__name__)

# Sender ids of messages our own partner account posted to the chat
OWN_SENDER_PREFIX = "PAN"
MESSAGE_MATCH_WINDOW_SECONDS = 60


def validate_personal_data(order: OrderData) -> None:
    """Check the fields providers need to identify the customer.

    Raises:
        ValidationError: Naming the first missing or invalid field.
    """
    if not order.idnp:
        raise ValidationError("Customer IDNP is missing")
    if not order.name:
        raise ValidationError("Customer first name is missing")
    if contains_cyrillic(order.name):
        raise ValidationError("Customer first name must be written in Latin characters")
    if not order.surname:
        raise ValidationError("Customer surname is missing")
    if contains_cyrillic(order.surname):
        raise ValidationError("Customer surname must be written in Latin characters")
    if not order.birthday:
        raise ValidationError("Customer birthday is missing")


def _initial_status_details(outcome: SubmissionOutcome) -> str | None:
    if outcome.myiute_customer is None:
        return outcome.message
    if outcome.myiute_customer:
        return "Customer is a MyIute user"
    return "Customer is not in MyIute, SMS sent"


def _parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _seconds_apart(a: datetime, b: datetime) -> float:
    if (a.tzinfo is None) != (b.tzinfo is None):
        a, b = a.replace(tzinfo=None), b.replace(tzinfo=None)
    return abs((a - b).total_seconds())


def attribute_sent_messages(
    messages: list[PartnerMessage], sent: list[SentMessageRead]
) -> list[PartnerMessage]:
    """Attach manager names to chat messages we posted.

    A partner message is ours when its sender id starts with the partner
    account prefix; it is matched to a locally recorded send with the same
    text sent within a minute of the message date.
    """
    result: list[PartnerMessage] = []
    for message in messages:
        if (message.sender_id or "").startswith(OWN_SENDER_PREFIX):
            message_date = _parse_timestamp(message.date)
            for record in sent:
                if record.message_text != message.text:
                    continue
                if message_date is None or record.sent_at is None:
                    continue
                if _seconds_apart(record.sent_at, message_date) < MESSAGE_MATCH_WINDOW_SECONDS:
                    message = message.model_copy(
                        update={
                            "manager_id": record.manager_id,
                            "manager_name": record.manager_name,
                        }
                    )
                    break
        result.append(message)
    return result


class ApplicationOrchestrator:
    """Submits applications and runs manager-initiated follow-ups.

    Args:
        crm: CRM client.
        providers: Adapter registry.
        repository: Feed store.
        guard: Per-order submission guard owned by this orchestrator.
        upload_delay: Seconds to wait before uploading documents to
            providers that take them after creation.
    """

    def __init__(
        self,
        crm: CRMClient,
        providers: ProviderRegistry,
        repository: FeedRepository,
        guard: SubmissionGuard | None = None,
        upload_delay: float = 2.0,
    ) -> None:
        self._crm = crm
        self._providers = providers
        self._repository = repository
        self._guard = guard or SubmissionGuard()
        self._upload_delay = upload_delay

    @property
    def guard(self) -> SubmissionGuard:
        return self._guard

    # ── Shared Lookups ──────────────────────────────────────────────────────

    async def _load_order(self, order_id: int) -> OrderData:
        raw = await self._crm.get_order(order_id)
        if raw is None:
            raise ValidationError(f"Order {order_id} not found")
        return self._crm.extract_order_data(raw)

    async def _load_linked_order(self, order_id: int) -> tuple[OrderData, ProviderAdapter]:
        order = await self._load_order(order_id)
        if not order.loan_application_id:
            raise ValidationError(f"Order {order_id} has no credit application")
        return order, self._providers.for_company(order.credit_company)

    async def _record_history(self, entry: StatusHistoryCreate) -> None:
        await self._repository.save_status_history(entry)

    # ── Submission ──────────────────────────────────────────────────────────

    async def submit_application(
        self, order_id: int, manager: ManagerContext | None = None
    ) -> SubmissionResult:
        """Submit the order as a credit application to its provider.

        Args:
            order_id: CRM order id.
            manager: Manager on whose behalf the submission runs.

        Returns:
            SubmissionResult; files_uploaded=False with warnings marks a
            partial success.

        Raises:
            DuplicateSubmissionError: Another submission is in flight or the
                order is already linked.
            ValidationError: Order data is missing or invalid.
            ProviderCommunicationError: The provider rejected the application.
            PersistenceError: The application exists but linkage failed.
        """
        with self._guard.hold(order_id):
            return await self._submit(order_id, manager or ManagerContext())

    async def _submit(self, order_id: int, manager: ManagerContext) -> SubmissionResult:
        logger.info("submission.started", order_id=order_id, manager_id=manager.manager_id)

        order = await self._load_order(order_id)
        adapter = self._providers.for_company(order.credit_company)
        provider = adapter.provider_id

        if order.loan_application_id:
            raise DuplicateSubmissionError(
                order_id,
                f"Order {order_id} already has application {order.loan_application_id}",
            )
        if adapter.requires_personal_data:
            validate_personal_data(order)
        if adapter.requires_payment and order.payment is None:
            raise ValidationError(f"Order {order_id} has no credit payment")

        files: list[OrderFile] = []
        if adapter.attaches_documents:
            files = await self._crm.get_order_files_as_base64(order_id, order.site)
        adapter.validate(order, files)

        outcome = await adapter.submit(order, files)
        application_id = outcome.application_id
        warnings: list[str] = []

        await self._link_application(order, adapter, application_id)

        if outcome.initial_status:
            await self._record_history(
                StatusHistoryCreate(
                    application_id=application_id,
                    status_type=StatusType.BANK,
                    new_status=outcome.initial_status,
                    source=HistorySource.API,
                    details=_initial_status_details(outcome),
                    manager_id=manager.manager_id,
                    manager_name=manager.manager_name,
                )
            )

        crm_status = adapter.map_status(outcome.initial_status) or CrmStatus.CREDIT_CHECK
        if order.payment is not None:
            try:
                await self._crm.update_payment_status(
                    order_id, order.payment.id, crm_status.value, order.site
                )
                await self._record_history(
                    StatusHistoryCreate(
                        application_id=application_id,
                        status_type=StatusType.CRM,
                        old_status=order.payment.status,
                        new_status=crm_status.value,
                        source=HistorySource.API,
                        details="Application submitted",
                        manager_id=manager.manager_id,
                        manager_name=manager.manager_name,
                    )
                )
            except Exception as exc:
                logger.error(
                    "submission.payment_status_failed",
                    order_id=order_id,
                    application_id=application_id,
                    error=str(exc),
                )
                warnings.append(f"Payment status was not updated: {exc}")

        await self._save_audit(order, provider.value, outcome.request_data, application_id, files)
        await self._seed_feed_item(order, adapter, application_id, outcome.initial_status, crm_status)

        files_uploaded = True
        if adapter.uploads_after_submit and files:
            files_uploaded = await self._upload_after_submit(
                order_id, adapter, application_id, files, warnings
            )

        logger.info(
            "submission.completed",
            order_id=order_id,
            application_id=application_id,
            provider=provider.value,
            files_count=len(files),
            files_uploaded=files_uploaded,
        )
        return SubmissionResult(
            order_id=order_id,
            application_id=application_id,
            credit_company=provider,
            files_count=len(files),
            files_uploaded=files_uploaded,
            bank_status=outcome.initial_status,
            message=outcome.message,
            warnings=warnings,
        )

    async def _link_application(
        self, order: OrderData, adapter: ProviderAdapter, application_id: str
    ) -> None:
        """Write the application id onto the order.

        Raises:
            PersistenceError: The provider holds the application but the CRM
                does not know about it.
        """
        # An empty selector routed the order to the default provider; record it
        try:
            await self._crm.update_order_with_application_id(
                order.order_id,
                application_id,
                order.site,
                credit_company=None if order.credit_company else adapter.provider_id.value,
            )
        except CreditBridgeError as exc:
            logger.error(
                "submission.linkage_failed",
                order_id=order.order_id,
                application_id=application_id,
                provider=adapter.provider_id.value,
                error=str(exc),
            )
            raise PersistenceError(
                f"Application {application_id} was created at {adapter.provider_id.value} "
                f"but could not be linked to order {order.order_id}",
                application_id=application_id,
            ) from exc

    async def _save_audit(
        self,
        order: OrderData,
        provider: str,
        request_data: dict,
        application_id: str,
        files: list[OrderFile],
    ) -> None:
        try:
            await self._repository.save_application_request(
                ApplicationRequestCreate(
                    order_id=order.order_id,
                    application_id=application_id,
                    credit_company=provider,
                    request_data=request_data,
                    files_count=len(files),
                    file_names=[f.name for f in files],
                )
            )
        except Exception as exc:
            logger.error(
                "submission.audit_save_failed",
                order_id=order.order_id,
                application_id=application_id,
                error=str(exc),
            )

    async def _seed_feed_item(
        self,
        order: OrderData,
        adapter: ProviderAdapter,
        application_id: str,
        bank_status: str | None,
        crm_status: CrmStatus,
    ) -> None:
        item = FeedItemData(
            order_id=order.order_id,
            order_number=order.order_number,
            application_id=application_id,
            credit_company=adapter.provider_id.value,
            customer_name=order.customer_name,
            bank_status=bank_status,
            crm_status=crm_status.value if order.payment is not None else None,
            payment_type=order.payment.type if order.payment else None,
            order_status=order.order_status,
            manager_id=order.manager_id,
            comparison=Comparison(requested=adapter.requested_terms(order)),
            order_created_at=order.created_at,
        )
        try:
            await self._repository.upsert_feed_item(item)
        except PersistenceError as exc:
            logger.warning(
                "submission.feed_seed_failed", order_id=order.order_id, error=str(exc)
            )

    async def _upload_after_submit(
        self,
        order_id: int,
        adapter: ProviderAdapter,
        application_id: str,
        files: list[OrderFile],
        warnings: list[str],
    ) -> bool:
        await asyncio.sleep(self._upload_delay)
        try:
            await adapter.upload_documents(application_id, files)
        except Exception as exc:
            logger.error(
                "submission.upload_failed",
                order_id=order_id,
                application_id=application_id,
                provider=adapter.provider_id.value,
                error=str(exc),
            )
            warnings.append(
                f"Application created but files were not uploaded to "
                f"{adapter.provider_id.value}: {exc}"
            )
            return False
        return True

    # ── Documents ───────────────────────────────────────────────────────────

    async def send_files_to_bank(self, order_id: int) -> FilesSentResult:
        """Send every file on the order to the provider of its application."""
        order, adapter = await self._load_linked_order(order_id)
        files = await self._crm.get_order_files_as_base64(order_id, order.site)
        if not files:
            raise ValidationError(f"Order {order_id} has no files attached")

        await adapter.upload_documents(order.loan_application_id, files)
        logger.info(
            "documents.sent",
            order_id=order_id,
            application_id=order.loan_application_id,
            provider=adapter.provider_id.value,
            files_count=len(files),
        )
        return FilesSentResult(
            order_id=order_id,
            application_id=order.loan_application_id,
            credit_company=adapter.provider_id,
            files_count=len(files),
        )

    async def get_contracts_for_download(self, order_id: int) -> ContractsResult:
        """Fetch contract files and attach them to the order if none are yet.

        Attaching is best-effort; the files are returned either way.
        """
        order, adapter = await self._load_linked_order(order_id)
        files = await adapter.get_contracts(order.loan_application_id)
        if not files:
            raise ValidationError(
                "Contract is not available yet; the application must be approved first"
            )

        attached: list[str] = []
        if not await self._crm.check_order_has_contract_files(order_id, order.site):
            for file in files:
                try:
                    await self._crm.upload_file_to_order(order_id, file, order.site)
                    attached.append(file.name)
                except Exception as exc:
                    logger.error(
                        "documents.contract_attach_failed",
                        order_id=order_id,
                        file_name=file.name,
                        error=str(exc),
                    )

        logger.info(
            "documents.contracts_ready",
            order_id=order_id,
            application_id=order.loan_application_id,
            files_count=len(files),
            attached=len(attached),
        )
        return ContractsResult(
            order_id=order_id,
            application_id=order.loan_application_id,
            files=files,
            attached=attached,
        )

    async def get_contracts_and_attach(self, order_id: int) -> ContractsResult:
        """Fetch contract files and attach all of them to the order."""
        order, adapter = await self._load_linked_order(order_id)
        files = await adapter.get_contracts(order.loan_application_id)
        if not files:
            raise ValidationError("No contracts available for this application")

        attached: list[str] = []
        for file in files:
            await self._crm.upload_file_to_order(order_id, file, order.site)
            attached.append(file.name)

        logger.info(
            "documents.contracts_attached",
            order_id=order_id,
            application_id=order.loan_application_id,
            files_count=len(attached),
        )
        return ContractsResult(
            order_id=order_id,
            application_id=order.loan_application_id,
            attached=attached,
        )

    # ── Refusal ─────────────────────────────────────────────────────────────

    async def refuse_application(
        self,
        order_id: int,
        reason: str | None = None,
        manager: ManagerContext | None = None,
    ) -> RefusalResult:
        """Refuse the application at the provider and decline the payment."""
        manager = manager or ManagerContext()
        order, adapter = await self._load_linked_order(order_id)
        application_id = order.loan_application_id

        await adapter.refuse(application_id, reason)

        if order.payment is not None:
            await self._crm.update_payment_status(
                order_id, order.payment.id, CrmStatus.CREDIT_DECLINED.value, order.site
            )
            await self._record_history(
                StatusHistoryCreate(
                    application_id=application_id,
                    status_type=StatusType.CRM,
                    old_status=order.payment.status,
                    new_status=CrmStatus.CREDIT_DECLINED.value,
                    source=HistorySource.API,
                    details=f"Refused: {reason}" if reason else "Application cancelled",
                    manager_id=manager.manager_id,
                    manager_name=manager.manager_name,
                )
            )

        logger.info(
            "refusal.completed",
            order_id=order_id,
            application_id=application_id,
            provider=adapter.provider_id.value,
        )
        return RefusalResult(
            order_id=order_id,
            application_id=application_id,
            credit_company=adapter.provider_id,
        )

    # ── Partner Chat ────────────────────────────────────────────────────────

    async def get_messages(self, order_id: int, new_only: bool = True) -> MessagesResult:
        order, adapter = await self._load_linked_order(order_id)
        application_id = order.loan_application_id
        messages = await adapter.get_messages(application_id, new_only)
        if adapter.supports_messages and messages:
            sent = await self._repository.get_sent_messages(application_id)
            messages = attribute_sent_messages(messages, sent)
        return MessagesResult(
            order_id=order_id,
            application_id=application_id,
            messages=messages,
        )

    async def send_message(
        self,
        order_id: int,
        text: str,
        with_files: bool = False,
        manager: ManagerContext | None = None,
    ) -> MessagesResult:
        """Post a chat message to the provider, optionally with the order files."""
        manager = manager or ManagerContext()
        order, adapter = await self._load_linked_order(order_id)
        if not adapter.supports_messages:
            raise UnsupportedOperationError(
                f"{adapter.provider_id.value} does not accept messages; "
                "the bank only comments one way"
            )
        if not text or not text.strip():
            raise ValidationError("Message text is empty")

        files: list[OrderFile] | None = None
        if with_files:
            files = await self._crm.get_order_files_as_base64(order_id, order.site)
            if not files:
                raise ValidationError("There are no files on the order to send")

        application_id = order.loan_application_id
        await adapter.send_message(application_id, text, files)

        if manager.manager_id and manager.manager_name:
            try:
                await self._repository.save_sent_message(
                    SentMessageCreate(
                        application_id=application_id,
                        message_text=text,
                        manager_id=manager.manager_id,
                        manager_name=manager.manager_name,
                    )
                )
            except Exception as exc:
                logger.error(
                    "messages.sender_save_failed",
                    application_id=application_id,
                    error=str(exc),
                )

        logger.info(
            "messages.sent",
            order_id=order_id,
            application_id=application_id,
            files_count=len(files or []),
        )
        return MessagesResult(order_id=order_id, application_id=application_id)

    # ── Misc ────────────────────────────────────────────────────────────────

    async def get_application_request_data(
        self, application_id: str | None = None, order_id: int | None = None
    ) -> ApplicationRequestRead | None:
        """Audit copy of the submitted payload, by application id or order id."""
        if application_id:
            return await self._repository.get_application_request(application_id)
        if order_id is not None:
            return await self._repository.get_application_request_by_order_id(order_id)
        return None

    async def update_order_status(self, order_id: int, status: str) -> OrderStatusUpdateResult:
        order = await self._load_order(order_id)
        await self._crm.update_order_status(order_id, status, order.site)
        logger.info("order.status_updated", order_id=order_id, status=status)
        return OrderStatusUpdateResult(order_id=order_id, new_status=status)
