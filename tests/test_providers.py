"""Tests for provider adapters: status tables, conditions, payloads, registry."""

from __future__ import annotations

import dataclasses
from datetime import date
from unittest.mock import AsyncMock

import pytest

from src.credit_bridge.core.exceptions import (
    ProviderCommunicationError,
    UnsupportedOperationError,
    ValidationError,
)
from src.credit_bridge.credit.clients.easycredit import EasyCreditClient
from src.credit_bridge.credit.clients.iute import IuteClient
from src.credit_bridge.credit.clients.microinvest import MicroinvestClient
from src.credit_bridge.credit.providers import (
    EASYCREDIT_STATUS_TABLE,
    IUTE_STATUS_TABLE,
    MICROINVEST_STATUS_TABLE,
    UNMAPPED,
    EasyCreditAdapter,
    IuteAdapter,
    MicroinvestAdapter,
    ProviderRegistry,
    StatusTable,
    resolve_provider_id,
)
from src.credit_bridge.credit.providers.easycredit import first_installment_date, product_id_for_term
from src.credit_bridge.credit.providers.microinvest import DEFAULT_LOAN_PRODUCTS
from src.credit_bridge.credit.schemas import (
    CreditPayment,
    CrmStatus,
    LoanTerms,
    OrderData,
    OrderFile,
    ProviderId,
)

RETAIL_ID = DEFAULT_LOAN_PRODUCTS["retail"]
ZERO_6_ID = DEFAULT_LOAN_PRODUCTS["0%_6"]


def _make_order(**overrides) -> OrderData:
    data = {
        "order_id": 1,
        "order_number": "1A",
        "site": "pandashop",
        "phone": "069123456",
        "idnp": "2002001234567",
        "name": "Ion",
        "surname": "Popescu",
        "birthday": "05.03.1990",
        "credit_company": "microinvest",
        "credit_term": "6",
        "payment": CreditPayment(id="10", type="credit", amount=5000, status="not-paid"),
        "items": [{"offer": {"displayName": "Laptop"}, "initialPrice": 5000, "quantity": 1}],
    }
    data.update(overrides)
    return OrderData(**data)


def _microinvest() -> tuple[MicroinvestAdapter, AsyncMock]:
    client = AsyncMock(spec=MicroinvestClient)
    return MicroinvestAdapter(client), client


def _easycredit() -> tuple[EasyCreditAdapter, AsyncMock]:
    client = AsyncMock(spec=EasyCreditClient)
    return EasyCreditAdapter(client), client


# ── Status Tables ────────────────────────────────────────────────────────────


class TestStatusTables:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Placed", CrmStatus.CREDIT_CHECK),
            ("Processing", CrmStatus.CREDIT_CHECK),
            ("Approved", CrmStatus.CREDIT_APPROVED),
            ("PendingIssue", CrmStatus.CREDIT_APPROVED),
            ("Refused", CrmStatus.CREDIT_DECLINED),
            ("IssueRejected", CrmStatus.CREDIT_DECLINED),
            ("SignedOnline", CrmStatus.SIGNED_ONLINE),
            ("SignedPhysically", CrmStatus.SIGNED_ONLINE),
            ("Issued", CrmStatus.PAID),
        ],
    )
    def test_microinvest_mapping(self, raw, expected):
        adapter, _ = _microinvest()
        assert adapter.map_status(raw) == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("New", CrmStatus.CREDIT_CHECK),
            ("More Data", CrmStatus.CREDIT_CHECK),
            ("Approved", CrmStatus.CREDIT_APPROVED),
            ("Rejected", CrmStatus.CREDIT_DECLINED),
            ("Canceled", CrmStatus.CREDIT_DECLINED),
            ("Disbursed", CrmStatus.PAID),
        ],
    )
    def test_easycredit_mapping(self, raw, expected):
        adapter, _ = _easycredit()
        assert adapter.map_status(raw) == expected

    def test_iute_mapping(self):
        assert IUTE_STATUS_TABLE.mapping["PAID"] == CrmStatus.PAID
        assert IUTE_STATUS_TABLE.mapping["CANCELLED"] == CrmStatus.CREDIT_DECLINED
        assert IUTE_STATUS_TABLE.mapping["CUSTOMER_NOT_EXISTS"] == CrmStatus.CREDIT_CHECK

    def test_unknown_status_is_unmapped(self):
        adapter, _ = _microinvest()
        assert adapter.map_status("SomethingNew") is UNMAPPED
        assert adapter.map_status(None) is UNMAPPED

    def test_final_statuses(self):
        adapter, _ = _microinvest()
        assert adapter.is_final("Issued")
        assert adapter.is_final("Refused")
        assert not adapter.is_final("Approved")

    def test_approval_status(self):
        adapter, _ = _microinvest()
        assert adapter.is_approval("Approved")
        assert not adapter.is_approval("PendingIssue")
        assert adapter.is_approved_like("PendingIssue")

    def test_iute_has_no_approval_status(self):
        adapter = IuteAdapter(AsyncMock(spec=IuteClient))
        assert not adapter.is_approval("PAID")
        assert adapter.is_approved_like("PAID")

    def test_tables_are_immutable(self):
        with pytest.raises(TypeError):
            MICROINVEST_STATUS_TABLE.mapping["Placed"] = CrmStatus.PAID
        with pytest.raises(dataclasses.FrozenInstanceError):
            EASYCREDIT_STATUS_TABLE.approval_status = "New"

    def test_table_copies_source_mapping(self):
        source = {"A": CrmStatus.CREDIT_CHECK}
        table = StatusTable(mapping=source)
        source["B"] = CrmStatus.PAID
        assert "B" not in table.mapping

    def test_adapter_accepts_injected_table(self):
        table = StatusTable(mapping={"Approved": CrmStatus.SIGNED_ONLINE})
        adapter = MicroinvestAdapter(AsyncMock(spec=MicroinvestClient), table=table)
        assert adapter.map_status("Approved") == CrmStatus.SIGNED_ONLINE
        assert adapter.map_status("Issued") is UNMAPPED


# ── Conditions Comparison ────────────────────────────────────────────────────


class TestConditionsChanged:
    def test_microinvest_same_terms(self):
        adapter, _ = _microinvest()
        requested = LoanTerms(amount=5000, term=6, product_type="retail")
        assert not adapter.conditions_changed(requested, LoanTerms(amount=5000, term=6))

    def test_microinvest_amount_is_exact(self):
        adapter, _ = _microinvest()
        requested = LoanTerms(amount=5000, term=6)
        assert adapter.conditions_changed(requested, LoanTerms(amount=4500, term=6))
        assert adapter.conditions_changed(requested, LoanTerms(amount=5000.5, term=6))

    def test_microinvest_term_change(self):
        adapter, _ = _microinvest()
        requested = LoanTerms(amount=5000, term=6)
        assert adapter.conditions_changed(requested, LoanTerms(amount=5000, term=12))

    def test_microinvest_product_change(self):
        adapter, _ = _microinvest()
        requested = LoanTerms(amount=5000, term=6, product_type="0%")
        assert adapter.conditions_changed(
            requested, LoanTerms(amount=5000, term=6, product_type="retail")
        )

    def test_easycredit_tolerance(self):
        adapter, _ = _easycredit()
        requested = LoanTerms(amount=1000.00, term=6)
        assert not adapter.conditions_changed(requested, LoanTerms(amount=1001.00, term=6))
        assert not adapter.conditions_changed(requested, LoanTerms(amount=999.00, term=6))
        assert adapter.conditions_changed(requested, LoanTerms(amount=1001.01, term=6))

    def test_easycredit_ignores_product(self):
        adapter, _ = _easycredit()
        requested = LoanTerms(amount=1000, term=6, product_type="0%")
        assert not adapter.conditions_changed(
            requested, LoanTerms(amount=1000, term=6, product_type="retail")
        )

    def test_no_approved_terms_is_unchanged(self):
        adapter, _ = _easycredit()
        assert not adapter.conditions_changed(LoanTerms(amount=1000, term=6), None)

    def test_iute_never_changes(self):
        adapter = IuteAdapter(AsyncMock(spec=IuteClient))
        assert not adapter.conditions_changed(
            LoanTerms(amount=1000, term=6), LoanTerms(amount=1, term=1)
        )


# ── Microinvest ──────────────────────────────────────────────────────────────


class TestMicroinvestAdapter:
    def test_loan_product_selection(self):
        adapter, _ = _microinvest()
        assert adapter.loan_product_id(True, "6") == ZERO_6_ID
        assert adapter.loan_product_id(True, 6) == ZERO_6_ID
        assert adapter.loan_product_id(True, "5") == RETAIL_ID
        assert adapter.loan_product_id(False, "6") == RETAIL_ID

    def test_product_type(self):
        adapter, _ = _microinvest()
        assert adapter.product_type(ZERO_6_ID) == "0%"
        assert adapter.product_type(RETAIL_ID) == "retail"
        assert adapter.product_type("not-a-product") == "retail"
        assert adapter.product_type(None) == "retail"

    def test_requested_terms_follow_zero_credit_flag(self):
        adapter, _ = _microinvest()
        terms = adapter.requested_terms(_make_order(zero_credit=True))
        assert terms == LoanTerms(amount=5000, term=6, product_type="0%")

    def test_requested_terms_missing_values_are_zero(self):
        adapter, _ = _microinvest()
        terms = adapter.requested_terms(_make_order(payment=None, credit_term=None))
        assert terms.amount == 0
        assert terms.term == 0

    def test_build_payload(self):
        adapter, _ = _microinvest()
        payload = adapter.build_payload(_make_order())
        assert payload["idnp"] == "2002001234567"
        assert payload["birthDate"] == "1990-03-05"
        assert payload["phoneCell"] == "+37369123456"
        assert payload["amount"] == "5000"
        assert payload["loanTerm"] == "6"
        assert payload["loanProductID"] == RETAIL_ID
        assert payload["comment"] == "Nr. comenzii: 1A"

    def test_validate_requires_files(self):
        adapter, _ = _microinvest()
        with pytest.raises(ValidationError, match="passport"):
            adapter.validate(_make_order(), [])
        adapter.validate(_make_order(), [OrderFile(name="p.jpg", data="aGk=")])

    @pytest.mark.asyncio
    async def test_submit_sends_files_in_payload(self):
        adapter, client = _microinvest()
        client.import_loan_application.return_value = {"applicationID": "MI-1"}
        files = [OrderFile(name="p.jpg", data="aGk=")]

        outcome = await adapter.submit(_make_order(), files)

        assert outcome.application_id == "MI-1"
        sent = client.import_loan_application.call_args.args[0]
        assert sent["fileAttachmentSet"] == [{"name": "p.jpg", "data": "aGk="}]
        assert "fileAttachmentSet" not in outcome.request_data

    @pytest.mark.asyncio
    async def test_submit_without_application_id_fails(self):
        adapter, client = _microinvest()
        client.import_loan_application.return_value = {"errors": []}
        with pytest.raises(ProviderCommunicationError) as exc_info:
            await adapter.submit(_make_order(), [])
        assert exc_info.value.provider == "microinvest"

    @pytest.mark.asyncio
    async def test_get_status(self):
        adapter, client = _microinvest()
        client.check_application_status.return_value = {
            "status": "Approved",
            "amount": "4500",
            "loanTerm": "6",
            "loanProductID": RETAIL_ID,
            "name": "Ion",
            "surname": "Popescu",
        }
        status = await adapter.get_status("MI-1")
        assert status.raw_status == "Approved"
        assert status.approved == LoanTerms(amount=4500, term=6, product_type="retail")
        assert status.customer_name == "Ion Popescu"

    @pytest.mark.asyncio
    async def test_get_status_not_ready(self):
        adapter, client = _microinvest()
        client.check_application_status.return_value = None
        assert await adapter.get_status("MI-1") is None

    @pytest.mark.asyncio
    async def test_get_contracts(self):
        adapter, client = _microinvest()
        client.get_contracts.return_value = [{"name": "contract.pdf", "data": "JVBERi0="}, {"data": "eA=="}]
        files = await adapter.get_contracts("MI-1")
        assert [f.name for f in files] == ["contract.pdf", "contract_MI-1.pdf"]

    @pytest.mark.asyncio
    async def test_messages(self):
        adapter, client = _microinvest()
        client.get_messages.return_value = [
            {"date": "2026-01-15T10:00:00", "senderName": "Bank", "senderID": "MI1", "text": "Hi"}
        ]
        messages = await adapter.get_messages("MI-1", new_only=False)
        assert messages[0].sender_name == "Bank"
        client.get_messages.assert_awaited_once_with("MI-1", False)


# ── Easy Credit ──────────────────────────────────────────────────────────────


class TestEasyCreditAdapter:
    @pytest.mark.parametrize(
        "term,product",
        [(3, 54), (6, 54), (11, 54), (12, 55), (18, 56), (24, 57), (36, 58), (48, 54)],
    )
    def test_product_for_term(self, term, product):
        assert product_id_for_term(term) == product

    def test_first_installment_date(self):
        assert first_installment_date(today=date(2026, 1, 1)) == "2026-01-21"

    def test_build_payload(self):
        adapter, _ = _easycredit()
        payload = adapter.build_payload(
            _make_order(credit_company="easycredit", credit_term="12"), today=date(2026, 1, 1)
        )
        assert payload["Product"] == 55
        assert payload["UIN"] == "2002001234567"
        assert payload["ApDateOfBirth"] == "1990-03-05"
        assert payload["CaMobile"] == "069123456"
        assert payload["GoodsName"] == "Laptop"
        assert payload["CreditAmount"] == 5000
        assert payload["NumberOfInstallments"] == 12
        assert payload["FirstInstallmentDate"] == "2026-01-21"

    def test_build_payload_defaults_term(self):
        adapter, _ = _easycredit()
        payload = adapter.build_payload(_make_order(credit_term=None))
        assert payload["NumberOfInstallments"] == 6

    @pytest.mark.asyncio
    async def test_submit_returns_urn(self):
        adapter, client = _easycredit()
        client.create_request.return_value = {"Status": "OK", "URN": "URN-1"}
        outcome = await adapter.submit(_make_order(), [])
        assert outcome.application_id == "URN-1"
        assert adapter.uploads_after_submit

    @pytest.mark.asyncio
    async def test_submit_error_carries_partner_message(self):
        adapter, client = _easycredit()
        client.create_request.return_value = {"Status": "Error", "Message": "Invalid UIN"}
        with pytest.raises(ProviderCommunicationError) as exc_info:
            await adapter.submit(_make_order(), [])
        assert str(exc_info.value) == "Invalid UIN"
        assert exc_info.value.provider == "easycredit"

    @pytest.mark.asyncio
    async def test_get_status(self):
        adapter, client = _easycredit()
        client.check_status.return_value = {
            "Status": "OK",
            "RequestStatus": "Approved",
            "LoanAmount": "1000",
            "Installments": "6",
            "DocumentStatus": "Signed",
        }
        status = await adapter.get_status("URN-1")
        assert status.raw_status == "Approved"
        assert status.document_status == "Signed"
        assert status.approved.amount == 1000

    @pytest.mark.asyncio
    async def test_get_status_requires_ok(self):
        adapter, client = _easycredit()
        client.check_status.return_value = {"Status": "Error", "RequestStatus": "Approved"}
        assert await adapter.get_status("URN-1") is None

    @pytest.mark.asyncio
    async def test_contract_is_doc_type_a(self):
        adapter, client = _easycredit()
        client.get_contract.return_value = {"DocTypeA": "JVBERi0="}
        files = await adapter.get_contracts("URN-1")
        assert files == [OrderFile(name="contract_URN-1.pdf", data="JVBERi0=")]

        client.get_contract.return_value = {}
        assert await adapter.get_contracts("URN-1") == []

    @pytest.mark.asyncio
    async def test_messages_come_from_status_message(self):
        adapter, client = _easycredit()
        client.check_status.return_value = {
            "Status": "OK",
            "RequestStatus": "More Data",
            "Message": "Send a passport photo",
        }
        messages = await adapter.get_messages("URN-1")
        assert [m.text for m in messages] == ["Send a passport photo"]

        client.check_status.return_value = {"Status": "OK", "RequestStatus": "New", "Message": "#"}
        assert await adapter.get_messages("URN-1") == []

    @pytest.mark.asyncio
    async def test_send_message_is_unsupported(self):
        adapter, _ = _easycredit()
        assert not adapter.supports_messages
        with pytest.raises(UnsupportedOperationError):
            await adapter.send_message("URN-1", "hello")


# ── Iute ─────────────────────────────────────────────────────────────────────


class TestIuteAdapter:
    def test_preconditions(self):
        adapter = IuteAdapter(AsyncMock(spec=IuteClient))
        assert not adapter.requires_personal_data
        assert not adapter.requires_payment
        assert not adapter.attaches_documents

    def test_validate_requires_phone(self):
        adapter = IuteAdapter(AsyncMock(spec=IuteClient))
        with pytest.raises(ValidationError, match="phone"):
            adapter.validate(_make_order(phone=None), [])

    def test_reference_and_amount(self):
        adapter = IuteAdapter(AsyncMock(spec=IuteClient))
        order = _make_order(order_id=77, payment=None, total_summ=1200)
        assert adapter.application_reference(order) == "CRM-77"
        assert adapter.order_amount(order) == 1200

    @pytest.mark.asyncio
    async def test_submit(self):
        client = AsyncMock(spec=IuteClient)
        client.build_order_payload.return_value = {"orderId": "CRM-1"}
        client.create_order.return_value = {
            "status": "CUSTOMER_NOT_EXISTS",
            "myiuteCustomer": False,
        }
        adapter = IuteAdapter(client)

        outcome = await adapter.submit(_make_order(), [])

        assert outcome.application_id == "CRM-1"
        assert outcome.initial_status == "CUSTOMER_NOT_EXISTS"
        assert outcome.myiute_customer is False
        kwargs = client.build_order_payload.call_args.kwargs
        assert kwargs["phone"] == "+37369123456"
        assert kwargs["amount"] == 5000
        assert kwargs["items"][0]["displayName"] == "Laptop"


# ── Registry ─────────────────────────────────────────────────────────────────


class TestProviderRegistry:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, ProviderId.MICROINVEST),
            ("", ProviderId.MICROINVEST),
            ([], ProviderId.MICROINVEST),
            ("easycredit", ProviderId.EASYCREDIT),
            (["easycredit"], ProviderId.EASYCREDIT),
            (" Microinvest ", ProviderId.MICROINVEST),
            ("iutecredit", ProviderId.IUTE),
            ("iute", ProviderId.IUTE),
        ],
    )
    def test_resolve_provider_id(self, value, expected):
        assert resolve_provider_id(value) == expected

    def test_unknown_company_rejected(self):
        with pytest.raises(ValidationError, match="Unknown credit company"):
            resolve_provider_id("otherbank")

    def test_unconfigured_provider_rejected(self):
        registry = ProviderRegistry([MicroinvestAdapter(AsyncMock(spec=MicroinvestClient))])
        with pytest.raises(ValidationError, match="not configured"):
            registry.for_company("iutecredit")

    def test_lookup_and_iteration(self, providers):
        assert providers.for_company("easycredit").provider_id == ProviderId.EASYCREDIT
        assert {a.provider_id for a in providers} == set(ProviderId)
