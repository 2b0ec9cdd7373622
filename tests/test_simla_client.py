"""Tests for the Simla CRM client."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.credit_bridge.core.exceptions import CRMCommunicationError
from src.credit_bridge.credit.crm.simla import (
    ACTIVE_APPLICATION_COMPANIES,
    ACTIVE_PAYMENT_STATUSES,
    SimlaClient,
    is_contract_file,
)
from src.credit_bridge.credit.schemas import OrderFile
from tests.conftest import make_raw_order


def _response(status_code: int, json_body=None, method: str = "GET") -> httpx.Response:
    return httpx.Response(
        status_code,
        json=json_body,
        request=httpx.Request(method, "https://crm.test"),
    )


@pytest.fixture
def simla() -> SimlaClient:
    return SimlaClient("https://crm.test/api/v5/", "api-key")


class TestOrderParsing:
    def test_extract_order_data(self, simla):
        raw = make_raw_order(1, application_id="MI-1", zero_credit=True)
        raw["customFields"]["credit_company"] = ["easycredit"]
        raw["customFields"]["zero_credit"] = "true"

        order = simla.extract_order_data(raw)

        assert order.order_id == 1
        assert order.order_number == "1A"
        assert order.credit_company == "easycredit"
        assert order.zero_credit is True
        assert order.loan_application_id == "MI-1"
        assert order.payment.id == "10"
        assert order.payment.amount == 5000
        assert order.credit_term_months == 6
        assert (order.name, order.surname) == ("Ion", "Popescu")
        assert order.created_at.year == 2026

    def test_find_credit_payment_ignores_other_types(self, simla):
        raw = make_raw_order(1)
        raw["payments"] = {
            "1": {"id": 1, "type": "cash", "amount": 100, "status": "paid"},
            "2": {"id": 2, "type": "kredit-onlain", "amount": "", "status": "not-paid"},
        }
        payment = simla.find_credit_payment(raw)
        assert payment.id == "2"
        assert payment.amount is None

    def test_no_credit_payment(self, simla):
        raw = make_raw_order(1, payment_status=None)
        assert simla.find_credit_payment(raw) is None

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Contract_123.pdf", True),
            ("договор.pdf", True),
            ("client.pdf", True),
            ("MICROINVEST.PDF", True),
            ("passport.jpg", False),
            (None, False),
        ],
    )
    def test_is_contract_file(self, name, expected):
        assert is_contract_file(name) is expected


class TestRequests:
    @pytest.mark.asyncio
    async def test_get_order(self, simla):
        response = _response(200, {"success": True, "order": {"id": 1, "site": "pandashop"}})
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response) as mock_request:
            order = await simla.get_order(1)

        assert order["site"] == "pandashop"
        method, url = mock_request.call_args.args
        assert url == "https://crm.test/api/v5/orders/1"
        params = mock_request.call_args.kwargs["params"]
        assert ("apiKey", "api-key") in params
        assert ("by", "id") in params

    @pytest.mark.asyncio
    async def test_missing_order_is_none(self, simla):
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=_response(404)):
            assert await simla.get_order(1) is None

    @pytest.mark.asyncio
    async def test_unsuccessful_body_raises(self, simla):
        response = _response(200, {"success": False, "errorMsg": "Wrong apiKey"})
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response):
            with pytest.raises(CRMCommunicationError, match="Wrong apiKey"):
                await simla.get_order(1)

    @pytest.mark.asyncio
    async def test_active_applications_deduplicated_and_filtered(self, simla):
        linked = make_raw_order(1, application_id="MI-1")
        unlinked = make_raw_order(2)
        delivering = make_raw_order(3, application_id="MI-3", status="delivering")
        response = _response(200, {"success": True, "orders": [linked, unlinked, delivering]})

        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response) as mock_request:
            orders = await simla.get_orders_with_active_applications()

        assert [o["id"] for o in orders] == [1]
        assert mock_request.await_count == (
            len(ACTIVE_APPLICATION_COMPANIES) * len(ACTIVE_PAYMENT_STATUSES)
        )

    @pytest.mark.asyncio
    async def test_link_application_writes_custom_fields(self, simla):
        response = _response(200, {"success": True}, method="POST")
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response) as mock_request:
            await simla.update_order_with_application_id(
                1, "MI-1", "pandashop", credit_company="microinvest"
            )

        method, url = mock_request.call_args.args
        assert method == "POST"
        assert url == "https://crm.test/api/v5/orders/1/edit"
        data = mock_request.call_args.kwargs["data"]
        assert data["site"] == "pandashop"
        assert json.loads(data["order"]) == {
            "customFields": {"loan_application_id": "MI-1", "credit_company": "microinvest"}
        }

    @pytest.mark.asyncio
    async def test_site_resolved_from_order_when_missing(self, simla):
        responses = [
            _response(200, {"success": True, "order": {"id": 1, "site": "pandashop"}}),
            _response(200, {"success": True}, method="POST"),
        ]
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, side_effect=responses) as mock_request:
            await simla.update_payment_status(1, "10", "credit-approved", None)

        method, url = mock_request.call_args.args
        assert url == "https://crm.test/api/v5/orders/payments/10/edit"
        data = mock_request.call_args.kwargs["data"]
        assert data["site"] == "pandashop"
        assert json.loads(data["payment"]) == {"status": "credit-approved"}

    @pytest.mark.asyncio
    async def test_upload_file_attaches_to_order(self, simla):
        responses = [
            _response(200, {"success": True, "file": {"id": 55}}, method="POST"),
            _response(200, {"success": True}, method="POST"),
        ]
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, side_effect=responses) as mock_request:
            await simla.upload_file_to_order(
                1, OrderFile(name="contract.pdf", data="JVBERi0="), "pandashop"
            )

        upload_call, edit_call = mock_request.call_args_list
        assert upload_call.args[1] == "https://crm.test/api/v5/files/upload"
        assert upload_call.kwargs["headers"] == {"Content-Type": "application/pdf"}
        assert edit_call.args[1] == "https://crm.test/api/v5/files/55/edit"
        attachment = json.loads(edit_call.kwargs["data"]["file"])["attachment"]
        assert attachment == [{"order": {"id": 1}}]

    @pytest.mark.asyncio
    async def test_transport_error_becomes_crm_error(self, simla):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            side_effect=httpx.ReadError("reset"),
        ):
            with pytest.raises(CRMCommunicationError):
                await simla.update_order_status(1, "complete", "pandashop")

    @pytest.mark.asyncio
    async def test_manager_names_cached(self, simla):
        response = _response(200, {"success": True, "user": {"firstName": "Ana", "lastName": "Rusu"}})
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response) as mock_request:
            assert await simla.get_manager_name(7) == "Ana Rusu"
            assert await simla.get_manager_name(7) == "Ana Rusu"
            assert await simla.get_manager_name(None) is None

        assert mock_request.await_count == 1

    @pytest.mark.asyncio
    async def test_user_name_falls_back_to_email(self, simla):
        response = _response(200, {"success": True, "user": {"email": "ops@pandashop.md"}})
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response):
            assert await simla.get_user_name(9) == "ops@pandashop.md"

    @pytest.mark.asyncio
    async def test_orders_history_since_cursor(self, simla):
        response = _response(200, {"success": True, "history": [{"id": 11}]})
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=response) as mock_request:
            history = await simla.get_orders_history(10, limit=50)

        assert history == [{"id": 11}]
        params = mock_request.call_args.kwargs["params"]
        assert ("filter[sinceId]", 10) in params
        assert ("limit", 50) in params
