"""REST API endpoints for credit applications.

Called by the CRM order widget. Every action is keyed by the CRM order
id; the application id and provider are read from the order itself.
Errors raised by the services are turned into {success: false, error}
bodies by the exception handlers registered in main.py.
"""

from __future__ import annotations

import base64
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import Response
from pydantic import BaseModel

from src.credit_bridge.api.deps import get_engine, get_orchestrator, get_services
from src.credit_bridge.credit.orchestrator import ApplicationOrchestrator
from src.credit_bridge.credit.reconciliation import ReconciliationEngine
from src.credit_bridge.credit.schemas import (
    ComparisonResult,
    ContractsResult,
    FilesSentResult,
    ManagerContext,
    MessagesResult,
    OrderStatusUpdateResult,
    RefusalResult,
    SubmissionResult,
)

router = APIRouter(prefix="/api/v1/credit", tags=["credit"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class ManagerRequest(BaseModel):
    """Manager on whose behalf the widget acts."""

    manager_id: int | None = None
    manager_name: str | None = None

    def context(self) -> ManagerContext:
        return ManagerContext(manager_id=self.manager_id, manager_name=self.manager_name)


class RefuseRequest(ManagerRequest):
    reason: str | None = None


class SendMessageRequest(ManagerRequest):
    text: str
    with_files: bool = False


class UpdateOrderStatusRequest(BaseModel):
    status: str


# ── Order Info ───────────────────────────────────────────────────────────────


@router.get("/orders/{order_id}")
async def get_order_credit_info(order_id: int, request: Request) -> dict[str, Any]:
    """Credit company, application id and payment status of an order."""
    crm = get_services(request).crm
    raw = await crm.get_order(order_id)
    if raw is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    order = crm.extract_order_data(raw)
    return {
        "success": True,
        "credit_company": order.credit_company,
        "application_id": order.loan_application_id,
        "crm_status": order.payment.status if order.payment else None,
    }


# ── Submission & Documents ───────────────────────────────────────────────────


@router.post("/orders/{order_id}/application", response_model=SubmissionResult)
async def submit_application(
    order_id: int,
    body: ManagerRequest | None = None,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> SubmissionResult:
    """Submit the order as a credit application to its provider."""
    manager = body.context() if body else None
    return await orchestrator.submit_application(order_id, manager)


@router.post("/orders/{order_id}/files", response_model=FilesSentResult)
async def send_files(
    order_id: int,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> FilesSentResult:
    return await orchestrator.send_files_to_bank(order_id)


@router.post("/orders/{order_id}/contracts/attach", response_model=ContractsResult)
async def attach_contracts(
    order_id: int,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> ContractsResult:
    return await orchestrator.get_contracts_and_attach(order_id)


@router.get("/orders/{order_id}/contracts", response_model=ContractsResult)
async def download_contracts(
    order_id: int,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> ContractsResult:
    """Contract files as base64, attached to the order if not yet there."""
    return await orchestrator.get_contracts_for_download(order_id)


@router.get("/orders/{order_id}/contracts/{file_index}")
async def download_contract_file(
    order_id: int,
    file_index: int,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> Response:
    """One contract file as a PDF download."""
    result = await orchestrator.get_contracts_for_download(order_id)
    if file_index < 0 or file_index >= len(result.files):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    file = result.files[file_index]
    return Response(
        content=base64.b64decode(file.data),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{file.name}"'},
    )


@router.post("/orders/{order_id}/refuse", response_model=RefusalResult)
async def refuse_application(
    order_id: int,
    body: RefuseRequest | None = None,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> RefusalResult:
    body = body or RefuseRequest()
    return await orchestrator.refuse_application(
        order_id, body.reason or "Client refused", body.context()
    )


# ── Partner Chat ─────────────────────────────────────────────────────────────


@router.get("/orders/{order_id}/messages", response_model=MessagesResult)
async def get_messages(
    order_id: int,
    new_only: bool = Query(default=True),
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> MessagesResult:
    return await orchestrator.get_messages(order_id, new_only)


@router.post("/orders/{order_id}/messages", response_model=MessagesResult)
async def send_message(
    order_id: int,
    body: SendMessageRequest,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> MessagesResult:
    return await orchestrator.send_message(order_id, body.text, body.with_files, body.context())


# ── Status ───────────────────────────────────────────────────────────────────


@router.post("/orders/{order_id}/status")
async def check_status(
    order_id: int,
    engine: ReconciliationEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Reconcile one order now. result is null when there is nothing to do."""
    result = await engine.check_and_update_status(order_id)
    return {"success": True, "result": result.model_dump(mode="json") if result else None}


@router.post("/check-all")
async def check_all(request: Request) -> dict[str, Any]:
    """Run a full reconciliation cycle now, unless one is already running."""
    batch = await get_services(request).scheduler.run_cycle()
    if batch is None:
        return {"success": True, "skipped": True, "reason": "Reconciliation already in progress"}
    return {"success": True, "skipped": False, **batch.model_dump(mode="json")}


@router.get("/orders/{order_id}/comparison", response_model=ComparisonResult)
async def get_comparison(
    order_id: int,
    engine: ReconciliationEngine = Depends(get_engine),
) -> ComparisonResult:
    return await engine.get_comparison_data(order_id)


@router.get("/applications/{application_id}/history")
async def get_status_history(
    application_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> dict[str, Any]:
    history = await engine.get_status_history(application_id)
    return {"success": True, "history": [h.model_dump(mode="json") for h in history]}


@router.get("/application-requests")
async def get_application_request(
    application_id: str | None = Query(default=None),
    order_id: int | None = Query(default=None),
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Audit copy of the payload that was submitted to the provider."""
    if not application_id and order_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="application_id or order_id is required",
        )
    record = await orchestrator.get_application_request_data(application_id, order_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Application request not found",
        )
    return {"success": True, "data": record.model_dump(mode="json")}


@router.put("/orders/{order_id}/status", response_model=OrderStatusUpdateResult)
async def update_order_status(
    order_id: int,
    body: UpdateOrderStatusRequest,
    orchestrator: ApplicationOrchestrator = Depends(get_orchestrator),
) -> OrderStatusUpdateResult:
    """Set the order lifecycle status in the CRM."""
    return await orchestrator.update_order_status(order_id, body.status)
