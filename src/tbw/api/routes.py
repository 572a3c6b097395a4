from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from tbw.api.errors import ApiError
from tbw.api.schemas import RepayRequest, RollbackRequest, UnpaidRequest
from tbw.log_events import log_event
from tbw.runtime import metrics

Json = Dict[str, Any]

router = APIRouter()

log = logging.getLogger("tbw.http")


def _payer(request: Request):
    payer = getattr(request.app.state, "payer", None)
    if payer is None:
        raise ApiError.internal("not_ready", "payer not attached to app.state")
    return payer


def _handler(request: Request):
    handler = getattr(request.app.state, "block_handler", None)
    if handler is None:
        raise ApiError.internal("not_ready", "block handler not attached to app.state")
    return handler


@router.post("/pay")
async def pay(request: Request) -> Json:
    log_event(log, "pay_requested")
    result = await _payer(request).pay()
    return {"success": True, **result.to_dict()}


@router.post("/repay")
async def repay(request: Request, body: RepayRequest) -> Json:
    log_event(log, "repay_requested", id=body.id)
    new_id = await _payer(request).replay(body.id)
    return {"success": True, "id": new_id}


@router.post("/rollback")
def rollback(request: Request, body: RollbackRequest) -> Json:
    log_event(log, "rollback_requested", level=logging.WARNING, height=body.height)
    reopened = _handler(request).rollback(body.height)
    return {"success": True, "reopened": reopened}


@router.post("/unpaid")
async def unpaid(request: Request, body: UnpaidRequest) -> Json:
    paytable = await _payer(request).unpaid(body.username)
    return {"success": True, **paytable.to_wire()}


@router.get("/health")
def health(request: Request) -> Json:
    ledger = getattr(request.app.state, "ledger", None)
    out: Json = {"ok": True, "ready": getattr(request.app.state, "payer", None) is not None}
    if ledger is not None:
        out["last_block_height"] = ledger.last_block_height()
        out["last_paid_height"] = ledger.last_paid_height()
    return out


@router.get("/metrics", response_class=PlainTextResponse)
def prometheus_metrics() -> str:
    return metrics.format_prometheus()
