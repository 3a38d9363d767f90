"""
Inbound payment gateway webhooks.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from subhook.core.dependencies import get_webhook_gate
from subhook.services.webhook_gate import WebhookIngressGate

router = APIRouter()


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None),
    gate: WebhookIngressGate = Depends(get_webhook_gate),
) -> JSONResponse:
    """
    Receive a gateway notification.

    200 when processed (or already processed), 202 when accepted without
    processing, 401 when the signature does not verify.
    """
    raw_body = await request.body()
    decision = await gate.handle(raw_body, x_signature)
    return JSONResponse(status_code=decision.status_code, content=decision.body)
