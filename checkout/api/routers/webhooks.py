"""
Provider webhook API router.

Routes, mounted with the '/api/orders' prefix:
- POST /phonepe-webhook - Wallet callbacks, signed in the X-Verify header
- POST /razorpay-webhook - Card/UPI events, signed in x-razorpay-signature

Signatures are computed over the raw request body, so these endpoints read
bytes rather than a parsed model. A correctly signed event is always
acknowledged with 200; an invalid signature is answered with 400.
"""

import logging

from fastapi import APIRouter, Depends, Request

from checkout.api.dependencies import get_reconciliation_use_case
from checkout.api.responses import WebhookAckResponse
from checkout.usecase import OrderReconciliationUseCase

logger = logging.getLogger(__name__)

router = APIRouter()


async def _handle(
    request: Request,
    payment_method: str,
    signature_header: str,
    use_case: OrderReconciliationUseCase,
) -> WebhookAckResponse:
    payload = await request.body()
    signature = request.headers.get(signature_header)
    logger.info(
        "Webhook received",
        extra={
            "gateway": payment_method,
            "body_bytes": len(payload),
            "has_signature": signature is not None,
        },
    )
    outcome = await use_case.handle_webhook(payment_method, payload, signature)
    return WebhookAckResponse.from_outcome(outcome)


@router.post("/phonepe-webhook", response_model=WebhookAckResponse)
async def phonepe_webhook(
    request: Request,
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
) -> WebhookAckResponse:
    return await _handle(request, "phonepe", "X-Verify", use_case)


@router.post("/razorpay-webhook", response_model=WebhookAckResponse)
async def razorpay_webhook(
    request: Request,
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
) -> WebhookAckResponse:
    return await _handle(
        request, "razorpay", "x-razorpay-signature", use_case
    )
