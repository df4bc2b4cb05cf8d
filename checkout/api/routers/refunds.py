"""
Refunds API router.

Routes, mounted with the '/api/orders' prefix:
- POST /refund/full - Refund the remaining balance and close the order
- POST /refund/partial - Refund part of a paid order
- GET /refund/status/{refund_id} - Refresh one refund's provider status
- GET /refund/{order_id} - Refund history and refundable balance
"""

import logging

from fastapi import APIRouter, Depends

from checkout.api.dependencies import get_refund_use_case
from checkout.api.requests import FullRefundRequest, PartialRefundRequest
from checkout.api.responses import RefundResponse
from checkout.domain import RefundStatusReport, RefundSummary
from checkout.usecase import RefundUseCase

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/refund/full", response_model=RefundResponse)
async def full_refund(
    request: FullRefundRequest,
    use_case: RefundUseCase = Depends(get_refund_use_case),
) -> RefundResponse:
    logger.info("Full refund requested", extra={"order_id": request.order_id})
    order = await use_case.full_refund(request.order_id, request.reason)
    return RefundResponse(message="Full refund processed.", order=order)


@router.post("/refund/partial", response_model=RefundResponse)
async def partial_refund(
    request: PartialRefundRequest,
    use_case: RefundUseCase = Depends(get_refund_use_case),
) -> RefundResponse:
    logger.info(
        "Partial refund requested",
        extra={"order_id": request.order_id, "amount": str(request.amount)},
    )
    order = await use_case.partial_refund(
        request.order_id, request.amount, request.reason
    )
    return RefundResponse(message="Partial refund processed.", order=order)


@router.get("/refund/status/{refund_id}", response_model=RefundStatusReport)
async def refund_status(
    refund_id: str,
    use_case: RefundUseCase = Depends(get_refund_use_case),
) -> RefundStatusReport:
    logger.info("Refund status requested", extra={"refund_id": refund_id})
    return await use_case.refund_status(refund_id)


@router.get("/refund/{order_id}", response_model=RefundSummary)
async def refund_summary(
    order_id: str,
    use_case: RefundUseCase = Depends(get_refund_use_case),
) -> RefundSummary:
    return await use_case.refund_summary(order_id)
