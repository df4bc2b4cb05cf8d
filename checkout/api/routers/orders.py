"""
Orders API router.

Routes, mounted with the '/api/orders' prefix:
- POST /create-order - Start a checkout attempt (x-idempotency-key header)
- POST /verify-payment - Confirm a card/UPI payment from the client
- POST /phonepe-verify - Confirm a wallet payment from the client
- GET /phonepe-return/{order_id} - Browser return from the wallet page
- POST /track-order - Look up orders by contact details
- GET /{order_id} - Order status view

``GET /{order_id}`` matches any single path segment, so this router must be
included after every other router that shares the prefix.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse, RedirectResponse

from checkout.api.dependencies import (
    get_order_query_use_case,
    get_reconciliation_use_case,
    get_settings,
)
from checkout.api.requests import (
    CreateOrderRequest,
    PhonePeVerifyRequest,
    RazorpayVerifyRequest,
    TrackOrderRequest,
)
from checkout.api.responses import (
    CreateOrderResponse,
    TrackOrderResponse,
    VerifyPaymentResponse,
    confirmation_url,
)
from checkout.config import Settings
from checkout.domain import Order
from checkout.usecase import GetOrderUseCase, OrderReconciliationUseCase

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    request: CreateOrderRequest,
    x_idempotency_key: Optional[str] = Header(None),
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """
    Create an order (cash on delivery) or a payment intent (gateways).

    Cash on delivery answers 201 with the stored order. Gateway methods
    answer 200 with the provider handle and the signed ``order_data`` the
    client must send back to the verify endpoint. A provider timeout is
    answered with 200, ``success=false`` and a confirmation page redirect.
    """
    logger.info(
        "Order creation requested",
        extra={
            "payment_method": request.payment_method,
            "item_count": len(request.cart_items),
        },
    )
    result = await use_case.create_order(
        request.to_command(), x_idempotency_key
    )
    response = CreateOrderResponse.from_result(result, settings.frontend_url)
    status_code = 201 if result.success and result.order is not None else 200
    return JSONResponse(
        status_code=status_code, content=response.model_dump(mode="json")
    )


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
async def verify_razorpay_payment(
    request: RazorpayVerifyRequest,
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
) -> VerifyPaymentResponse:
    """Verify the checkout signature and record the paid order."""
    logger.info(
        "Razorpay verification requested",
        extra={"provider_transaction_id": request.razorpay_order_id},
    )
    outcome = await use_case.verify_payment(
        "razorpay", request.to_proof(), request.order_data
    )
    return VerifyPaymentResponse.from_outcome(outcome)


@router.post("/phonepe-verify", response_model=VerifyPaymentResponse)
async def verify_phonepe_payment(
    request: PhonePeVerifyRequest,
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
) -> VerifyPaymentResponse:
    logger.info(
        "PhonePe verification requested",
        extra={
            "provider_transaction_id": request.transaction_id,
            "order_id": request.order_id,
        },
    )
    outcome = await use_case.verify_payment(
        "phonepe", request.to_proof(), request.order_data
    )
    return VerifyPaymentResponse.from_outcome(outcome)


@router.get("/phonepe-return/{order_id}")
async def phonepe_return(
    order_id: str,
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """
    Land the browser on the confirmation page after the wallet flow.

    Always redirects; failures become an ``error`` query parameter instead
    of an error page.
    """
    logger.info("PhonePe return received", extra={"order_id": order_id})
    try:
        outcome = await use_case.handle_return(order_id)
        error_code = None if outcome.success else outcome.error_code
    except Exception as e:
        logger.error(
            "PhonePe return handling failed",
            extra={
                "order_id": order_id,
                "error_type": type(e).__name__,
                "error_message": str(e),
            },
            exc_info=True,
        )
        error_code = "system_error"

    return RedirectResponse(
        url=confirmation_url(settings.frontend_url, order_id, error_code),
        status_code=302,
    )


@router.post("/track-order", response_model=TrackOrderResponse)
async def track_order(
    request: TrackOrderRequest,
    use_case: GetOrderUseCase = Depends(get_order_query_use_case),
) -> TrackOrderResponse:
    orders = await use_case.track(
        request.email, request.phone, request.order_id
    )
    if not orders:
        raise HTTPException(
            status_code=404, detail="No orders found for the given details."
        )
    return TrackOrderResponse(orders=orders)


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    use_case: GetOrderUseCase = Depends(get_order_query_use_case),
) -> Order:
    logger.debug("Getting order status", extra={"order_id": order_id})
    return await use_case.get(order_id)
