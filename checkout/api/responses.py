"""
Pydantic models for API responses.
These define the contract between the API and external clients.

Most endpoints return domain models directly; the models here only cover
shapes that exist for the HTTP layer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from checkout.bundle import SignedBundle
from checkout.domain import FinalizeOutcome, Order, WebhookOutcome
from checkout.usecase import CreateOrderResult


def confirmation_url(
    frontend_url: str, order_id: str, error_code: Optional[str] = None
) -> str:
    """Order confirmation page the browser lands on after checkout."""
    base = f"{frontend_url.rstrip('/')}/store/order-confirmation.html"
    if error_code:
        return f"{base}?error={error_code}&orderId={order_id}"
    return f"{base}?orderId={order_id}&status=success"


class HealthCheckResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime


class CreateOrderResponse(BaseModel):
    """Response for order creation.

    Gateway orders carry ``order_data``, the signed bundle the client must
    send back on verification. A timed-out attempt has ``success=False``
    and a ``redirect_to`` pointing at the confirmation page error view.
    """

    success: bool
    order_id: str
    payment_method: str
    message: Optional[str] = None
    order: Optional[Order] = None
    provider_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    checkout_payload: Dict[str, Any] = Field(default_factory=dict)
    order_data: Optional[SignedBundle] = None
    error_code: Optional[str] = None
    redirect_to: Optional[str] = None

    @classmethod
    def from_result(
        cls, result: CreateOrderResult, frontend_url: str
    ) -> "CreateOrderResponse":
        if not result.success:
            return cls(
                success=False,
                order_id=result.order_id,
                payment_method=result.payment_method,
                message="Payment provider timed out. Order has been "
                "cancelled.",
                error_code=result.error_code,
                redirect_to=confirmation_url(
                    frontend_url, result.order_id, result.error_code
                ),
            )
        return cls(
            success=True,
            order_id=result.order_id,
            payment_method=result.payment_method,
            message=(
                "Order placed successfully."
                if result.order is not None
                else "Payment initiated."
            ),
            order=result.order,
            provider_transaction_id=result.provider_transaction_id,
            redirect_url=result.redirect_url,
            checkout_payload=result.checkout_payload,
            order_data=result.signed_bundle,
        )


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    message: str
    existing: bool = False
    order: Optional[Order] = None

    @classmethod
    def from_outcome(cls, outcome: FinalizeOutcome) -> "VerifyPaymentResponse":
        existing = outcome.result == "already_paid"
        return cls(
            message=(
                "Order already exists." if existing else "Payment verified."
            ),
            existing=existing,
            order=outcome.order,
        )


class WebhookAckResponse(BaseModel):
    success: bool = True
    status: str
    order_id: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: WebhookOutcome) -> "WebhookAckResponse":
        return cls(status=outcome.status, order_id=outcome.order_id)


class RefundResponse(BaseModel):
    success: bool = True
    message: str
    order: Order


class TrackOrderResponse(BaseModel):
    orders: List[Order]


class CleanupPendingResponse(BaseModel):
    success: bool = True
    caller_key: str
    canceled_order_ids: List[str]


class AutoCancelStatusResponse(BaseModel):
    """Runtime state of the in-process auto-cancel sweeper."""

    success: bool = True
    message: Optional[str] = None
    status: Dict[str, Any]
