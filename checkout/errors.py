"""
Business error taxonomy for checkout and payment reconciliation.

Use cases raise these; the API boundary translates them into JSON
responses using ``status_code`` and ``error_code``. Anything that is not a
``CheckoutError`` is treated as an unexpected failure and answered with a
generic 500.
"""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base class for all expected checkout failures."""

    status_code: int = 400
    error_code: str = "CHECKOUT_ERROR"

    def __init__(
        self, message: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        body.update(self.details)
        return body


class ValidationError(CheckoutError):
    """Client-fixable problem with the request."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class ProductNotFound(CheckoutError):
    status_code = 404
    error_code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        super().__init__(
            f"Product with ID {product_id} not found.",
            {"productId": product_id},
        )
        self.product_id = product_id


class OrderNotFound(CheckoutError):
    status_code = 404
    error_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found.", {"orderId": order_id})
        self.order_id = order_id


class RefundNotFound(CheckoutError):
    status_code = 404
    error_code = "REFUND_NOT_FOUND"

    def __init__(self, refund_id: str) -> None:
        super().__init__(
            f"Refund {refund_id} not found.", {"refundId": refund_id}
        )
        self.refund_id = refund_id


class DuplicateAttempt(CheckoutError):
    """The composite idempotency key already belongs to an order.

    Not a failure from the caller's point of view: the response carries the
    existing order's identifier and status.
    """

    status_code = 409
    error_code = "DUPLICATE_ORDER"

    def __init__(
        self, order_id: str, order_status: str, payment_status: str
    ) -> None:
        super().__init__(
            "Order already exists with this idempotency key.",
            {
                "orderId": order_id,
                "status": order_status,
                "paymentStatus": payment_status,
            },
        )
        self.order_id = order_id
        self.order_status = order_status
        self.payment_status = payment_status


class InsufficientStock(CheckoutError):
    status_code = 409
    error_code = "INSUFFICIENT_STOCK"

    def __init__(
        self, product_id: str, requested: int, available: int
    ) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}.",
            {
                "productId": product_id,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class PaymentVerificationFailed(CheckoutError):
    """Signature, bundle or provider-state mismatch.

    Always recorded as a security audit event by the caller.
    """

    status_code = 400
    error_code = "PAYMENT_VERIFICATION_FAILED"


class GatewayTimeout(CheckoutError):
    status_code = 504
    error_code = "GATEWAY_TIMEOUT"


class GatewayError(CheckoutError):
    """Provider rejected the call or answered with something unusable.

    The message is safe to show to users; provider details only go to logs.
    """

    status_code = 502
    error_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str = "Payment provider is currently unavailable.",
        provider_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class GatewayAuthError(GatewayError):
    """Provider refused our credentials (HTTP 401/403)."""

    error_code = "GATEWAY_AUTH_ERROR"


class RefundIneligible(CheckoutError):
    status_code = 400
    error_code = "REFUND_INELIGIBLE"


class ConfigurationError(CheckoutError):
    """The process was started with settings it cannot run with."""

    status_code = 500
    error_code = "CONFIGURATION_ERROR"
