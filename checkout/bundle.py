"""
Signed checkout bundle.

Gateway-mediated checkouts hand the client a copy of the pending order
data instead of keeping server-side session state. The client echoes it
back at confirmation time. The bundle is serialised once, base64url
encoded and signed with HMAC-SHA256, so verification never depends on how
the client re-serialises JSON. A valid signature only proves we issued the
bundle; prices, stock and totals are still re-derived at confirmation.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from checkout.domain import (
    CartItem,
    Customer,
    OrderItem,
    OrderTotals,
    PaymentMethod,
    ShippingAddress,
    utcnow,
)
from checkout.errors import PaymentVerificationFailed

logger = logging.getLogger(__name__)


class CheckoutBundle(BaseModel):
    order_id: str
    caller_key: str
    payment_method: PaymentMethod
    provider_transaction_id: str
    customer: Customer
    shipping_address: ShippingAddress
    cart_items: List[CartItem]
    order_items: List[OrderItem]
    totals: OrderTotals
    applied_coupons: List[str] = Field(default_factory=list)
    issued_at: datetime = Field(default_factory=utcnow)


class SignedBundle(BaseModel):
    payload: str
    signature: str


def _sign(payload: str, secret: str) -> str:
    return hmac.new(
        secret.encode(), payload.encode(), hashlib.sha256
    ).hexdigest()


def sign_bundle(bundle: CheckoutBundle, secret: str) -> SignedBundle:
    payload = base64.urlsafe_b64encode(
        bundle.model_dump_json().encode()
    ).decode()
    return SignedBundle(payload=payload, signature=_sign(payload, secret))


def verify_bundle(
    signed: SignedBundle,
    secret: str,
    max_age_seconds: int,
    now: Optional[datetime] = None,
) -> CheckoutBundle:
    """Check the signature and age of an echoed bundle and decode it.

    Raises:
        PaymentVerificationFailed: if the bundle was tampered with, cannot
            be decoded or is older than ``max_age_seconds``
    """
    expected = _sign(signed.payload, secret)
    if not hmac.compare_digest(expected, signed.signature):
        logger.warning("Checkout bundle signature mismatch")
        raise PaymentVerificationFailed("Order data signature is invalid.")

    try:
        raw = base64.urlsafe_b64decode(signed.payload.encode())
        bundle = CheckoutBundle.model_validate_json(raw)
    except ValueError as e:
        logger.warning(
            "Checkout bundle could not be decoded",
            extra={"error": str(e)},
        )
        raise PaymentVerificationFailed("Order data could not be decoded.")

    now = now or utcnow()
    if now - bundle.issued_at > timedelta(seconds=max_age_seconds):
        logger.warning(
            "Checkout bundle expired",
            extra={
                "order_id": bundle.order_id,
                "issued_at": bundle.issued_at.isoformat(),
            },
        )
        raise PaymentVerificationFailed("Order data has expired.")

    return bundle
