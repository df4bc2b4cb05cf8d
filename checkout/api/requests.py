"""
Pydantic models for API requests.
These define the contract between the API and external clients.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from checkout.bundle import SignedBundle
from checkout.domain import (
    CartItem,
    CreateOrderCommand,
    Customer,
    PaymentMethod,
    PaymentProof,
    ShippingAddress,
)


class CreateOrderRequest(BaseModel):
    """Request model for starting a checkout attempt.

    Prices are never taken from the client; only product ids and
    quantities are.
    """

    cart_items: List[CartItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    customer: Customer
    discount_amount: Decimal = Decimal("0")
    shipping_charges: Decimal = Decimal("0")
    applied_coupons: List[str] = Field(default_factory=list)

    def to_command(self) -> CreateOrderCommand:
        return CreateOrderCommand(
            cart_items=self.cart_items,
            shipping_address=self.shipping_address,
            payment_method=self.payment_method,
            customer=self.customer,
            discount_amount=self.discount_amount,
            shipping_charges=self.shipping_charges,
            applied_coupons=self.applied_coupons,
        )


class RazorpayVerifyRequest(BaseModel):
    """What the card/UPI checkout widget hands back on success."""

    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    order_data: SignedBundle

    def to_proof(self) -> PaymentProof:
        return PaymentProof(
            provider_transaction_id=self.razorpay_order_id,
            payment_id=self.razorpay_payment_id,
            signature=self.razorpay_signature,
        )


class PhonePeVerifyRequest(BaseModel):
    transaction_id: str
    order_id: Optional[str] = None
    order_data: SignedBundle

    def to_proof(self) -> PaymentProof:
        return PaymentProof(provider_transaction_id=self.transaction_id)


class FullRefundRequest(BaseModel):
    order_id: str
    reason: Optional[str] = None


class PartialRefundRequest(BaseModel):
    order_id: str
    amount: Decimal
    reason: Optional[str] = None


class TrackOrderRequest(BaseModel):
    email: str
    phone: str
    order_id: Optional[str] = None


class AutoCancelConfigRequest(BaseModel):
    """Either field may be omitted to keep its current value."""

    check_interval_minutes: Optional[int] = None
    timeout_minutes: Optional[int] = None
