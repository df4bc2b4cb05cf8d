"""
Domain models defined as Pydantic models.
These are pure data structures with validation.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    Field,
    field_validator,
    model_validator,
)

PaymentMethod = Literal["razorpay", "phonepe", "cod"]
PaymentStatus = Literal["Pending", "Paid", "Failed", "Refunded"]
OrderStatus = Literal[
    "Pending", "Processing", "Shipped", "Delivered", "Canceled"
]

# Settlement only known after a redirect or callback from the provider.
GATEWAY_METHODS = ("razorpay", "phonepe")
# Settlement not verified at order time (cash on delivery).
DEFERRED_METHODS = ("cod",)

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a rupee amount into paise, rounding half up."""
    return int(
        (Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def from_minor_units(amount: int) -> Decimal:
    return quantize_money(Decimal(amount) / 100)


def composite_key(payment_method: str, caller_key: str) -> str:
    """Idempotency key scoped to a payment method."""
    return f"{payment_method}_{caller_key}"


def split_composite_key(key: str) -> tuple[str, str]:
    method, _, caller_key = key.partition("_")
    return method, caller_key


class Product(BaseModel):
    """Collaborator-owned product, consumed here for price and stock."""

    product_id: str
    name: str
    price: Decimal
    stock: int
    seller_id: Optional[str] = None

    @field_validator("stock")
    @classmethod
    def stock_must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Stock cannot be negative")
        return v


class CartItem(BaseModel):
    product_id: str
    quantity: int

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v


class OrderItem(BaseModel):
    """Snapshot of a product line at order time."""

    product_id: str
    name: str
    price: Decimal
    quantity: int
    subtotal: Decimal

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    @field_validator("price")
    @classmethod
    def price_must_be_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Price must be positive")
        return quantize_money(v)

    @model_validator(mode="after")
    def subtotal_matches_line(self) -> "OrderItem":
        if quantize_money(self.subtotal) != quantize_money(
            self.price * self.quantity
        ):
            raise ValueError("Subtotal must equal price times quantity")
        return self

    @classmethod
    def from_product(cls, product: Product, quantity: int) -> "OrderItem":
        return cls(
            product_id=product.product_id,
            name=product.name,
            price=product.price,
            quantity=quantity,
            subtotal=quantize_money(product.price * quantity),
        )


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    zipcode: str
    country: str = "India"
    lat: Optional[float] = None
    lng: Optional[float] = None

    @field_validator("street", "city", "state", "zipcode")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Address fields cannot be blank")
        return v.strip()


class Customer(BaseModel):
    """Either a registered user reference or guest contact details."""

    is_registered_user: bool = False
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one_identity(self) -> "Customer":
        registered = any(
            [self.user_id, self.user_name, self.user_email, self.user_phone]
        )
        guest = any([self.guest_name, self.guest_email, self.guest_phone])
        if self.is_registered_user:
            if not self.user_id or not self.user_email:
                raise ValueError(
                    "Registered customers need a user id and email"
                )
            if guest:
                raise ValueError(
                    "Registered customers cannot carry guest details"
                )
        else:
            if not (self.guest_name and self.guest_email and self.guest_phone):
                raise ValueError(
                    "Guest customers need a name, email and phone"
                )
            if registered:
                raise ValueError(
                    "Guest customers cannot carry registered user details"
                )
        return self

    @property
    def name(self) -> Optional[str]:
        return self.user_name if self.is_registered_user else self.guest_name

    @property
    def email(self) -> Optional[str]:
        return (
            self.user_email if self.is_registered_user else self.guest_email
        )

    @property
    def phone(self) -> Optional[str]:
        return (
            self.user_phone if self.is_registered_user else self.guest_phone
        )

    @property
    def reference(self) -> str:
        return self.user_id or "guest"


class OrderTotals(BaseModel):
    total_price: Decimal
    discount_amount: Decimal = Decimal("0")
    shipping_charges: Decimal = Decimal("0")
    final_total: Decimal

    @model_validator(mode="after")
    def final_total_is_consistent(self) -> "OrderTotals":
        expected = quantize_money(
            self.total_price - self.discount_amount + self.shipping_charges
        )
        if quantize_money(self.final_total) != expected:
            raise ValueError(
                "Final total must equal total price minus discount plus "
                "shipping"
            )
        return self


def compute_totals(
    items: List[OrderItem],
    discount_amount: Decimal = Decimal("0"),
    shipping_charges: Decimal = Decimal("0"),
) -> OrderTotals:
    """Derive order totals from item snapshots.

    Raises:
        ValueError: if the discount or shipping values are out of range
    """
    total_price = quantize_money(
        sum((item.subtotal for item in items), Decimal("0"))
    )
    discount = quantize_money(discount_amount)
    shipping = quantize_money(shipping_charges)
    if discount < 0:
        raise ValueError("Discount cannot be negative")
    if discount > total_price:
        raise ValueError("Discount cannot exceed the order total")
    if shipping < 0:
        raise ValueError("Shipping charges cannot be negative")
    return OrderTotals(
        total_price=total_price,
        discount_amount=discount,
        shipping_charges=shipping,
        final_total=quantize_money(total_price - discount + shipping),
    )


class RefundDetails(BaseModel):
    refund_id: str
    provider_refund_id: Optional[str] = None
    amount: Decimal
    reason: Optional[str] = None
    status: str = "processed"
    refunded_at: datetime = Field(default_factory=utcnow)


class PartialRefund(BaseModel):
    refund_id: str
    provider_refund_id: Optional[str] = None
    amount: Decimal
    reason: Optional[str] = None
    status: str = "processed"
    refunded_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Refund amount must be positive")
        return quantize_money(v)


class Order(BaseModel):
    """The central aggregate. Never deleted once persisted."""

    id: str
    order_id: str
    idempotency_key: str
    customer: Customer
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "Pending"
    order_status: OrderStatus = "Pending"
    transaction_id: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    gateway_response: Dict[str, Any] = Field(default_factory=dict)
    total_price: Decimal
    discount_amount: Decimal = Decimal("0")
    shipping_charges: Decimal = Decimal("0")
    final_total: Decimal
    applied_coupons: List[str] = Field(default_factory=list)
    refund_details: Optional[RefundDetails] = None
    partial_refunds: List[PartialRefund] = Field(default_factory=list)
    total_refunded: Decimal = Decimal("0")
    presumptive_success: bool = False
    cancellation_reason: Optional[str] = None
    tracking_id: Optional[str] = None
    courier_partner: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("order_items")
    @classmethod
    def items_must_not_be_empty(cls, v: List[OrderItem]) -> List[OrderItem]:
        if not v:
            raise ValueError("Order must contain at least one item")
        return v

    @model_validator(mode="after")
    def money_invariants(self) -> "Order":
        OrderTotals(
            total_price=self.total_price,
            discount_amount=self.discount_amount,
            shipping_charges=self.shipping_charges,
            final_total=self.final_total,
        )
        if self.total_refunded < 0 or self.total_refunded > self.final_total:
            raise ValueError("Total refunded must be within the final total")
        if (
            self.payment_status == "Refunded"
            and self.order_status != "Canceled"
        ):
            raise ValueError("Refunded orders must be canceled")
        return self

    @property
    def caller_key(self) -> str:
        return split_composite_key(self.idempotency_key)[1]

    @property
    def is_gateway_mediated(self) -> bool:
        return self.payment_method in GATEWAY_METHODS

    @property
    def refundable_amount(self) -> Decimal:
        return quantize_money(self.final_total - self.total_refunded)

    def with_refund_status(
        self, refund_id: str, status: str
    ) -> Optional["Order"]:
        """Copy of the order with one refund's status replaced.

        Returns None when no refund on this order has ``refund_id``.
        """
        if self.refund_details and self.refund_details.refund_id == refund_id:
            details = self.refund_details.model_copy(
                update={"status": status}
            )
            return self.model_copy(
                update={"refund_details": details, "updated_at": utcnow()}
            )
        for index, refund in enumerate(self.partial_refunds):
            if refund.refund_id == refund_id:
                refunds = list(self.partial_refunds)
                refunds[index] = refund.model_copy(update={"status": status})
                return self.model_copy(
                    update={"partial_refunds": refunds, "updated_at": utcnow()}
                )
        return None

    def summary(self) -> Dict[str, Any]:
        """Compact view handed to email and notification collaborators."""
        return {
            "orderId": self.order_id,
            "customerName": self.customer.name,
            "amount": str(self.final_total),
            "paymentMethod": self.payment_method,
            "items": [
                {
                    "name": item.name,
                    "quantity": item.quantity,
                    "subtotal": str(item.subtotal),
                }
                for item in self.order_items
            ],
        }


class CreateOrderCommand(BaseModel):
    """Validated checkout request, independent of the transport."""

    cart_items: List[CartItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    customer: Customer
    discount_amount: Decimal = Decimal("0")
    shipping_charges: Decimal = Decimal("0")
    applied_coupons: List[str] = Field(default_factory=list)

    @field_validator("cart_items")
    @classmethod
    def cart_must_not_be_empty(cls, v: List[CartItem]) -> List[CartItem]:
        if not v:
            raise ValueError("Cart is empty")
        seen = set()
        for item in v:
            if item.product_id in seen:
                raise ValueError(
                    f"Product {item.product_id} appears more than once"
                )
            seen.add(item.product_id)
        return v

    @field_validator("discount_amount", "shipping_charges")
    @classmethod
    def must_not_be_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Amounts cannot be negative")
        return v


class PaymentIntent(BaseModel):
    """Result of asking a provider to start a payment."""

    provider_transaction_id: str
    redirect_url: Optional[str] = None
    checkout_payload: Dict[str, Any] = Field(default_factory=dict)
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class GatewayStatus(BaseModel):
    succeeded: bool
    state: str
    code: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_minor: Optional[int] = None
    presumptive: bool = False
    raw_response: Dict[str, Any] = Field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return not self.succeeded and self.state.upper() in (
            "FAILED",
            "PAYMENT_ERROR",
            "PAYMENT_DECLINED",
            "EXPIRED",
            "ATTEMPTED",
        )


class PaymentProof(BaseModel):
    """What the client echoes back after completing a provider flow."""

    provider_transaction_id: str
    payment_id: Optional[str] = None
    signature: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    provider_refund_id: Optional[str] = None
    status: str
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """Provider push notification normalised across gateways."""

    kind: Literal["success", "failure", "refund", "ignored"]
    event_type: str
    order_id: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_minor: Optional[int] = None
    state: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class FinalizeOutcome(BaseModel):
    """Result of one attempt at the Pending -> Paid transition.

    ``applied`` is the only result where this caller performed the
    transition and owns the confirmation side effects.
    """

    result: Literal["applied", "already_paid", "not_pending", "sibling_paid"]
    order: Optional[Order] = None


class SweepSummary(BaseModel):
    checked: int = 0
    canceled: int = 0
    skipped: int = 0
    failed: int = 0
    canceled_order_ids: List[str] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)
    ran_at: datetime = Field(default_factory=utcnow)


class SellerContact(BaseModel):
    seller_id: str
    email: Optional[str] = None


class ReturnOutcome(BaseModel):
    order_id: str
    success: bool
    error_code: Optional[str] = None


class WebhookOutcome(BaseModel):
    status: Literal[
        "processed",
        "already_paid",
        "canceled",
        "refused",
        "refund_logged",
        "ignored",
    ]
    order_id: Optional[str] = None


class ReverifySummary(BaseModel):
    checked: int = 0
    confirmed: int = 0
    refuted: int = 0
    unresolved: int = 0
    refuted_order_ids: List[str] = Field(default_factory=list)


class RefundSummary(BaseModel):
    order_id: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    final_total: Decimal
    total_refunded: Decimal
    refundable_amount: Decimal
    refund_details: Optional[RefundDetails] = None
    partial_refunds: List[PartialRefund] = Field(default_factory=list)


class RefundStatusReport(BaseModel):
    order_id: str
    refund_id: str
    provider_refund_id: Optional[str] = None
    previous_status: str
    status: str
    checked_at: datetime = Field(default_factory=utcnow)


class PendingOrdersSummary(BaseModel):
    total: int
    by_method: Dict[str, int] = Field(default_factory=dict)
    orders: List[Dict[str, Any]] = Field(default_factory=list)
