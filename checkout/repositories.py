"""
Repository and collaborator interfaces defined as Protocols.

All repository operations in this module follow these principles:

- **Conditional transitions**: every status change is expressed as an
  atomic "update if still in the expected state". Callers learn from the
  return value whether *they* performed the transition, and only the
  winner runs follow-up effects (stock restore, emails). This is what keeps
  the verify call, the return redirect, the webhook and the sweeper correct
  under any interleaving.

- **Stock moves with status**: stock deduction and restoration happen in
  the same transaction as the order write they belong to. An order row in
  ``Pending`` payment status always holds its stock; ``Failed`` and
  ``Refunded`` rows never do.

- **Domain Objects**: methods accept and return domain objects or
  primitives, never driver-specific types.

- **No deletes**: orders are an audit trail and are never removed.

In Temporal workflow contexts these protocols are implemented by workflow
proxies that delegate to activities, so use cases stay unaware of where
they run.
"""

from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Protocol,
    runtime_checkable,
)

from checkout.domain import (
    CartItem,
    FinalizeOutcome,
    GatewayStatus,
    Order,
    OrderItem,
    PartialRefund,
    PaymentIntent,
    PaymentProof,
    Product,
    RefundDetails,
    RefundResult,
    SellerContact,
    WebhookEvent,
)

AuditCategory = Literal["info", "warn", "error", "security", "payment"]


@runtime_checkable
class StockLedger(Protocol):
    """Atomic per-product inventory counter.

    ``reserve_or_deduct`` and ``restore`` are the forward and compensation
    actions. Order repositories call the same primitives inside their own
    transactions; the methods here open a transaction of their own and are
    used where stock moves without an order write.
    """

    async def get_products(self, product_ids: List[str]) -> Dict[str, Product]:
        """Fetch products by id. Missing ids are absent from the result."""
        ...

    async def check_available(self, items: List[CartItem]) -> List[Product]:
        """Validate that every item exists and is in stock, without
        mutating anything.

        Returns:
            The products in the same order as ``items``

        Raises:
            ProductNotFound: if any product does not exist
            InsufficientStock: if any quantity exceeds current stock
        """
        ...

    async def reserve_or_deduct(self, items: List[OrderItem]) -> None:
        """Decrement stock for all items, all-or-nothing.

        Raises:
            InsufficientStock: if any item's quantity exceeds current stock;
                no item is deducted in that case
        """
        ...

    async def restore(self, items: List[OrderItem]) -> None:
        """Increment stock back for all items.

        Not idempotent on its own. Callers restore only after winning the
        status transition that releases the stock.
        """
        ...


@runtime_checkable
class OrderRepository(Protocol):
    """Persistence for the Order aggregate.

    Architectural Context:
    The composite idempotency key is stored on the order itself and backed
    by a uniqueness constraint, so "one order per (method, caller key)" is
    enforced by storage rather than by a separate table.
    """

    async def generate_order_id(self, now: datetime) -> str:
        """Return the next human-readable identifier ``ORD-YYYYMMDD-N``.

        Implementation Notes:
        - N comes from an atomic per-day counter, never from reading the
          latest order and incrementing it
        """
        ...

    async def get(self, order_id: str) -> Optional[Order]:
        """Retrieve an order by its human-readable identifier."""
        ...

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        """Retrieve the order holding a composite idempotency key."""
        ...

    async def get_by_merchant_transaction_id(
        self, merchant_transaction_id: str
    ) -> Optional[Order]:
        ...

    async def find_by_caller_key(self, caller_key: str) -> List[Order]:
        """All orders whose composite key ends with this caller key, any
        payment method."""
        ...

    async def find_stale_pending(
        self, cutoff: datetime, payment_methods: List[str]
    ) -> List[Order]:
        """Orders with Pending payment, Pending or Processing fulfillment,
        one of ``payment_methods``, created before ``cutoff``."""
        ...

    async def find_presumptive(self) -> List[Order]:
        """Paid orders confirmed without explicit provider evidence."""
        ...

    async def find_by_contact(
        self, email: str, phone: str, order_id: Optional[str] = None
    ) -> List[Order]:
        """Orders matching guest or registered contact details."""
        ...

    async def list_pending(self) -> List[Order]:
        """All orders in Pending/Pending, newest first."""
        ...

    async def insert_pending(self, order: Order) -> Order:
        """Insert a Pending order and deduct its stock in one transaction.

        Raises:
            DuplicateAttempt: if the composite idempotency key is taken
            InsufficientStock: if any item cannot be covered
        """
        ...

    async def insert_canceled(self, order: Order) -> Order:
        """Insert an order directly in Failed/Canceled, without stock.

        Used to leave a trace of attempts that ended before confirmation
        (e.g. intent creation timed out).
        """
        ...

    async def insert_paid(self, order: Order) -> FinalizeOutcome:
        """Insert an order as Paid/Processing with stock deduction.

        Returns:
            ``applied`` if the row was created, ``already_paid`` if an order
            with this identifier already exists as Paid, ``not_pending`` if
            it exists in another state, ``sibling_paid`` if another order
            under the same caller key is already Paid.

        Raises:
            InsufficientStock: if stock no longer covers the items
        """
        ...

    async def mark_paid(
        self,
        order_id: str,
        transaction_id: Optional[str],
        gateway_response: Dict[str, Any],
        presumptive: bool = False,
    ) -> FinalizeOutcome:
        """Move a Pending order to Paid/Processing if still Pending.

        Returns:
            A FinalizeOutcome; see ``insert_paid`` for the result values.
            Stock is untouched, it was deducted when the row was inserted.
        """
        ...

    async def cancel_pending(
        self, order_id: str, reason: str
    ) -> Optional[Order]:
        """Move a Pending order to Failed/Canceled and restore its stock.

        Returns:
            The canceled order, or None when the order was no longer
            Pending (someone else finalized or canceled it first). In that
            case stock is left alone.
        """
        ...

    async def apply_full_refund(
        self, order_id: str, refund: RefundDetails
    ) -> Optional[Order]:
        """Record a full refund on a Paid order and restore its stock.

        Returns:
            The refunded order, or None when it was no longer Paid.
        """
        ...

    async def apply_partial_refund(
        self, order_id: str, refund: PartialRefund
    ) -> Optional[Order]:
        """Append a partial refund if it fits under the final total.

        Promotes the order to Refunded/Canceled when the running total
        reaches the final total. Stock is not restored.

        Returns:
            The updated order, or None if the order was not Paid or the
            refund would exceed the final total.
        """
        ...

    async def update_refund_status(
        self, order_id: str, refund_id: str, status: str
    ) -> Optional[Order]:
        """Replace the provider status recorded on one refund.

        Returns:
            The updated order, or None if the order or refund is unknown.
        """
        ...

    async def clear_presumptive(self, order_id: str) -> None:
        ...


@runtime_checkable
class TokenCache(Protocol):
    """Shared store for provider access tokens with expiry.

    Lets several API processes reuse one token instead of each holding a
    private copy.
    """

    async def get_token(self, name: str) -> Optional[Dict[str, Any]]:
        """Return ``{"access_token": ..., "expires_at": epoch_seconds}``
        or None when absent."""
        ...

    async def put_token(
        self, name: str, access_token: str, expires_at: float
    ) -> None:
        ...

    async def invalidate(self, name: str) -> None:
        ...


@runtime_checkable
class GatewayAdapter(Protocol):
    """Uniform interface over one external payment provider.

    Implementation Notes:
    - ``create_intent`` enforces a hard client-side timeout and raises
      GatewayTimeout when it trips
    - transient failures get at most one retry; payment creation must not
      be retried further because duplicate provider-side charges are worse
      than a failed request
    - authentication failures trigger one forced token refresh, outside the
      transient retry budget
    """

    method: str
    persists_pending_order: bool

    async def create_intent(self, order: Order) -> PaymentIntent:
        ...

    async def check_status(
        self, provider_transaction_id: str
    ) -> GatewayStatus:
        ...

    async def confirm_payment(self, proof: PaymentProof) -> GatewayStatus:
        """Validate what the client echoed back after checkout.

        Raises:
            PaymentVerificationFailed: if the proof's signature is invalid
        """
        ...

    def verify_signature(self, payload: bytes, signature_header: str) -> bool:
        """HMAC check of a webhook body against its signature header."""
        ...

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        ...

    def refund_reference(self, order: Order) -> Optional[str]:
        """Provider identifier a refund for this order is issued against."""
        ...

    async def refund(
        self,
        provider_transaction_id: str,
        amount_minor_units: int,
        refund_id: str,
        metadata: Dict[str, Any],
    ) -> RefundResult:
        ...

    async def refund_status(
        self, refund_id: str, provider_refund_id: Optional[str]
    ) -> RefundResult:
        """Current provider state of a refund issued earlier.

        Providers that look refunds up by their own identifier need
        ``provider_refund_id``; the others use our ``refund_id``.
        """
        ...


@runtime_checkable
class AuditLog(Protocol):
    """Structured event log for payment state transitions."""

    async def record(
        self,
        category: AuditCategory,
        action: str,
        details: Dict[str, Any],
    ) -> None:
        ...


@runtime_checkable
class NotificationService(Protocol):
    async def send_multi_channel_notification(
        self,
        recipient_id: str,
        payload: Dict[str, Any],
        recipient_email: Optional[str] = None,
    ) -> None:
        ...


@runtime_checkable
class EmailService(Protocol):
    async def send_checkout_success_email(
        self, email: str, summary: Dict[str, Any]
    ) -> None:
        ...


@runtime_checkable
class InvoiceService(Protocol):
    async def generate_invoice(self, order: Order) -> bytes:
        ...


@runtime_checkable
class SellerDirectory(Protocol):
    async def get_order_recipient(self) -> Optional[SellerContact]:
        """The seller account that receives new-order notifications."""
        ...
