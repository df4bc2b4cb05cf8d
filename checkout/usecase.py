"""
Defines the use cases for checkout and payment reconciliation.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .audit import fire_and_forget, record_audit
from .bundle import CheckoutBundle, SignedBundle, sign_bundle, verify_bundle
from .domain import (
    DEFERRED_METHODS,
    GATEWAY_METHODS,
    CreateOrderCommand,
    FinalizeOutcome,
    GatewayStatus,
    Order,
    OrderItem,
    PartialRefund,
    PaymentMethod,
    PaymentProof,
    PendingOrdersSummary,
    RefundDetails,
    RefundStatusReport,
    RefundSummary,
    ReturnOutcome,
    ReverifySummary,
    SweepSummary,
    WebhookOutcome,
    composite_key,
    compute_totals,
    quantize_money,
    to_minor_units,
    utcnow,
)
from .errors import (
    DuplicateAttempt,
    GatewayError,
    GatewayTimeout,
    InsufficientStock,
    OrderNotFound,
    PaymentVerificationFailed,
    ProductNotFound,
    RefundIneligible,
    RefundNotFound,
    ValidationError,
)
from .gateways.base import new_refund_id, order_id_from_refund_id
from .idempotency import IdempotencyGuard
from .repositories import (
    AuditLog,
    EmailService,
    GatewayAdapter,
    InvoiceService,
    NotificationService,
    OrderRepository,
    SellerDirectory,
    StockLedger,
)
from .validation import (
    ensure_audit_log,
    ensure_gateway_adapter,
    ensure_order_repository,
    ensure_stock_ledger,
    validate_caller_key,
)

logger = logging.getLogger(__name__)

TIMEOUT_ERROR_CODES = {"phonepe": "phonepe_timeout"}
PRESUMED_STATE = "TIMEOUT_ASSUMED_SUCCESS"
MANUAL_REFUND_MESSAGE = (
    "Payment was received for an order that can no longer be confirmed. "
    "It will be refunded manually."
)


class CreateOrderResult(BaseModel):
    """What order creation hands back to the client.

    Deferred-settlement orders carry the persisted ``order``. Gateway
    orders carry the provider handle and the signed bundle the client must
    echo back. A failed attempt carries an ``error_code`` for the redirect.
    """

    success: bool = True
    order_id: str
    payment_method: PaymentMethod
    order: Optional[Order] = None
    provider_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    checkout_payload: Dict[str, Any] = Field(default_factory=dict)
    signed_bundle: Optional[SignedBundle] = None
    error_code: Optional[str] = None


def _index_gateways(
    gateways: List[GatewayAdapter],
) -> Dict[str, GatewayAdapter]:
    indexed = {}
    for gateway in gateways:
        adapter = ensure_gateway_adapter(gateway)
        indexed[adapter.method] = adapter
    return indexed


def _gateway_for(
    gateways: Dict[str, GatewayAdapter], method: str
) -> GatewayAdapter:
    adapter = gateways.get(method)
    if adapter is None:
        raise ValidationError(
            f"Payment method '{method}' is not available.",
            {"paymentMethod": method},
        )
    return adapter


def _amount_matches(order: Order, status: GatewayStatus) -> bool:
    if status.amount_minor is None:
        return True
    return status.amount_minor == to_minor_units(order.final_total)


class OrderReconciliationUseCase:
    """
    Turns a cart into an order and drives it to a terminal payment state.

    Orders are confirmed through any of three inbound signals: the
    client's verify call, the provider's browser redirect back to us, and a
    signed webhook. No ordering between them is assumed. All three funnel
    into ``_finalize``, which relies on the repository's conditional
    transitions so that exactly one caller moves an order to Paid and only
    that caller sends emails and notifications.

    Collaborators (email, notification, invoice, seller lookup) are
    optional and fire-and-forget: their failures are logged and never fail
    a confirmation.
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        stock_ledger: StockLedger,
        gateways: List[GatewayAdapter],
        audit_log: AuditLog,
        bundle_secret: str,
        bundle_max_age_seconds: int = 2 * 60 * 60,
        presume_success_on_return_timeout: bool = True,
        email_service: Optional[EmailService] = None,
        notification_service: Optional[NotificationService] = None,
        invoice_service: Optional[InvoiceService] = None,
        seller_directory: Optional[SellerDirectory] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.order_repo = ensure_order_repository(order_repo)
        self.stock_ledger = ensure_stock_ledger(stock_ledger)
        self.audit_log = ensure_audit_log(audit_log)
        self.gateways = _index_gateways(gateways)
        self.guard = IdempotencyGuard(self.order_repo, self.audit_log)
        self.bundle_secret = bundle_secret
        self.bundle_max_age_seconds = bundle_max_age_seconds
        self.presume_success_on_return_timeout = (
            presume_success_on_return_timeout
        )
        self.email_service = email_service
        self.notification_service = notification_service
        self.invoice_service = invoice_service
        self.seller_directory = seller_directory
        self._clock = clock

    # Creation

    async def create_order(
        self, command: CreateOrderCommand, caller_key: Optional[str]
    ) -> CreateOrderResult:
        """
        Start a checkout attempt.

        1. Validates the caller key and claims the composite key; a key
           that is already taken raises DuplicateAttempt before any side
           effect.
        2. Builds item snapshots and totals from current product prices.
        3. Deferred settlement: deducts stock and inserts a Pending order.
        4. Gateway: creates the provider intent outside any transaction and
           returns the provider handle plus a signed bundle. Adapters that
           reconcile through redirects get a Pending row with stock
           reserved once the intent exists.

        An intent that times out is recorded as a canceled order and
        reported through ``error_code`` rather than raised.
        """
        caller_key = validate_caller_key(caller_key)
        method = command.payment_method
        adapter = (
            None
            if method in DEFERRED_METHODS
            else _gateway_for(self.gateways, method)
        )

        key = await self.guard.register_attempt(method, caller_key)
        items = await self._build_items(command)
        try:
            totals = compute_totals(
                items, command.discount_amount, command.shipping_charges
            )
        except ValueError as e:
            raise ValidationError(str(e))

        now = self._clock()
        order = Order(
            id=str(uuid.uuid4()),
            order_id=await self.order_repo.generate_order_id(now),
            idempotency_key=key,
            customer=command.customer,
            order_items=items,
            shipping_address=command.shipping_address,
            payment_method=method,
            total_price=totals.total_price,
            discount_amount=totals.discount_amount,
            shipping_charges=totals.shipping_charges,
            final_total=totals.final_total,
            applied_coupons=command.applied_coupons,
            created_at=now,
            updated_at=now,
        )

        logger.info(
            "Creating order",
            extra={
                "order_id": order.order_id,
                "payment_method": method,
                "final_total": str(order.final_total),
            },
        )

        if adapter is None:
            stored = await self.order_repo.insert_pending(order)
            await record_audit(
                self.audit_log,
                "payment",
                "ORDER_CREATED",
                {
                    "orderId": stored.order_id,
                    "paymentMethod": method,
                    "finalTotal": str(stored.final_total),
                },
            )
            await self._notify_collaborators(stored, include_invoice=False)
            return CreateOrderResult(
                order_id=stored.order_id,
                payment_method=method,
                order=stored,
            )

        try:
            intent = await adapter.create_intent(order)
        except GatewayTimeout:
            return await self._record_intent_timeout(order)

        order = order.model_copy(
            update={"merchant_transaction_id": intent.provider_transaction_id}
        )
        if adapter.persists_pending_order:
            try:
                await self.order_repo.insert_pending(order)
            except DuplicateAttempt:
                logger.error(
                    "Provider intent created for a key claimed concurrently",
                    extra={
                        "order_id": order.order_id,
                        "provider_transaction_id": (
                            intent.provider_transaction_id
                        ),
                    },
                )
                raise

        bundle = CheckoutBundle(
            order_id=order.order_id,
            caller_key=caller_key,
            payment_method=method,
            provider_transaction_id=intent.provider_transaction_id,
            customer=order.customer,
            shipping_address=order.shipping_address,
            cart_items=command.cart_items,
            order_items=order.order_items,
            totals=totals,
            applied_coupons=order.applied_coupons,
            issued_at=now,
        )
        await record_audit(
            self.audit_log,
            "payment",
            "PAYMENT_INTENT_CREATED",
            {
                "orderId": order.order_id,
                "paymentMethod": method,
                "providerTransactionId": intent.provider_transaction_id,
                "amount": to_minor_units(order.final_total),
            },
        )
        return CreateOrderResult(
            order_id=order.order_id,
            payment_method=method,
            provider_transaction_id=intent.provider_transaction_id,
            redirect_url=intent.redirect_url,
            checkout_payload=intent.checkout_payload,
            signed_bundle=sign_bundle(bundle, self.bundle_secret),
        )

    async def _build_items(
        self, command: CreateOrderCommand
    ) -> List[OrderItem]:
        products = await self.stock_ledger.check_available(command.cart_items)
        return [
            OrderItem.from_product(product, item.quantity)
            for product, item in zip(products, command.cart_items)
        ]

    async def _record_intent_timeout(self, order: Order) -> CreateOrderResult:
        error_code = TIMEOUT_ERROR_CODES.get(
            order.payment_method, "gateway_timeout"
        )
        try:
            await self.order_repo.insert_canceled(
                order.model_copy(update={"cancellation_reason": error_code})
            )
        except DuplicateAttempt:
            logger.warning(
                "Timed-out attempt already recorded under this key",
                extra={"order_id": order.order_id},
            )
        await record_audit(
            self.audit_log,
            "error",
            "PAYMENT_INTENT_TIMEOUT",
            {"orderId": order.order_id, "paymentMethod": order.payment_method},
        )
        return CreateOrderResult(
            success=False,
            order_id=order.order_id,
            payment_method=order.payment_method,
            error_code=error_code,
        )

    # Confirmation path 1: client verify call

    async def verify_payment(
        self,
        payment_method: str,
        proof: PaymentProof,
        signed_bundle: SignedBundle,
    ) -> FinalizeOutcome:
        """
        Confirm a gateway payment the client reports as completed.

        The echoed bundle only proves we issued it. Products, prices and
        totals are re-derived here, and the amount the provider captured
        must equal the recomputed final total. Replaying a verify for an
        order that is already Paid returns ``already_paid``.

        Raises:
            PaymentVerificationFailed: on a bad bundle, bad provider
                signature, uncaptured payment or amount mismatch
        """
        adapter = _gateway_for(self.gateways, payment_method)
        try:
            bundle = verify_bundle(
                signed_bundle,
                self.bundle_secret,
                self.bundle_max_age_seconds,
                now=self._clock(),
            )
        except PaymentVerificationFailed as e:
            await self._security_event(
                "ORDER_DATA_REJECTED",
                {"paymentMethod": payment_method, "reason": e.message},
            )
            raise

        if (
            bundle.payment_method != payment_method
            or bundle.provider_transaction_id
            != proof.provider_transaction_id
        ):
            await self._security_event(
                "ORDER_DATA_MISMATCH",
                {
                    "orderId": bundle.order_id,
                    "paymentMethod": payment_method,
                    "providerTransactionId": proof.provider_transaction_id,
                },
            )
            raise PaymentVerificationFailed(
                "Order data does not match this payment."
            )

        existing = await self.order_repo.get(bundle.order_id)
        if existing is not None and existing.payment_status == "Paid":
            logger.info(
                "Verify replay for an order that is already paid",
                extra={"order_id": existing.order_id},
            )
            return FinalizeOutcome(result="already_paid", order=existing)

        try:
            status = await adapter.confirm_payment(proof)
        except PaymentVerificationFailed as e:
            await self._security_event(
                "PAYMENT_SIGNATURE_INVALID",
                {"orderId": bundle.order_id, "reason": e.message},
            )
            raise

        if not status.succeeded:
            if status.failed and existing is not None:
                await self._cancel_failed(existing, status.state)
            await self._security_event(
                "PAYMENT_NOT_COMPLETED",
                {"orderId": bundle.order_id, "state": status.state},
            )
            raise PaymentVerificationFailed("Payment has not been completed.")

        order = existing or await self._order_from_bundle(bundle)
        if not _amount_matches(order, status):
            await self._security_event(
                "PAYMENT_AMOUNT_MISMATCH",
                {
                    "orderId": order.order_id,
                    "expected": to_minor_units(order.final_total),
                    "received": status.amount_minor,
                    "action": "manual refund required",
                },
            )
            raise PaymentVerificationFailed(
                "Paid amount does not match the order total."
            )

        return await self._finalize(
            order, status, source="verify", persisted=existing is not None
        )

    async def _order_from_bundle(self, bundle: CheckoutBundle) -> Order:
        product_ids = [item.product_id for item in bundle.cart_items]
        products = await self.stock_ledger.get_products(product_ids)
        items = []
        for cart_item in bundle.cart_items:
            product = products.get(cart_item.product_id)
            if product is None:
                raise ProductNotFound(cart_item.product_id)
            items.append(OrderItem.from_product(product, cart_item.quantity))

        try:
            totals = compute_totals(
                items,
                bundle.totals.discount_amount,
                bundle.totals.shipping_charges,
            )
        except ValueError as e:
            raise PaymentVerificationFailed(
                f"Order totals could not be recomputed: {e}"
            )
        if totals.final_total != bundle.totals.final_total:
            logger.warning(
                "Prices changed between checkout and confirmation",
                extra={
                    "order_id": bundle.order_id,
                    "bundle_total": str(bundle.totals.final_total),
                    "current_total": str(totals.final_total),
                },
            )

        now = self._clock()
        return Order(
            id=str(uuid.uuid4()),
            order_id=bundle.order_id,
            idempotency_key=composite_key(
                bundle.payment_method, bundle.caller_key
            ),
            customer=bundle.customer,
            order_items=items,
            shipping_address=bundle.shipping_address,
            payment_method=bundle.payment_method,
            merchant_transaction_id=bundle.provider_transaction_id,
            total_price=totals.total_price,
            discount_amount=totals.discount_amount,
            shipping_charges=totals.shipping_charges,
            final_total=totals.final_total,
            applied_coupons=bundle.applied_coupons,
            created_at=bundle.issued_at,
            updated_at=now,
        )

    # Confirmation path 2: browser returning from the provider

    async def handle_return(self, order_id: str) -> ReturnOutcome:
        """
        Reconcile an order when the provider redirects the browser back.

        Safe to replay (back button, refresh). Error codes:
        ``order_not_found``, ``order_cancelled``, ``no_transaction_id``,
        ``payment_failed`` and ``verification_failed``.

        A status-check timeout here counts as presumptive success when the
        policy is enabled, because the redirect itself shows the provider
        finished its flow. Such orders are flagged and re-checked later by
        ReverifyPresumptiveUseCase.
        """
        order = await self.order_repo.get(order_id)
        if order is None:
            return ReturnOutcome(
                order_id=order_id, success=False, error_code="order_not_found"
            )
        if order.payment_status == "Paid":
            return ReturnOutcome(order_id=order_id, success=True)
        if (
            order.payment_status != "Pending"
            or order.order_status == "Canceled"
        ):
            return ReturnOutcome(
                order_id=order_id, success=False, error_code="order_cancelled"
            )
        if not order.merchant_transaction_id:
            return ReturnOutcome(
                order_id=order_id,
                success=False,
                error_code="no_transaction_id",
            )

        adapter = _gateway_for(self.gateways, order.payment_method)
        try:
            status = await adapter.check_status(order.merchant_transaction_id)
        except GatewayTimeout:
            if not self.presume_success_on_return_timeout:
                return ReturnOutcome(
                    order_id=order_id,
                    success=False,
                    error_code="verification_failed",
                )
            status = GatewayStatus(
                succeeded=True, state=PRESUMED_STATE, presumptive=True
            )
            await self._security_event(
                "PRESUMPTIVE_SUCCESS_APPLIED",
                {
                    "orderId": order_id,
                    "merchantTransactionId": order.merchant_transaction_id,
                },
            )
        except GatewayError as e:
            logger.warning(
                "Status check failed during return",
                extra={"order_id": order_id, "error_message": e.message},
            )
            return ReturnOutcome(
                order_id=order_id,
                success=False,
                error_code="verification_failed",
            )

        if status.succeeded:
            if not _amount_matches(order, status):
                await self._security_event(
                    "PAYMENT_AMOUNT_MISMATCH",
                    {
                        "orderId": order_id,
                        "expected": to_minor_units(order.final_total),
                        "received": status.amount_minor,
                        "action": "manual refund required",
                    },
                )
                return ReturnOutcome(
                    order_id=order_id,
                    success=False,
                    error_code="verification_failed",
                )
            try:
                await self._finalize(
                    order, status, source="return", persisted=True
                )
            except PaymentVerificationFailed:
                return ReturnOutcome(
                    order_id=order_id,
                    success=False,
                    error_code="verification_failed",
                )
            return ReturnOutcome(order_id=order_id, success=True)

        if status.failed:
            await self._cancel_failed(order, status.state)
            return ReturnOutcome(
                order_id=order_id, success=False, error_code="payment_failed"
            )

        return ReturnOutcome(
            order_id=order_id, success=False, error_code="verification_failed"
        )

    # Confirmation path 3: provider webhook

    async def handle_webhook(
        self,
        payment_method: str,
        payload: bytes,
        signature_header: Optional[str],
    ) -> WebhookOutcome:
        """
        Apply a signed server-to-server event.

        The signature is checked against the raw body. A correctly signed
        event is always acknowledged, including when no order matches it
        (for example a card payment whose order row the verify call has not
        written yet) and when finalization is refused.

        Raises:
            PaymentVerificationFailed: if the signature is invalid
            ValidationError: if the body cannot be parsed
        """
        adapter = _gateway_for(self.gateways, payment_method)
        if not adapter.verify_signature(payload, signature_header or ""):
            await self._security_event(
                "WEBHOOK_SIGNATURE_INVALID", {"paymentMethod": payment_method}
            )
            raise PaymentVerificationFailed("Invalid webhook signature.")

        try:
            event = adapter.parse_webhook(payload)
        except ValueError as e:
            logger.warning(
                "Unparseable webhook body",
                extra={"gateway": payment_method, "error_message": str(e)},
            )
            raise ValidationError("Malformed webhook payload.")

        await record_audit(
            self.audit_log,
            "payment",
            "WEBHOOK_RECEIVED",
            {
                "paymentMethod": payment_method,
                "eventType": event.event_type,
                "kind": event.kind,
                "merchantTransactionId": event.merchant_transaction_id,
            },
        )

        if event.kind == "refund":
            await record_audit(
                self.audit_log,
                "payment",
                "REFUND_WEBHOOK_RECEIVED",
                {
                    "orderId": event.order_id,
                    "transactionId": event.transaction_id,
                    "state": event.state,
                    "amount": event.amount_minor,
                },
            )
            return WebhookOutcome(
                status="refund_logged", order_id=event.order_id
            )
        if event.kind == "ignored":
            return WebhookOutcome(status="ignored")

        order = None
        if event.merchant_transaction_id:
            order = await self.order_repo.get_by_merchant_transaction_id(
                event.merchant_transaction_id
            )
        if order is None and event.order_id:
            order = await self.order_repo.get(event.order_id)
        if order is None:
            logger.info(
                "Webhook for an order that is not persisted yet",
                extra={
                    "gateway": payment_method,
                    "merchant_transaction_id": event.merchant_transaction_id,
                },
            )
            return WebhookOutcome(status="ignored")

        if event.kind == "failure":
            canceled = await self._cancel_failed(order, event.state)
            return WebhookOutcome(
                status="canceled" if canceled else "ignored",
                order_id=order.order_id,
            )

        if order.payment_status == "Paid":
            return WebhookOutcome(
                status="already_paid", order_id=order.order_id
            )

        status = GatewayStatus(
            succeeded=True,
            state=event.state or "COMPLETED",
            transaction_id=event.transaction_id,
            amount_minor=event.amount_minor,
            raw_response=event.raw,
        )
        if not _amount_matches(order, status):
            await self._security_event(
                "PAYMENT_AMOUNT_MISMATCH",
                {
                    "orderId": order.order_id,
                    "expected": to_minor_units(order.final_total),
                    "received": status.amount_minor,
                    "action": "manual refund required",
                },
            )
            return WebhookOutcome(status="refused", order_id=order.order_id)
        try:
            outcome = await self._finalize(
                order, status, source="webhook", persisted=True
            )
        except PaymentVerificationFailed:
            return WebhookOutcome(status="refused", order_id=order.order_id)
        return WebhookOutcome(
            status=(
                "processed" if outcome.result == "applied" else "already_paid"
            ),
            order_id=order.order_id,
        )

    # Shared transitions

    async def _finalize(
        self,
        order: Order,
        status: GatewayStatus,
        source: str,
        persisted: bool,
    ) -> FinalizeOutcome:
        """The single Pending -> Paid transition behind all three paths.

        ``persisted`` selects between updating an existing Pending row and
        inserting the row with stock deduction. Only an ``applied`` result
        triggers follow-up effects.
        """
        transaction_id = status.transaction_id or order.transaction_id
        try:
            if persisted:
                outcome = await self.order_repo.mark_paid(
                    order.order_id,
                    transaction_id,
                    status.raw_response,
                    presumptive=status.presumptive,
                )
            else:
                outcome = await self.order_repo.insert_paid(
                    order.model_copy(
                        update={
                            "transaction_id": transaction_id,
                            "gateway_response": status.raw_response,
                            "presumptive_success": status.presumptive,
                        }
                    )
                )
        except InsufficientStock as e:
            await self._security_event(
                "PAID_ORDER_OUT_OF_STOCK",
                {
                    "orderId": order.order_id,
                    "productId": e.product_id,
                    "transactionId": transaction_id,
                    "action": "manual refund required",
                },
            )
            raise

        if outcome.result == "applied":
            await record_audit(
                self.audit_log,
                "payment",
                "PAYMENT_CONFIRMED",
                {
                    "orderId": order.order_id,
                    "source": source,
                    "transactionId": transaction_id,
                    "presumptive": status.presumptive,
                },
            )
            await self.guard.supersede(
                order.caller_key, keep_method=order.payment_method
            )
            await self._notify_collaborators(outcome.order or order)
            return outcome

        if outcome.result == "already_paid":
            logger.info(
                "Order already paid, nothing to finalize",
                extra={"order_id": order.order_id, "source": source},
            )
            return outcome

        await self._security_event(
            "PAID_ORDER_REFUSED",
            {
                "orderId": order.order_id,
                "source": source,
                "reason": outcome.result,
                "transactionId": transaction_id,
                "action": "manual refund required",
            },
        )
        raise PaymentVerificationFailed(MANUAL_REFUND_MESSAGE)

    async def _cancel_failed(
        self, order: Order, state: Optional[str]
    ) -> Optional[Order]:
        canceled = await self.order_repo.cancel_pending(
            order.order_id, "payment_failed"
        )
        if canceled is not None:
            await record_audit(
                self.audit_log,
                "payment",
                "PAYMENT_FAILED",
                {"orderId": order.order_id, "state": state},
            )
        return canceled

    async def _security_event(
        self, action: str, details: Dict[str, Any]
    ) -> None:
        logger.warning(action, extra={"details": details})
        await record_audit(self.audit_log, "security", action, details)

    async def _notify_collaborators(
        self, order: Order, include_invoice: bool = True
    ) -> None:
        summary = order.summary()

        if self.email_service is not None and order.customer.email:
            await fire_and_forget(
                "Checkout success email",
                self.email_service.send_checkout_success_email(
                    order.customer.email, summary
                ),
                order.order_id,
            )

        if (
            self.notification_service is not None
            and self.seller_directory is not None
        ):
            try:
                seller = await self.seller_directory.get_order_recipient()
            except Exception as e:
                logger.error(
                    "Seller lookup failed",
                    extra={
                        "order_id": order.order_id,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    },
                    exc_info=True,
                )
                seller = None
            if seller is not None:
                await fire_and_forget(
                    "Seller notification",
                    self.notification_service.send_multi_channel_notification(
                        seller.seller_id,
                        {
                            "title": "New order received",
                            "body": (
                                f"Order {order.order_id} for "
                                f"{order.final_total} was placed."
                            ),
                            "data": summary,
                        },
                        seller.email,
                    ),
                    order.order_id,
                )

        if include_invoice and self.invoice_service is not None:
            await fire_and_forget(
                "Invoice generation",
                self.invoice_service.generate_invoice(order),
                order.order_id,
            )

    # Admin

    async def cleanup_pending(self, caller_key: str) -> List[str]:
        """Cancel every in-flight gateway attempt under a caller key."""
        caller_key = validate_caller_key(caller_key)
        return await self.guard.supersede(caller_key, keep_method=None)

    async def pending_summary(self) -> PendingOrdersSummary:
        pending = await self.order_repo.list_pending()
        by_method = Counter(order.payment_method for order in pending)
        return PendingOrdersSummary(
            total=len(pending),
            by_method=dict(by_method),
            orders=[
                {
                    "orderId": order.order_id,
                    "paymentMethod": order.payment_method,
                    "finalTotal": str(order.final_total),
                    "createdAt": order.created_at.isoformat(),
                }
                for order in pending
            ],
        )


class RefundUseCase:
    """
    Issues full and partial refunds against paid gateway orders.

    The provider is called first, then the local order is updated with a
    conditional write. If the order changed in between, the provider-side
    refund is not reflected locally; that case is raised as a security
    event for manual reconciliation.
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        gateways: List[GatewayAdapter],
        audit_log: AuditLog,
    ):
        self.order_repo = ensure_order_repository(order_repo)
        self.gateways = _index_gateways(gateways)
        self.audit_log = ensure_audit_log(audit_log)

    async def _load_refundable(self, order_id: str) -> Order:
        order = await self.order_repo.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.payment_status == "Refunded":
            raise RefundIneligible(
                "Order has already been fully refunded.",
                {"orderId": order_id},
            )
        if order.payment_status != "Paid":
            raise RefundIneligible(
                "Only paid orders can be refunded.",
                {"orderId": order_id, "paymentStatus": order.payment_status},
            )
        if not order.is_gateway_mediated:
            raise RefundIneligible(
                "Cash on delivery orders are not refunded through a payment "
                "provider.",
                {"orderId": order_id},
            )
        return order

    def _reference(self, order: Order) -> str:
        adapter = _gateway_for(self.gateways, order.payment_method)
        reference = adapter.refund_reference(order)
        if not reference:
            raise RefundIneligible(
                "Order has no payment transaction to refund.",
                {"orderId": order.order_id},
            )
        return reference

    async def full_refund(
        self, order_id: str, reason: Optional[str] = None
    ) -> Order:
        """
        Refund whatever has not been refunded yet and close the order.

        Stock for every item is restored in the same write that marks the
        order Refunded/Canceled.
        """
        order = await self._load_refundable(order_id)
        reference = self._reference(order)
        amount = order.refundable_amount
        adapter = self.gateways[order.payment_method]

        result = await adapter.refund(
            reference,
            to_minor_units(amount),
            new_refund_id(order_id),
            {"orderId": order_id, "reason": reason or "", "type": "full"},
        )
        details = RefundDetails(
            refund_id=result.refund_id,
            provider_refund_id=result.provider_refund_id,
            amount=amount,
            reason=reason,
            status=result.status,
        )
        updated = await self.order_repo.apply_full_refund(order_id, details)
        if updated is None:
            await self._not_recorded(order_id, details.refund_id, amount)
        await record_audit(
            self.audit_log,
            "payment",
            "FULL_REFUND_ISSUED",
            {
                "orderId": order_id,
                "refundId": details.refund_id,
                "amount": str(amount),
            },
        )
        return updated

    async def partial_refund(
        self, order_id: str, amount: Decimal, reason: Optional[str] = None
    ) -> Order:
        """
        Refund part of a paid order. Reaching the final total promotes the
        order to Refunded/Canceled; stock is not restored.
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero.")
        order = await self._load_refundable(order_id)
        if order.total_refunded + amount > order.final_total:
            raise RefundIneligible(
                "Refund amount exceeds the refundable balance.",
                {
                    "orderId": order_id,
                    "refundableAmount": str(order.refundable_amount),
                },
            )
        reference = self._reference(order)
        adapter = self.gateways[order.payment_method]

        result = await adapter.refund(
            reference,
            to_minor_units(amount),
            new_refund_id(order_id),
            {"orderId": order_id, "reason": reason or "", "type": "partial"},
        )
        refund = PartialRefund(
            refund_id=result.refund_id,
            provider_refund_id=result.provider_refund_id,
            amount=amount,
            reason=reason,
            status=result.status,
        )
        updated = await self.order_repo.apply_partial_refund(order_id, refund)
        if updated is None:
            await self._not_recorded(order_id, refund.refund_id, amount)
        await record_audit(
            self.audit_log,
            "payment",
            "PARTIAL_REFUND_ISSUED",
            {
                "orderId": order_id,
                "refundId": refund.refund_id,
                "amount": str(amount),
                "totalRefunded": str(updated.total_refunded),
                "paymentStatus": updated.payment_status,
            },
        )
        return updated

    async def _not_recorded(
        self, order_id: str, refund_id: str, amount: Decimal
    ) -> None:
        details = {
            "orderId": order_id,
            "refundId": refund_id,
            "amount": str(amount),
            "action": "provider refund not reflected locally",
        }
        logger.error("REFUND_NOT_RECORDED", extra={"details": details})
        await record_audit(
            self.audit_log, "security", "REFUND_NOT_RECORDED", details
        )
        raise RefundIneligible(
            "Order changed while the refund was issued; it needs manual "
            "reconciliation.",
            {"orderId": order_id, "refundId": refund_id},
        )

    async def refund_summary(self, order_id: str) -> RefundSummary:
        order = await self.order_repo.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return RefundSummary(
            order_id=order.order_id,
            payment_status=order.payment_status,
            order_status=order.order_status,
            final_total=order.final_total,
            total_refunded=order.total_refunded,
            refundable_amount=order.refundable_amount,
            refund_details=order.refund_details,
            partial_refunds=order.partial_refunds,
        )

    async def refund_status(self, refund_id: str) -> RefundStatusReport:
        """
        Ask the provider for the current state of an earlier refund and
        store it on the order.
        """
        order_id = order_id_from_refund_id(refund_id)
        order = await self.order_repo.get(order_id) if order_id else None
        if order is None:
            raise RefundNotFound(refund_id)
        stored = next(
            (
                refund
                for refund in [order.refund_details, *order.partial_refunds]
                if refund is not None and refund.refund_id == refund_id
            ),
            None,
        )
        if stored is None:
            raise RefundNotFound(refund_id)
        adapter = _gateway_for(self.gateways, order.payment_method)

        result = await adapter.refund_status(
            refund_id, stored.provider_refund_id
        )
        report = RefundStatusReport(
            order_id=order.order_id,
            refund_id=refund_id,
            provider_refund_id=(
                result.provider_refund_id or stored.provider_refund_id
            ),
            previous_status=stored.status,
            status=result.status,
        )
        if report.status == report.previous_status:
            return report

        updated = await self.order_repo.update_refund_status(
            order.order_id, refund_id, report.status
        )
        if updated is None:
            raise RefundNotFound(refund_id)
        logger.info(
            "Refund status changed",
            extra={
                "order_id": order.order_id,
                "refund_id": refund_id,
                "previous_status": report.previous_status,
                "refund_status": report.status,
            },
        )
        await record_audit(
            self.audit_log,
            "payment",
            "REFUND_STATUS_UPDATED",
            {
                "orderId": order.order_id,
                "refundId": refund_id,
                "previousStatus": report.previous_status,
                "status": report.status,
            },
        )
        return report


class AutoCancelUseCase:
    """
    Cancels gateway orders that stayed Pending past a timeout.

    Runs both in the API process and inside a Temporal workflow, where the
    repositories are workflow proxies. The caller passes ``now`` so the
    workflow can use its deterministic clock.
    """

    CANCEL_REASON = "auto_cancel_timeout"

    def __init__(self, order_repo: OrderRepository, audit_log: AuditLog):
        self.order_repo = order_repo
        self.audit_log = audit_log

    async def sweep(
        self, timeout_minutes: int, now: Optional[datetime] = None
    ) -> SweepSummary:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=timeout_minutes)
        stale = await self.order_repo.find_stale_pending(
            cutoff, list(GATEWAY_METHODS)
        )
        summary = SweepSummary(checked=len(stale), ran_at=now)

        for order in stale:
            try:
                canceled = await self.order_repo.cancel_pending(
                    order.order_id, self.CANCEL_REASON
                )
            except Exception as e:
                # One bad order must not stop the sweep
                logger.error(
                    "Failed to auto-cancel order",
                    extra={
                        "order_id": order.order_id,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    },
                    exc_info=True,
                )
                summary.failed += 1
                summary.errors.append(
                    {"orderId": order.order_id, "error": str(e)}
                )
                continue

            if canceled is None:
                summary.skipped += 1
                continue
            summary.canceled += 1
            summary.canceled_order_ids.append(order.order_id)
            await record_audit(
                self.audit_log,
                "info",
                "ORDER_AUTO_CANCELED",
                {
                    "orderId": order.order_id,
                    "paymentMethod": order.payment_method,
                    "createdAt": order.created_at.isoformat(),
                },
            )

        await record_audit(
            self.audit_log,
            "info",
            "AUTO_CANCEL_SUMMARY",
            {
                "checked": summary.checked,
                "canceled": summary.canceled,
                "skipped": summary.skipped,
                "failed": summary.failed,
                "timeoutMinutes": timeout_minutes,
            },
        )
        logger.info(
            "Auto-cancel sweep finished",
            extra={
                "checked": summary.checked,
                "canceled": summary.canceled,
                "failed": summary.failed,
            },
        )
        return summary


class ReverifyPresumptiveUseCase:
    """
    Re-checks orders that were marked Paid on a status-check timeout.

    Confirmed orders lose the presumptive flag. Orders the provider reports
    as not paid keep it and raise a security event, since goods may ship
    against a payment that never happened.
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        gateways: List[GatewayAdapter],
        audit_log: AuditLog,
    ):
        self.order_repo = ensure_order_repository(order_repo)
        self.gateways = _index_gateways(gateways)
        self.audit_log = ensure_audit_log(audit_log)

    async def execute(self) -> ReverifySummary:
        orders = await self.order_repo.find_presumptive()
        summary = ReverifySummary(checked=len(orders))

        for order in orders:
            adapter = self.gateways.get(order.payment_method)
            if adapter is None or not order.merchant_transaction_id:
                summary.unresolved += 1
                continue
            try:
                status = await adapter.check_status(
                    order.merchant_transaction_id
                )
            except (GatewayTimeout, GatewayError) as e:
                logger.warning(
                    "Could not re-verify presumptive order",
                    extra={
                        "order_id": order.order_id,
                        "error_message": e.message,
                    },
                )
                summary.unresolved += 1
                continue

            if status.succeeded and _amount_matches(order, status):
                await self.order_repo.clear_presumptive(order.order_id)
                summary.confirmed += 1
                await record_audit(
                    self.audit_log,
                    "payment",
                    "PRESUMPTIVE_SUCCESS_CONFIRMED",
                    {"orderId": order.order_id, "state": status.state},
                )
            elif status.succeeded or status.failed:
                summary.refuted += 1
                summary.refuted_order_ids.append(order.order_id)
                details = {
                    "orderId": order.order_id,
                    "state": status.state,
                    "amount": status.amount_minor,
                    "action": "hold fulfillment and review payment",
                }
                logger.warning(
                    "PRESUMPTIVE_SUCCESS_REFUTED", extra={"details": details}
                )
                await record_audit(
                    self.audit_log,
                    "security",
                    "PRESUMPTIVE_SUCCESS_REFUTED",
                    details,
                )
            else:
                summary.unresolved += 1

        logger.info(
            "Presumptive orders re-verified",
            extra={
                "checked": summary.checked,
                "confirmed": summary.confirmed,
                "refuted": summary.refuted,
            },
        )
        return summary


class GetOrderUseCase:
    """Read-only order lookups for customers and admins."""

    def __init__(self, order_repo: OrderRepository):
        self.order_repo = ensure_order_repository(order_repo)

    async def get(self, order_id: str) -> Order:
        order = await self.order_repo.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def track(
        self, email: str, phone: str, order_id: Optional[str] = None
    ) -> List[Order]:
        if not email or not phone:
            raise ValidationError(
                "Email and phone are required to track orders."
            )
        orders = await self.order_repo.find_by_contact(email, phone, order_id)
        return sorted(orders, key=lambda o: o.created_at, reverse=True)
