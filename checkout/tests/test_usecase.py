"""
Tests for OrderReconciliationUseCase.

Covers the three confirmation paths (verify, browser return, webhook) and
the guarantees they share: one Pending -> Paid transition per order, stock
deducted exactly once, and every refusal leaving a security audit trail.
"""

from decimal import Decimal
from typing import Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from checkout.bundle import SignedBundle
from checkout.domain import (
    CartItem,
    GatewayStatus,
    PaymentProof,
    SellerContact,
)
from checkout.errors import (
    DuplicateAttempt,
    GatewayTimeout,
    InsufficientStock,
    PaymentVerificationFailed,
    ProductNotFound,
    ValidationError,
)
from checkout.gateways.base import hmac_sha256_hex
from checkout.repos.memory import (
    MemoryOrderRepository,
    MemoryStockLedger,
    MemoryStore,
    RecordingAuditLog,
)
from checkout.repositories import (
    EmailService,
    InvoiceService,
    NotificationService,
    SellerDirectory,
)
from checkout.tests.conftest import BUNDLE_SECRET, Clock
from checkout.tests.factories import CALLER_KEY, minimal_command
from checkout.tests.helpers import (
    WEBHOOK_SECRET,
    FakeGateway,
    signed_webhook,
)
from checkout.tests.test_gateways import (
    NOW,
    phonepe_adapter,
    razorpay_adapter,
)
from checkout.usecase import (
    CreateOrderResult,
    GetOrderUseCase,
    OrderReconciliationUseCase,
    ReverifyPresumptiveUseCase,
)


def proof_for(result: CreateOrderResult) -> PaymentProof:
    return PaymentProof(
        provider_transaction_id=result.provider_transaction_id,
        payment_id="pay_29QQoUBi66xm2f",
        signature="client-signature",
    )


def success_event(txn: str, amount_minor: int = 129900) -> dict:
    return {
        "kind": "success",
        "event_type": "checkout.order.completed",
        "merchant_transaction_id": txn,
        "transaction_id": "T2503141030",
        "amount_minor": amount_minor,
        "state": "COMPLETED",
    }


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_cod_order_deducts_stock_immediately(
        self,
        use_case: OrderReconciliationUseCase,
        store: MemoryStore,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command(
                "cod",
                discount_amount=Decimal("100"),
                shipping_charges=Decimal("50"),
            ),
            CALLER_KEY,
        )

        assert result.success
        assert result.order_id == "ORD-20250314-1"
        assert result.order.payment_status == "Pending"
        assert result.order.order_status == "Pending"
        assert result.order.final_total == Decimal("1249.00")
        assert store.stock_of("prod-1") == 9
        assert "ORDER_CREATED" in audit_log.actions("payment")

    @pytest.mark.asyncio
    async def test_repeated_key_is_a_duplicate(
        self, use_case: OrderReconciliationUseCase, store: MemoryStore
    ) -> None:
        await use_case.create_order(minimal_command("cod"), CALLER_KEY)

        with pytest.raises(DuplicateAttempt) as exc_info:
            await use_case.create_order(minimal_command("cod"), CALLER_KEY)

        assert exc_info.value.order_id == "ORD-20250314-1"
        assert store.stock_of("prod-1") == 9

    @pytest.mark.asyncio
    async def test_missing_caller_key_rejected(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        with pytest.raises(ValidationError, match="required"):
            await use_case.create_order(minimal_command("cod"), None)

    @pytest.mark.asyncio
    async def test_caller_key_with_underscore_rejected(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        with pytest.raises(ValidationError):
            await use_case.create_order(
                minimal_command("cod"), "checkout_7f3a9c21"
            )

    @pytest.mark.asyncio
    async def test_unknown_product(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        command = minimal_command(
            "cod", cart_items=[CartItem(product_id="nope", quantity=1)]
        )
        with pytest.raises(ProductNotFound):
            await use_case.create_order(command, CALLER_KEY)

    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_no_order(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
    ) -> None:
        command = minimal_command(
            "cod", cart_items=[CartItem(product_id="prod-2", quantity=4)]
        )
        with pytest.raises(InsufficientStock) as exc_info:
            await use_case.create_order(command, CALLER_KEY)

        assert exc_info.value.available == 3
        assert await order_repo.find_by_caller_key(CALLER_KEY) == []

    @pytest.mark.asyncio
    async def test_discount_above_total_rejected(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        command = minimal_command("cod", discount_amount=Decimal("5000"))
        with pytest.raises(ValidationError, match="exceed"):
            await use_case.create_order(command, CALLER_KEY)

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_rejected(
        self,
        order_repo: MemoryOrderRepository,
        stock_ledger: MemoryStockLedger,
        audit_log: RecordingAuditLog,
    ) -> None:
        use_case = OrderReconciliationUseCase(
            order_repo=order_repo,
            stock_ledger=stock_ledger,
            gateways=[],
            audit_log=audit_log,
            bundle_secret=BUNDLE_SECRET,
        )
        with pytest.raises(ValidationError, match="not available"):
            await use_case.create_order(
                minimal_command("razorpay"), CALLER_KEY
            )

    @pytest.mark.asyncio
    async def test_razorpay_writes_no_row_until_verified(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        store: MemoryStore,
        razorpay: FakeGateway,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )

        assert result.provider_transaction_id == "razorpay-txn-1"
        assert result.signed_bundle is not None
        assert result.checkout_payload == {"providerOrderId": "razorpay-txn-1"}
        assert await order_repo.get(result.order_id) is None
        assert store.stock_of("prod-1") == 10

    @pytest.mark.asyncio
    async def test_phonepe_persists_pending_row_with_stock(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        store: MemoryStore,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        order = await order_repo.get(result.order_id)
        assert result.redirect_url == "https://pay.example.com/phonepe-txn-1"
        assert order.payment_status == "Pending"
        assert order.merchant_transaction_id == "phonepe-txn-1"
        assert store.stock_of("prod-1") == 9

    @pytest.mark.asyncio
    async def test_intent_timeout_recorded_as_canceled(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        store: MemoryStore,
        phonepe: FakeGateway,
        audit_log: RecordingAuditLog,
    ) -> None:
        phonepe.intent_error = GatewayTimeout("PhonePe did not answer.")

        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        assert not result.success
        assert result.error_code == "phonepe_timeout"
        order = await order_repo.get(result.order_id)
        assert order.order_status == "Canceled"
        assert order.payment_status == "Failed"
        assert store.stock_of("prod-1") == 10
        assert "PAYMENT_INTENT_TIMEOUT" in audit_log.actions("error")

    @pytest.mark.asyncio
    async def test_switching_gateway_supersedes_pending_attempt(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        store: MemoryStore,
    ) -> None:
        first = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        assert store.stock_of("prod-1") == 9

        await use_case.create_order(minimal_command("razorpay"), CALLER_KEY)

        superseded = await order_repo.get(first.order_id)
        assert superseded.order_status == "Canceled"
        assert store.stock_of("prod-1") == 10


class TestVerifyPayment:
    @pytest.mark.asyncio
    async def test_verify_inserts_paid_order_and_deducts_stock(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        store: MemoryStore,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )

        outcome = await use_case.verify_payment(
            "razorpay", proof_for(result), result.signed_bundle
        )

        assert outcome.result == "applied"
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Paid"
        assert order.order_status == "Processing"
        assert order.transaction_id == "pay-razorpay-txn-1"
        assert store.stock_of("prod-1") == 9
        assert "PAYMENT_CONFIRMED" in audit_log.actions("payment")

    @pytest.mark.asyncio
    async def test_verify_replay_is_already_paid(
        self,
        use_case: OrderReconciliationUseCase,
        store: MemoryStore,
        razorpay: FakeGateway,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        await use_case.verify_payment(
            "razorpay", proof_for(result), result.signed_bundle
        )

        replay = await use_case.verify_payment(
            "razorpay", proof_for(result), result.signed_bundle
        )

        assert replay.result == "already_paid"
        assert replay.order.order_id == result.order_id
        assert store.stock_of("prod-1") == 9
        assert len(razorpay.status_checks) == 1

    @pytest.mark.asyncio
    async def test_tampered_bundle_is_a_security_event(
        self,
        use_case: OrderReconciliationUseCase,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        forged = SignedBundle(
            payload=result.signed_bundle.payload, signature="0" * 64
        )

        with pytest.raises(PaymentVerificationFailed):
            await use_case.verify_payment(
                "razorpay", proof_for(result), forged
            )

        assert "ORDER_DATA_REJECTED" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_bundle_for_another_payment_rejected(
        self,
        use_case: OrderReconciliationUseCase,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        proof = PaymentProof(provider_transaction_id="razorpay-txn-99")

        with pytest.raises(PaymentVerificationFailed, match="does not match"):
            await use_case.verify_payment(
                "razorpay", proof, result.signed_bundle
            )

        assert "ORDER_DATA_MISMATCH" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_invalid_provider_signature(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        razorpay: FakeGateway,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        razorpay.proof_valid = False

        with pytest.raises(PaymentVerificationFailed):
            await use_case.verify_payment(
                "razorpay", proof_for(result), result.signed_bundle
            )

        assert await order_repo.get(result.order_id) is None
        assert "PAYMENT_SIGNATURE_INVALID" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_amount_mismatch_refused(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        razorpay: FakeGateway,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        razorpay.status = GatewayStatus(
            succeeded=True, state="captured", amount_minor=100
        )

        with pytest.raises(PaymentVerificationFailed, match="amount"):
            await use_case.verify_payment(
                "razorpay", proof_for(result), result.signed_bundle
            )

        assert await order_repo.get(result.order_id) is None
        assert "PAYMENT_AMOUNT_MISMATCH" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_uncaptured_payment_rejected(
        self,
        use_case: OrderReconciliationUseCase,
        razorpay: FakeGateway,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        razorpay.status = GatewayStatus(succeeded=False, state="created")

        with pytest.raises(PaymentVerificationFailed, match="not been"):
            await use_case.verify_payment(
                "razorpay", proof_for(result), result.signed_bundle
            )

        assert "PAYMENT_NOT_COMPLETED" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_stock_gone_before_verify_needs_manual_refund(
        self,
        use_case: OrderReconciliationUseCase,
        store: MemoryStore,
        audit_log: RecordingAuditLog,
    ) -> None:
        command = minimal_command(
            "razorpay", cart_items=[CartItem(product_id="prod-2", quantity=3)]
        )
        result = await use_case.create_order(command, CALLER_KEY)
        await use_case.create_order(
            minimal_command(
                "cod", cart_items=[CartItem(product_id="prod-2", quantity=1)]
            ),
            "another-cart-key",
        )

        with pytest.raises(InsufficientStock):
            await use_case.verify_payment(
                "razorpay", proof_for(result), result.signed_bundle
            )

        assert store.stock_of("prod-2") == 2
        assert "PAID_ORDER_OUT_OF_STOCK" in audit_log.actions("security")


class TestHandleReturn:
    @pytest.mark.asyncio
    async def test_successful_return_marks_paid(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.success
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Paid"
        assert not order.presumptive_success

    @pytest.mark.asyncio
    async def test_return_replay_skips_status_check(
        self, use_case: OrderReconciliationUseCase, phonepe: FakeGateway
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        await use_case.handle_return(result.order_id)

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.success
        assert len(phonepe.status_checks) == 1

    @pytest.mark.asyncio
    async def test_unknown_order(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        outcome = await use_case.handle_return("ORD-19990101-1")
        assert outcome.error_code == "order_not_found"

    @pytest.mark.asyncio
    async def test_failed_payment_cancels_and_restores_stock(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        store: MemoryStore,
        phonepe: FakeGateway,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        phonepe.status = GatewayStatus(succeeded=False, state="FAILED")

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.error_code == "payment_failed"
        order = await order_repo.get(result.order_id)
        assert order.order_status == "Canceled"
        assert store.stock_of("prod-1") == 10

        again = await use_case.handle_return(result.order_id)
        assert again.error_code == "order_cancelled"

    @pytest.mark.asyncio
    async def test_pending_provider_state_is_not_final(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        phonepe: FakeGateway,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        phonepe.status = GatewayStatus(succeeded=False, state="PENDING")

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.error_code == "verification_failed"
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Pending"

    @pytest.mark.asyncio
    async def test_status_timeout_presumes_success(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        phonepe: FakeGateway,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        phonepe.status_error = GatewayTimeout("Status check timed out.")

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.success
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Paid"
        assert order.presumptive_success
        assert "PRESUMPTIVE_SUCCESS_APPLIED" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_status_timeout_without_presumption(
        self,
        make_use_case: Callable[..., OrderReconciliationUseCase],
        order_repo: MemoryOrderRepository,
        phonepe: FakeGateway,
    ) -> None:
        use_case = make_use_case(presume_success_on_return_timeout=False)
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        phonepe.status_error = GatewayTimeout("Status check timed out.")

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.error_code == "verification_failed"
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Pending"


class TestHandleWebhook:
    @pytest.mark.asyncio
    async def test_success_event_processed_once(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        hook = signed_webhook(success_event("phonepe-txn-1"))

        first = await use_case.handle_webhook(
            "phonepe", hook["payload"], hook["signature"]
        )
        second = await use_case.handle_webhook(
            "phonepe", hook["payload"], hook["signature"]
        )

        assert first.status == "processed"
        assert second.status == "already_paid"
        order = await order_repo.get(result.order_id)
        assert order.transaction_id == "T2503141030"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self,
        use_case: OrderReconciliationUseCase,
        audit_log: RecordingAuditLog,
    ) -> None:
        hook = signed_webhook(success_event("phonepe-txn-1"))

        with pytest.raises(PaymentVerificationFailed):
            await use_case.handle_webhook(
                "phonepe", hook["payload"], "deadbeef"
            )

        assert "WEBHOOK_SIGNATURE_INVALID" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_malformed_body_rejected(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        payload = b"{not json"
        signature = hmac_sha256_hex(WEBHOOK_SECRET, payload)

        with pytest.raises(ValidationError, match="Malformed"):
            await use_case.handle_webhook("phonepe", payload, signature)

    @pytest.mark.asyncio
    async def test_unknown_order_acknowledged(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        hook = signed_webhook(success_event("razorpay-txn-404"))

        outcome = await use_case.handle_webhook(
            "razorpay", hook["payload"], hook["signature"]
        )

        assert outcome.status == "ignored"

    @pytest.mark.asyncio
    async def test_payment_on_canceled_order_refused(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        await order_repo.cancel_pending(result.order_id, "auto_cancel_timeout")
        hook = signed_webhook(success_event("phonepe-txn-1"))

        outcome = await use_case.handle_webhook(
            "phonepe", hook["payload"], hook["signature"]
        )

        assert outcome.status == "refused"
        order = await order_repo.get(result.order_id)
        assert order.order_status == "Canceled"
        assert "PAID_ORDER_REFUSED" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_amount_mismatch_refused(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        audit_log: RecordingAuditLog,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        hook = signed_webhook(success_event("phonepe-txn-1", amount_minor=1))

        outcome = await use_case.handle_webhook(
            "phonepe", hook["payload"], hook["signature"]
        )

        assert outcome.status == "refused"
        assert (await order_repo.get(result.order_id)).payment_status == (
            "Pending"
        )
        assert "PAYMENT_AMOUNT_MISMATCH" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_failure_event_cancels(
        self,
        use_case: OrderReconciliationUseCase,
        store: MemoryStore,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        hook = signed_webhook(
            {
                "kind": "failure",
                "event_type": "checkout.order.failed",
                "merchant_transaction_id": "phonepe-txn-1",
                "state": "FAILED",
            }
        )

        outcome = await use_case.handle_webhook(
            "phonepe", hook["payload"], hook["signature"]
        )

        assert outcome.status == "canceled"
        assert outcome.order_id == result.order_id
        assert store.stock_of("prod-1") == 10

    @pytest.mark.asyncio
    async def test_refund_event_logged(
        self,
        use_case: OrderReconciliationUseCase,
        audit_log: RecordingAuditLog,
    ) -> None:
        hook = signed_webhook(
            {
                "kind": "refund",
                "event_type": "refund.processed",
                "order_id": "ORD-20250314-1",
                "amount_minor": 50000,
            }
        )

        outcome = await use_case.handle_webhook(
            "razorpay", hook["payload"], hook["signature"]
        )

        assert outcome.status == "refund_logged"
        assert "REFUND_WEBHOOK_RECEIVED" in audit_log.actions("payment")

    @pytest.mark.asyncio
    async def test_second_gateway_paid_after_first_is_refused(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
        audit_log: RecordingAuditLog,
    ) -> None:
        phonepe_attempt = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        card = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )
        await use_case.verify_payment(
            "razorpay", proof_for(card), card.signed_bundle
        )
        hook = signed_webhook(success_event("phonepe-txn-1"))

        outcome = await use_case.handle_webhook(
            "phonepe", hook["payload"], hook["signature"]
        )

        assert outcome.status == "refused"
        paid = [
            o
            for o in await order_repo.find_by_caller_key(CALLER_KEY)
            if o.payment_status == "Paid"
        ]
        assert [o.order_id for o in paid] == [card.order_id]
        assert phonepe_attempt.order_id != card.order_id
        assert "PAID_ORDER_REFUSED" in audit_log.actions("security")


class TestCollaborators:
    @pytest.mark.asyncio
    async def test_confirmation_notifies_collaborators(
        self,
        make_use_case: Callable[..., OrderReconciliationUseCase],
    ) -> None:
        email = AsyncMock(spec=EmailService)
        notifications = AsyncMock(spec=NotificationService)
        invoices = AsyncMock(spec=InvoiceService)
        sellers = AsyncMock(spec=SellerDirectory)
        sellers.get_order_recipient.return_value = SellerContact(
            seller_id="seller-1", email="seller@example.com"
        )
        use_case = make_use_case(
            email_service=email,
            notification_service=notifications,
            invoice_service=invoices,
            seller_directory=sellers,
        )
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        await use_case.handle_return(result.order_id)
        await use_case.handle_return(result.order_id)

        email.send_checkout_success_email.assert_awaited_once()
        assert (
            email.send_checkout_success_email.await_args.args[0]
            == "asha@example.com"
        )
        notifications.send_multi_channel_notification.assert_awaited_once()
        invoices.generate_invoice.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_collaborator_failure_does_not_fail_payment(
        self,
        make_use_case: Callable[..., OrderReconciliationUseCase],
        order_repo: MemoryOrderRepository,
    ) -> None:
        email = AsyncMock(spec=EmailService)
        email.send_checkout_success_email.side_effect = RuntimeError("smtp")
        use_case = make_use_case(email_service=email)
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.success
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Paid"


class TestAdminOperations:
    @pytest.mark.asyncio
    async def test_cleanup_pending(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
    ) -> None:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        canceled = await use_case.cleanup_pending(CALLER_KEY)

        assert canceled == [result.order_id]
        order = await order_repo.get(result.order_id)
        assert order.order_status == "Canceled"

    @pytest.mark.asyncio
    async def test_pending_summary(
        self, use_case: OrderReconciliationUseCase
    ) -> None:
        await use_case.create_order(minimal_command("phonepe"), CALLER_KEY)
        await use_case.create_order(
            minimal_command("cod"), "another-cart-key"
        )

        summary = await use_case.pending_summary()

        assert summary.total == 2
        assert summary.by_method == {"phonepe": 1, "cod": 1}


class TestReverifyPresumptive:
    @pytest_asyncio.fixture
    async def presumptive_order_id(
        self, use_case: OrderReconciliationUseCase, phonepe: FakeGateway
    ) -> str:
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )
        phonepe.status_error = GatewayTimeout("Status check timed out.")
        await use_case.handle_return(result.order_id)
        phonepe.status_error = None
        return result.order_id

    @pytest.mark.asyncio
    async def test_confirmed_clears_flag(
        self,
        presumptive_order_id: str,
        order_repo: MemoryOrderRepository,
        gateways,
        audit_log: RecordingAuditLog,
        phonepe: FakeGateway,
    ) -> None:
        phonepe.status = GatewayStatus(
            succeeded=True, state="COMPLETED", amount_minor=129900
        )
        reverify = ReverifyPresumptiveUseCase(order_repo, gateways, audit_log)

        summary = await reverify.execute()

        assert summary.checked == 1
        assert summary.confirmed == 1
        order = await order_repo.get(presumptive_order_id)
        assert not order.presumptive_success

    @pytest.mark.asyncio
    async def test_refuted_raises_security_event(
        self,
        presumptive_order_id: str,
        order_repo: MemoryOrderRepository,
        gateways,
        audit_log: RecordingAuditLog,
        phonepe: FakeGateway,
    ) -> None:
        phonepe.status = GatewayStatus(succeeded=False, state="FAILED")
        reverify = ReverifyPresumptiveUseCase(order_repo, gateways, audit_log)

        summary = await reverify.execute()

        assert summary.refuted_order_ids == [presumptive_order_id]
        order = await order_repo.get(presumptive_order_id)
        assert order.presumptive_success
        assert "PRESUMPTIVE_SUCCESS_REFUTED" in audit_log.actions("security")

    @pytest.mark.asyncio
    async def test_still_unreachable_is_unresolved(
        self,
        presumptive_order_id: str,
        order_repo: MemoryOrderRepository,
        gateways,
        audit_log: RecordingAuditLog,
        phonepe: FakeGateway,
    ) -> None:
        phonepe.status_error = GatewayTimeout("Status check timed out.")
        reverify = ReverifyPresumptiveUseCase(order_repo, gateways, audit_log)

        summary = await reverify.execute()

        assert summary.unresolved == 1


class TestGetOrder:
    @pytest.mark.asyncio
    async def test_track_requires_both_email_and_phone(
        self,
        use_case: OrderReconciliationUseCase,
        order_repo: MemoryOrderRepository,
    ) -> None:
        await use_case.create_order(minimal_command("cod"), CALLER_KEY)
        queries = GetOrderUseCase(order_repo)

        found = await queries.track("ASHA@example.com", "9876543210")
        wrong_phone = await queries.track("asha@example.com", "9999999999")

        assert [o.order_id for o in found] == ["ORD-20250314-1"]
        assert wrong_phone == []

    @pytest.mark.asyncio
    async def test_track_without_contact_rejected(
        self, order_repo: MemoryOrderRepository
    ) -> None:
        with pytest.raises(ValidationError):
            await GetOrderUseCase(order_repo).track("", "9876543210")


class TestProviderReadTimeouts:
    """The real adapters over a transport that never answers in time."""

    @staticmethod
    def build(
        adapter,
        order_repo: MemoryOrderRepository,
        stock_ledger: MemoryStockLedger,
        audit_log: RecordingAuditLog,
        clock: Clock,
    ) -> OrderReconciliationUseCase:
        return OrderReconciliationUseCase(
            order_repo=order_repo,
            stock_ledger=stock_ledger,
            gateways=[adapter],
            audit_log=audit_log,
            bundle_secret=BUNDLE_SECRET,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_razorpay_intent_read_timeout(
        self,
        order_repo: MemoryOrderRepository,
        stock_ledger: MemoryStockLedger,
        store: MemoryStore,
        audit_log: RecordingAuditLog,
        clock: Clock,
    ) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        use_case = self.build(
            razorpay_adapter(handler),
            order_repo,
            stock_ledger,
            audit_log,
            clock,
        )

        result = await use_case.create_order(
            minimal_command("razorpay"), CALLER_KEY
        )

        assert not result.success
        assert result.error_code == "gateway_timeout"
        assert len(calls) == 1
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Failed"
        assert store.stock_of("prod-1") == 10
        assert "PAYMENT_INTENT_TIMEOUT" in audit_log.actions("error")

    @pytest.mark.asyncio
    async def test_phonepe_return_read_timeout_presumes_success(
        self,
        order_repo: MemoryOrderRepository,
        stock_ledger: MemoryStockLedger,
        audit_log: RecordingAuditLog,
        clock: Clock,
    ) -> None:
        status_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/oauth/token"):
                return httpx.Response(
                    200,
                    json={"access_token": "tok", "expires_at": NOW + 3600},
                )
            if request.method == "POST":
                return httpx.Response(
                    200,
                    json={
                        "orderId": "OMO2503141030",
                        "redirectUrl": "https://mercury.phonepe.test/pay/1",
                    },
                )
            status_calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        use_case = self.build(
            phonepe_adapter(handler),
            order_repo,
            stock_ledger,
            audit_log,
            clock,
        )
        result = await use_case.create_order(
            minimal_command("phonepe"), CALLER_KEY
        )

        outcome = await use_case.handle_return(result.order_id)

        assert outcome.success
        assert len(status_calls) == 1
        order = await order_repo.get(result.order_id)
        assert order.payment_status == "Paid"
        assert order.presumptive_success
        assert "PRESUMPTIVE_SUCCESS_APPLIED" in audit_log.actions("security")
