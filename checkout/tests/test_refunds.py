from decimal import Decimal

import pytest
import pytest_asyncio

from checkout.domain import Order, RefundDetails
from checkout.errors import (
    OrderNotFound,
    RefundIneligible,
    RefundNotFound,
    ValidationError,
)
from checkout.repos.memory import (
    MemoryOrderRepository,
    MemoryStore,
    RecordingAuditLog,
)
from checkout.tests.factories import minimal_order
from checkout.tests.helpers import FakeGateway
from checkout.usecase import RefundUseCase


async def store_paid_order(
    order_repo: MemoryOrderRepository, **kwargs
) -> Order:
    order = minimal_order(
        discount_amount=Decimal("100"),
        shipping_charges=Decimal("50"),
        merchant_transaction_id="order_Nx1",
        **kwargs,
    )
    await order_repo.insert_pending(order)
    outcome = await order_repo.mark_paid(order.order_id, "pay_Nx1", {})
    return outcome.order


@pytest_asyncio.fixture
async def paid_order(order_repo: MemoryOrderRepository) -> Order:
    return await store_paid_order(order_repo)


@pytest.mark.asyncio
async def test_partial_refunds_up_to_final_total(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    razorpay: FakeGateway,
    store: MemoryStore,
) -> None:
    assert paid_order.final_total == Decimal("1249.00")

    first = await refund_use_case.partial_refund(
        paid_order.order_id, Decimal("500"), "damaged lid"
    )
    assert first.payment_status == "Paid"
    assert first.total_refunded == Decimal("500.00")

    second = await refund_use_case.partial_refund(
        paid_order.order_id, Decimal("749")
    )
    assert second.payment_status == "Refunded"
    assert second.order_status == "Canceled"
    assert second.total_refunded == second.final_total
    assert [r.amount for r in second.partial_refunds] == [
        Decimal("500.00"),
        Decimal("749.00"),
    ]
    assert [r["amount"] for r in razorpay.refunds] == [50000, 74900]
    assert razorpay.refunds[0]["reference"] == "pay_Nx1"
    # Partial refunds leave stock alone
    assert store.stock_of("prod-1") == 9

    with pytest.raises(RefundIneligible, match="already been fully"):
        await refund_use_case.partial_refund(
            paid_order.order_id, Decimal("1")
        )


@pytest.mark.asyncio
async def test_partial_refund_above_balance_rejected(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    razorpay: FakeGateway,
) -> None:
    await refund_use_case.partial_refund(paid_order.order_id, Decimal("1000"))

    with pytest.raises(RefundIneligible, match="exceeds"):
        await refund_use_case.partial_refund(
            paid_order.order_id, Decimal("250")
        )

    assert len(razorpay.refunds) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
async def test_partial_refund_amount_must_be_positive(
    refund_use_case: RefundUseCase, paid_order: Order, amount: Decimal
) -> None:
    with pytest.raises(ValidationError):
        await refund_use_case.partial_refund(paid_order.order_id, amount)


@pytest.mark.asyncio
async def test_full_refund_restores_stock(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    store: MemoryStore,
    razorpay: FakeGateway,
    audit_log: RecordingAuditLog,
) -> None:
    assert store.stock_of("prod-1") == 9

    refunded = await refund_use_case.full_refund(
        paid_order.order_id, "customer request"
    )

    assert refunded.payment_status == "Refunded"
    assert refunded.order_status == "Canceled"
    assert refunded.refund_details.amount == Decimal("1249.00")
    assert refunded.refund_details.provider_refund_id == "rfnd_1"
    assert razorpay.refunds[0]["amount"] == 124900
    assert store.stock_of("prod-1") == 10
    assert "FULL_REFUND_ISSUED" in audit_log.actions("payment")


@pytest.mark.asyncio
async def test_full_refund_after_partial_refunds_the_balance(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    razorpay: FakeGateway,
) -> None:
    await refund_use_case.partial_refund(paid_order.order_id, Decimal("249"))

    refunded = await refund_use_case.full_refund(paid_order.order_id)

    assert refunded.refund_details.amount == Decimal("1000.00")
    assert refunded.total_refunded == Decimal("1249.00")
    assert razorpay.refunds[-1]["amount"] == 100000


@pytest.mark.asyncio
async def test_cod_orders_not_refundable(
    refund_use_case: RefundUseCase, order_repo: MemoryOrderRepository
) -> None:
    cod = await store_paid_order(order_repo, payment_method="cod")

    with pytest.raises(RefundIneligible, match="Cash on delivery"):
        await refund_use_case.full_refund(cod.order_id)


@pytest.mark.asyncio
async def test_pending_orders_not_refundable(
    refund_use_case: RefundUseCase, order_repo: MemoryOrderRepository
) -> None:
    await order_repo.insert_pending(minimal_order(payment_method="phonepe"))

    with pytest.raises(RefundIneligible, match="Only paid"):
        await refund_use_case.full_refund("ORD-20250314-1")


@pytest.mark.asyncio
async def test_unknown_order(refund_use_case: RefundUseCase) -> None:
    with pytest.raises(OrderNotFound):
        await refund_use_case.full_refund("ORD-19990101-1")


@pytest.mark.asyncio
async def test_order_changed_during_refund_is_flagged(
    order_repo: MemoryOrderRepository,
    audit_log: RecordingAuditLog,
    paid_order: Order,
) -> None:
    class RacingGateway(FakeGateway):
        """Refunds the order locally while the provider call is in flight."""

        async def refund(self, *args, **kwargs):  # type: ignore
            result = await super().refund(*args, **kwargs)
            await order_repo.apply_full_refund(
                paid_order.order_id,
                RefundDetails(
                    refund_id="rfnd-concurrent", amount=paid_order.final_total
                ),
            )
            return result

    use_case = RefundUseCase(
        order_repo, [RacingGateway("razorpay")], audit_log
    )

    with pytest.raises(RefundIneligible, match="manual"):
        await use_case.full_refund(paid_order.order_id)

    assert "REFUND_NOT_RECORDED" in audit_log.actions("security")


@pytest.mark.asyncio
async def test_refund_summary(
    refund_use_case: RefundUseCase, paid_order: Order
) -> None:
    await refund_use_case.partial_refund(paid_order.order_id, Decimal("200"))

    summary = await refund_use_case.refund_summary(paid_order.order_id)

    assert summary.refundable_amount == Decimal("1049.00")
    assert len(summary.partial_refunds) == 1


@pytest.mark.asyncio
async def test_refund_status_updates_stored_partial_refund(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    razorpay: FakeGateway,
    order_repo: MemoryOrderRepository,
    audit_log: RecordingAuditLog,
) -> None:
    refunded = await refund_use_case.partial_refund(
        paid_order.order_id, Decimal("200")
    )
    refund_id = refunded.partial_refunds[0].refund_id
    razorpay.refund_state = "failed"

    report = await refund_use_case.refund_status(refund_id)

    assert report.order_id == paid_order.order_id
    assert report.previous_status == "processed"
    assert report.status == "failed"
    assert report.provider_refund_id == "rfnd_1"
    assert razorpay.refund_status_checks == [refund_id]
    stored = await order_repo.get(paid_order.order_id)
    assert stored.partial_refunds[0].status == "failed"
    assert "REFUND_STATUS_UPDATED" in audit_log.actions("payment")


@pytest.mark.asyncio
async def test_refund_status_updates_full_refund(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    razorpay: FakeGateway,
    order_repo: MemoryOrderRepository,
) -> None:
    refunded = await refund_use_case.full_refund(paid_order.order_id)
    razorpay.refund_state = "pending"

    report = await refund_use_case.refund_status(
        refunded.refund_details.refund_id
    )

    assert report.status == "pending"
    stored = await order_repo.get(paid_order.order_id)
    assert stored.refund_details.status == "pending"
    assert stored.payment_status == "Refunded"


@pytest.mark.asyncio
async def test_refund_status_unchanged_is_not_audited(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    audit_log: RecordingAuditLog,
) -> None:
    refunded = await refund_use_case.partial_refund(
        paid_order.order_id, Decimal("200")
    )

    report = await refund_use_case.refund_status(
        refunded.partial_refunds[0].refund_id
    )

    assert report.status == report.previous_status == "processed"
    assert "REFUND_STATUS_UPDATED" not in audit_log.actions("payment")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "refund_id",
    [
        "rfnd_Nx1",
        "REF_ORD-20250314-404_1710400000000_abc123",
        "REF_ORD-20250314-1_1710400000000_abc123",
    ],
)
async def test_refund_status_unknown_refund(
    refund_use_case: RefundUseCase,
    paid_order: Order,
    razorpay: FakeGateway,
    refund_id: str,
) -> None:
    with pytest.raises(RefundNotFound):
        await refund_use_case.refund_status(refund_id)

    assert razorpay.refund_status_checks == []
