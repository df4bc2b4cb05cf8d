from datetime import datetime
from decimal import Decimal
from typing import Callable, List

import pytest

from checkout.repos.memory import (
    MemoryOrderRepository,
    MemoryStockLedger,
    MemoryStore,
    RecordingAuditLog,
)
from checkout.tests.factories import FIXED_NOW, minimal_product
from checkout.tests.helpers import FakeGateway
from checkout.usecase import OrderReconciliationUseCase, RefundUseCase

BUNDLE_SECRET = "bundle-secret-for-tests"


class Clock:
    """Settable clock injected into use cases."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(
        products=[
            minimal_product(),
            minimal_product(
                product_id="prod-2",
                name="Copper Bottle",
                price=Decimal("450.00"),
                stock=3,
            ),
        ]
    )


@pytest.fixture
def order_repo(store: MemoryStore) -> MemoryOrderRepository:
    return MemoryOrderRepository(store)


@pytest.fixture
def stock_ledger(store: MemoryStore) -> MemoryStockLedger:
    return MemoryStockLedger(store)


@pytest.fixture
def audit_log() -> RecordingAuditLog:
    return RecordingAuditLog()


@pytest.fixture
def razorpay() -> FakeGateway:
    return FakeGateway("razorpay")


@pytest.fixture
def phonepe() -> FakeGateway:
    return FakeGateway("phonepe", persists_pending_order=True)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def gateways(razorpay: FakeGateway, phonepe: FakeGateway) -> List[FakeGateway]:
    return [razorpay, phonepe]


@pytest.fixture
def use_case(
    order_repo: MemoryOrderRepository,
    stock_ledger: MemoryStockLedger,
    gateways: List[FakeGateway],
    audit_log: RecordingAuditLog,
    clock: Clock,
) -> OrderReconciliationUseCase:
    return OrderReconciliationUseCase(
        order_repo=order_repo,
        stock_ledger=stock_ledger,
        gateways=gateways,
        audit_log=audit_log,
        bundle_secret=BUNDLE_SECRET,
        clock=clock,
    )


@pytest.fixture
def refund_use_case(
    order_repo: MemoryOrderRepository,
    gateways: List[FakeGateway],
    audit_log: RecordingAuditLog,
) -> RefundUseCase:
    return RefundUseCase(
        order_repo=order_repo, gateways=gateways, audit_log=audit_log
    )


@pytest.fixture
def make_use_case(
    order_repo: MemoryOrderRepository,
    stock_ledger: MemoryStockLedger,
    gateways: List[FakeGateway],
    audit_log: RecordingAuditLog,
    clock: Clock,
) -> Callable[..., OrderReconciliationUseCase]:
    """Build a use case with extra keyword arguments (collaborators,
    presumption policy)."""

    def build(**kwargs) -> OrderReconciliationUseCase:  # type: ignore
        return OrderReconciliationUseCase(
            order_repo=order_repo,
            stock_ledger=stock_ledger,
            gateways=gateways,
            audit_log=audit_log,
            bundle_secret=BUNDLE_SECRET,
            clock=clock,
            **kwargs,
        )

    return build
