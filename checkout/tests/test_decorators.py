import logging
from typing import List, Optional
from unittest.mock import patch

import pytest

from checkout.domain import Order
from checkout.repos.memory import MemoryOrderRepository
from checkout.repos.temporal.activities import (
    TemporalLoggingAuditLog,
    TemporalPostgreSQLOrderRepository,
)
from checkout.repos.temporal.activity_names import ORDER_ACTIVITY_BASE
from checkout.repos.temporal.decorators import (
    protocol_methods,
    result_converter,
)
from checkout.repos.temporal.proxies import WorkflowOrderRepositoryProxy
from checkout.repositories import OrderRepository
from checkout.tests.factories import minimal_order


class TestProtocolMethods:
    def test_only_protocol_methods_are_collected(self) -> None:
        methods = protocol_methods(MemoryOrderRepository)

        assert set(methods) == set(protocol_methods(OrderRepository))
        assert "cancel_pending" in methods
        assert not any(name.startswith("_") for name in methods)

    def test_class_without_protocol_rejected(self) -> None:
        class Plain:
            async def get(self) -> None:
                pass

        with pytest.raises(TypeError, match="does not implement"):
            protocol_methods(Plain)


class TestResultConverter:
    def test_models_are_rehydrated(self) -> None:
        order = minimal_order()
        raw = order.model_dump(mode="json")

        assert result_converter(Order)(raw) == order
        assert result_converter(Optional[Order])(None) is None
        assert result_converter(Optional[Order])(raw) == order
        assert result_converter(List[Order])([raw, raw]) == [order, order]

    def test_plain_values_pass_through(self) -> None:
        assert result_converter(str)("ORD-20250314-1") == "ORD-20250314-1"
        assert result_converter(None)(None) is None


class TestActivityRegistration:
    def test_activity_names_follow_the_prefix(self) -> None:
        definition = getattr(
            TemporalPostgreSQLOrderRepository.cancel_pending,
            "__temporal_activity_definition",
        )
        assert definition.name == f"{ORDER_ACTIVITY_BASE}.cancel_pending"

    @pytest.mark.asyncio
    async def test_audit_activity_logs_the_event(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        audit_log = TemporalLoggingAuditLog()

        with caplog.at_level(logging.INFO, logger="checkout.audit"):
            await audit_log.record(
                "warn", "ORDER_AUTO_CANCELED", {"orderId": "ORD-1"}
            )

        (record,) = caplog.records
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "ORDER_AUTO_CANCELED"
        assert record.audit_details == {"orderId": "ORD-1"}


class TestWorkflowProxy:
    @pytest.mark.asyncio
    async def test_proxy_executes_named_activity(self) -> None:
        """Test that proxy methods call the activity of the same name and
        convert the result back into a model."""
        order = minimal_order()
        proxy = WorkflowOrderRepositoryProxy()  # type: ignore[abstract]

        with patch(
            "temporalio.workflow.execute_activity",
            return_value=order.model_dump(mode="json"),
        ) as mock_execute_activity:
            result = await proxy.get("ORD-20250314-1")

        assert result == order
        name = mock_execute_activity.call_args.args[0]
        kwargs = mock_execute_activity.call_args.kwargs
        assert name == f"{ORDER_ACTIVITY_BASE}.get"
        assert kwargs["args"] == ["ORD-20250314-1"]
        assert kwargs["retry_policy"] is None

    @pytest.mark.asyncio
    async def test_cancel_pending_runs_once(self) -> None:
        proxy = WorkflowOrderRepositoryProxy()  # type: ignore[abstract]

        with patch(
            "temporalio.workflow.execute_activity", return_value=None
        ) as mock_execute_activity:
            result = await proxy.cancel_pending("ORD-1", "timeout")

        assert result is None
        policy = mock_execute_activity.call_args.kwargs["retry_policy"]
        assert policy.maximum_attempts == 1

    @pytest.mark.asyncio
    async def test_keyword_arguments_rejected(self) -> None:
        proxy = WorkflowOrderRepositoryProxy()  # type: ignore[abstract]

        with pytest.raises(TypeError, match="positional"):
            await proxy.get(order_id="ORD-1")
