"""
Workflow-side proxies for checkout repositories.

These classes are used *inside* Temporal workflows. Every protocol method
executes the matching activity, which keeps the workflow deterministic.
"""

from checkout.repositories import AuditLog, OrderRepository
from .activity_names import AUDIT_ACTIVITY_BASE, ORDER_ACTIVITY_BASE
from .decorators import temporal_workflow_proxy


@temporal_workflow_proxy(
    ORDER_ACTIVITY_BASE,
    default_timeout_seconds=30,
    retry_methods=["cancel_pending"],
)
class WorkflowOrderRepositoryProxy(OrderRepository):
    """
    Workflow implementation of OrderRepository that calls activities.

    ``cancel_pending`` runs with a single attempt. An order it fails to
    cancel is still Pending and is picked up by the next sweep.
    """

    pass


@temporal_workflow_proxy(AUDIT_ACTIVITY_BASE, default_timeout_seconds=10)
class WorkflowAuditLogProxy(AuditLog):
    """Workflow implementation of AuditLog that calls activities."""

    pass


__all__ = [
    "WorkflowOrderRepositoryProxy",
    "WorkflowAuditLogProxy",
]
