"""
Temporal workflows for checkout maintenance.

Workflows orchestrate the business logic and activities
in a deterministic manner.
"""

from typing import Optional

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from .domain import SweepSummary
    from .repos.temporal.proxies import (
        WorkflowAuditLogProxy,
        WorkflowOrderRepositoryProxy,
    )
    from .usecase import AutoCancelUseCase


DEFAULT_TIMEOUT_MINUTES = 30


@workflow.defn
class AutoCancelWorkflow:
    """
    One auto-cancel sweep, started by the ``checkout-auto-cancel``
    schedule or on demand by the CLI.

    A thin wrapper around AutoCancelUseCase with repository proxies. The
    sweep cutoff is computed from ``workflow.now()`` so replays see the
    same time.
    """

    def __init__(self) -> None:
        self.summary: Optional[SweepSummary] = None

    @workflow.query
    def get_summary(self) -> Optional[SweepSummary]:
        return self.summary

    @workflow.run
    async def run(
        self, timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    ) -> SweepSummary:
        workflow.logger.info(
            "Starting AutoCancelWorkflow",
            extra={
                "timeout_minutes": timeout_minutes,
                "workflow_run_id": workflow.info().run_id,
            },
        )

        use_case = AutoCancelUseCase(
            order_repo=WorkflowOrderRepositoryProxy(),  # type: ignore[abstract]
            audit_log=WorkflowAuditLogProxy(),  # type: ignore[abstract]
        )
        self.summary = await use_case.sweep(
            timeout_minutes, now=workflow.now()
        )

        workflow.logger.info(
            "AutoCancelWorkflow completed",
            extra={
                "checked": self.summary.checked,
                "canceled": self.summary.canceled,
                "failed": self.summary.failed,
            },
        )
        return self.summary
