"""
Operations API router.

Routes, mounted with the '/api/orders' prefix:
- GET /admin/pending-orders - Pending orders grouped by payment method
- POST /admin/cleanup-pending/{caller_key} - Cancel in-flight attempts
- GET /admin/auto-cancel/status - Sweeper state
- POST /admin/auto-cancel/start - Start the in-process sweeper
- POST /admin/auto-cancel/stop - Stop the in-process sweeper
- POST /admin/auto-cancel/force-check - Run one sweep now
- PUT /admin/auto-cancel/config - Change interval and timeout
- POST /admin/reverify-presumptive - Re-check presumptive payments

Authentication for these routes is handled in front of this service.
"""

import logging

from fastapi import APIRouter, Depends

from checkout.api.dependencies import (
    get_reconciliation_use_case,
    get_reverify_use_case,
    get_sweeper_controller,
)
from checkout.api.requests import AutoCancelConfigRequest
from checkout.api.responses import (
    AutoCancelStatusResponse,
    CleanupPendingResponse,
)
from checkout.domain import PendingOrdersSummary, ReverifySummary, SweepSummary
from checkout.sweeper import LocalSweeperController
from checkout.usecase import (
    OrderReconciliationUseCase,
    ReverifyPresumptiveUseCase,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.get("/pending-orders", response_model=PendingOrdersSummary)
async def pending_orders(
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
) -> PendingOrdersSummary:
    return await use_case.pending_summary()


@router.post(
    "/cleanup-pending/{caller_key}", response_model=CleanupPendingResponse
)
async def cleanup_pending(
    caller_key: str,
    use_case: OrderReconciliationUseCase = Depends(
        get_reconciliation_use_case
    ),
) -> CleanupPendingResponse:
    canceled = await use_case.cleanup_pending(caller_key)
    logger.info(
        "Pending attempts cleaned up",
        extra={"caller_key": caller_key, "canceled_count": len(canceled)},
    )
    return CleanupPendingResponse(
        caller_key=caller_key, canceled_order_ids=canceled
    )


@router.get("/auto-cancel/status", response_model=AutoCancelStatusResponse)
async def auto_cancel_status(
    sweeper: LocalSweeperController = Depends(get_sweeper_controller),
) -> AutoCancelStatusResponse:
    return AutoCancelStatusResponse(status=sweeper.status())


@router.post("/auto-cancel/start", response_model=AutoCancelStatusResponse)
async def auto_cancel_start(
    sweeper: LocalSweeperController = Depends(get_sweeper_controller),
) -> AutoCancelStatusResponse:
    started = sweeper.start()
    return AutoCancelStatusResponse(
        message=(
            "Auto-cancel service started."
            if started
            else "Auto-cancel service is already running."
        ),
        status=sweeper.status(),
    )


@router.post("/auto-cancel/stop", response_model=AutoCancelStatusResponse)
async def auto_cancel_stop(
    sweeper: LocalSweeperController = Depends(get_sweeper_controller),
) -> AutoCancelStatusResponse:
    stopped = await sweeper.stop()
    return AutoCancelStatusResponse(
        message=(
            "Auto-cancel service stopped."
            if stopped
            else "Auto-cancel service is not running."
        ),
        status=sweeper.status(),
    )


@router.post("/auto-cancel/force-check", response_model=SweepSummary)
async def auto_cancel_force_check(
    sweeper: LocalSweeperController = Depends(get_sweeper_controller),
) -> SweepSummary:
    return await sweeper.force_check()


@router.put("/auto-cancel/config", response_model=AutoCancelStatusResponse)
async def auto_cancel_config(
    request: AutoCancelConfigRequest,
    sweeper: LocalSweeperController = Depends(get_sweeper_controller),
) -> AutoCancelStatusResponse:
    status = sweeper.update_config(
        request.check_interval_minutes, request.timeout_minutes
    )
    return AutoCancelStatusResponse(
        message="Auto-cancel configuration updated.", status=status
    )


@router.post("/reverify-presumptive", response_model=ReverifySummary)
async def reverify_presumptive(
    use_case: ReverifyPresumptiveUseCase = Depends(get_reverify_use_case),
) -> ReverifySummary:
    return await use_case.execute()
