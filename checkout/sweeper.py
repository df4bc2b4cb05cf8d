"""
In-process controller for the auto-cancel sweep.

Runs AutoCancelUseCase on an asyncio task inside the API process and lets
admins start, stop, force a run and change interval or timeout without a
restart. Deployments that run the sweep as a Temporal schedule use
``checkout.cli.sweeper`` instead; both share the same use case.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .domain import SweepSummary
from .errors import ValidationError
from .usecase import AutoCancelUseCase

logger = logging.getLogger(__name__)

MIN_INTERVAL_MINUTES, MAX_INTERVAL_MINUTES = 1, 60
MIN_TIMEOUT_MINUTES, MAX_TIMEOUT_MINUTES = 5, 120


def validate_sweep_config(
    interval_minutes: Optional[int], timeout_minutes: Optional[int]
) -> None:
    if interval_minutes is not None and not (
        MIN_INTERVAL_MINUTES <= interval_minutes <= MAX_INTERVAL_MINUTES
    ):
        raise ValidationError(
            "Check interval must be between 1 and 60 minutes.",
            {"checkIntervalMinutes": interval_minutes},
        )
    if timeout_minutes is not None and not (
        MIN_TIMEOUT_MINUTES <= timeout_minutes <= MAX_TIMEOUT_MINUTES
    ):
        raise ValidationError(
            "Timeout must be between 5 and 120 minutes.",
            {"timeoutMinutes": timeout_minutes},
        )


class LocalSweeperController:
    def __init__(
        self,
        use_case: AutoCancelUseCase,
        interval_minutes: int = 5,
        timeout_minutes: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        validate_sweep_config(interval_minutes, timeout_minutes)
        self.use_case = use_case
        self.interval_minutes = interval_minutes
        self.timeout_minutes = timeout_minutes
        self.last_summary: Optional[SweepSummary] = None
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._next_run_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the periodic loop. Returns False if already running."""
        if self.is_running:
            return False
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Auto-cancel sweeper started",
            extra={
                "interval_minutes": self.interval_minutes,
                "timeout_minutes": self.timeout_minutes,
            },
        )
        return True

    async def stop(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._next_run_at = None
        logger.info("Auto-cancel sweeper stopped")
        return True

    async def force_check(self) -> SweepSummary:
        """Run one sweep now, independent of the schedule."""
        return await self._sweep_once()

    def update_config(
        self,
        interval_minutes: Optional[int] = None,
        timeout_minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        validate_sweep_config(interval_minutes, timeout_minutes)
        if interval_minutes is not None:
            self.interval_minutes = interval_minutes
        if timeout_minutes is not None:
            self.timeout_minutes = timeout_minutes
        # Re-arm the wait so a new interval applies right away
        self._wakeup.set()
        logger.info(
            "Auto-cancel configuration updated",
            extra={
                "interval_minutes": self.interval_minutes,
                "timeout_minutes": self.timeout_minutes,
            },
        )
        return self.status()

    def status(self) -> Dict[str, Any]:
        next_check_in = None
        if self.is_running and self._next_run_at is not None:
            next_check_in = max(0, int(self._next_run_at - self._clock()))
        return {
            "isRunning": self.is_running,
            "checkIntervalMinutes": self.interval_minutes,
            "timeoutMinutes": self.timeout_minutes,
            "nextCheckInSeconds": next_check_in,
            "lastSummary": (
                self.last_summary.model_dump(mode="json")
                if self.last_summary
                else None
            ),
        }

    async def _sweep_once(self) -> SweepSummary:
        summary = await self.use_case.sweep(self.timeout_minutes)
        self.last_summary = summary
        return summary

    async def _run(self) -> None:
        while True:
            try:
                await self._sweep_once()
            except Exception as e:
                logger.error(
                    "Auto-cancel sweep failed",
                    extra={
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    },
                    exc_info=True,
                )
            await self._wait_for_next_run()

    async def _wait_for_next_run(self) -> None:
        while True:
            interval = self.interval_minutes * 60
            self._next_run_at = self._clock() + interval
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                return
