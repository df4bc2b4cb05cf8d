#!/usr/bin/env python3
"""
CLI for managing the auto-cancel sweep via Temporal.

The sweep runs as a Temporal schedule (``checkout-auto-cancel``) that
starts AutoCancelWorkflow every interval. These commands create, remove,
reconfigure and inspect that schedule, or run a single sweep right away.
"""

import asyncio
import logging
import sys
import time
from datetime import timedelta
from typing import Optional, Tuple

import click
from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleIntervalSpec,
    ScheduleSpec,
    ScheduleState,
    ScheduleUpdate,
    ScheduleUpdateInput,
)
from temporalio.contrib.pydantic import pydantic_data_converter

from checkout.config import Settings, setup_logging
from checkout.errors import ValidationError
from checkout.sweeper import validate_sweep_config
from checkout.workflows import AutoCancelWorkflow

logger = logging.getLogger(__name__)

SCHEDULE_ID = "checkout-auto-cancel"
NOTE_PREFIX = "timeout_minutes="


async def _connect(temporal_address: str) -> Client:
    return await Client.connect(
        temporal_address, data_converter=pydantic_data_converter
    )


def build_schedule(
    interval_minutes: int, timeout_minutes: int, task_queue: str
) -> Schedule:
    return Schedule(
        action=ScheduleActionStartWorkflow(
            AutoCancelWorkflow.run,
            timeout_minutes,
            id="checkout-auto-cancel-sweep",
            task_queue=task_queue,
        ),
        spec=ScheduleSpec(
            intervals=[
                ScheduleIntervalSpec(every=timedelta(minutes=interval_minutes))
            ]
        ),
        state=ScheduleState(note=f"{NOTE_PREFIX}{timeout_minutes}"),
    )


def _fail(action: str, e: Exception) -> None:
    logger.error(f"{action} failed: {str(e)}", exc_info=True)
    click.echo(f"{action} failed: {str(e)}", err=True)
    sys.exit(1)


async def _create_schedule(
    settings: Settings, interval_minutes: int, timeout_minutes: int
) -> None:
    try:
        click.echo(f"Connecting to Temporal at {settings.temporal_endpoint}")
        client = await _connect(settings.temporal_endpoint)
        await client.create_schedule(
            SCHEDULE_ID,
            build_schedule(
                interval_minutes, timeout_minutes, settings.task_queue
            ),
        )
    except Exception as e:
        _fail("Schedule creation", e)
        return
    click.echo(f"Schedule {SCHEDULE_ID} created")
    click.echo(
        f"Sweeping every {interval_minutes} minutes, canceling orders "
        f"pending longer than {timeout_minutes} minutes"
    )


async def _delete_schedule(settings: Settings) -> None:
    try:
        client = await _connect(settings.temporal_endpoint)
        await client.get_schedule_handle(SCHEDULE_ID).delete()
    except Exception as e:
        _fail("Schedule deletion", e)
        return
    click.echo(f"Schedule {SCHEDULE_ID} deleted")


async def _update_schedule(
    settings: Settings,
    interval_minutes: Optional[int],
    timeout_minutes: Optional[int],
) -> None:
    try:
        client = await _connect(settings.temporal_endpoint)
        handle = client.get_schedule_handle(SCHEDULE_ID)
        description = await handle.describe()
        current_interval, current_timeout = _read_config(description.schedule)
        interval = interval_minutes or current_interval
        timeout = timeout_minutes or current_timeout

        def updater(_: ScheduleUpdateInput) -> ScheduleUpdate:
            return ScheduleUpdate(
                schedule=build_schedule(interval, timeout, settings.task_queue)
            )

        await handle.update(updater)
    except Exception as e:
        _fail("Schedule update", e)
        return
    click.echo(
        f"Schedule {SCHEDULE_ID} updated: interval {interval} minutes, "
        f"timeout {timeout} minutes"
    )


def _read_config(schedule: Schedule) -> Tuple[int, int]:
    interval, timeout = 5, 30
    if schedule.spec.intervals:
        interval = int(schedule.spec.intervals[0].every.total_seconds() // 60)
    note = schedule.state.note or ""
    if note.startswith(NOTE_PREFIX):
        timeout = int(note[len(NOTE_PREFIX) :])
    return interval, timeout


async def _show_status(settings: Settings) -> None:
    try:
        client = await _connect(settings.temporal_endpoint)
        description = await client.get_schedule_handle(SCHEDULE_ID).describe()
    except Exception as e:
        _fail("Schedule lookup", e)
        return

    interval, timeout = _read_config(description.schedule)
    paused = description.schedule.state.paused
    click.echo(f"Schedule: {SCHEDULE_ID}")
    click.echo(f"Running: {'no' if paused else 'yes'}")
    click.echo(f"Check interval: {interval} minutes")
    click.echo(f"Timeout: {timeout} minutes")
    next_times = description.info.next_action_times
    if next_times:
        click.echo(f"Next check: {next_times[0].isoformat()}")
    recent = description.info.recent_actions
    if recent:
        click.echo(f"Last check: {recent[-1].started_at.isoformat()}")


async def _run_once(settings: Settings, timeout_minutes: int) -> None:
    try:
        client = await _connect(settings.temporal_endpoint)
        summary = await client.execute_workflow(
            AutoCancelWorkflow.run,
            timeout_minutes,
            id=f"auto-cancel-manual-{int(time.time())}",
            task_queue=settings.task_queue,
        )
    except Exception as e:
        _fail("Sweep", e)
        return
    click.echo(
        f"Checked {summary.checked}, canceled {summary.canceled}, "
        f"skipped {summary.skipped}, failed {summary.failed}"
    )
    for order_id in summary.canceled_order_ids:
        click.echo(f"  canceled {order_id}")


def _validated(
    interval_minutes: Optional[int], timeout_minutes: Optional[int]
) -> None:
    try:
        validate_sweep_config(interval_minutes, timeout_minutes)
    except ValidationError as e:
        raise click.BadParameter(e.message)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Manage the checkout auto-cancel sweep via Temporal."""
    setup_logging()
    ctx.obj = Settings.from_env()


@cli.command()
@click.option("--interval-minutes", default=5, type=int, show_default=True)
@click.option("--timeout-minutes", default=30, type=int, show_default=True)
@click.pass_obj
def start(
    settings: Settings, interval_minutes: int, timeout_minutes: int
) -> None:
    """Create the auto-cancel schedule."""
    _validated(interval_minutes, timeout_minutes)
    asyncio.run(_create_schedule(settings, interval_minutes, timeout_minutes))


@cli.command()
@click.pass_obj
def stop(settings: Settings) -> None:
    """Delete the auto-cancel schedule."""
    asyncio.run(_delete_schedule(settings))


@cli.command()
@click.option("--timeout-minutes", default=30, type=int, show_default=True)
@click.pass_obj
def trigger(settings: Settings, timeout_minutes: int) -> None:
    """Run one sweep now and print its summary."""
    _validated(None, timeout_minutes)
    asyncio.run(_run_once(settings, timeout_minutes))


@cli.command()
@click.option("--interval-minutes", default=None, type=int)
@click.option("--timeout-minutes", default=None, type=int)
@click.pass_obj
def configure(
    settings: Settings,
    interval_minutes: Optional[int],
    timeout_minutes: Optional[int],
) -> None:
    """Change the interval or timeout of the running schedule."""
    if interval_minutes is None and timeout_minutes is None:
        raise click.UsageError(
            "Pass --interval-minutes and/or --timeout-minutes"
        )
    _validated(interval_minutes, timeout_minutes)
    asyncio.run(_update_schedule(settings, interval_minutes, timeout_minutes))


@cli.command()
@click.pass_obj
def status(settings: Settings) -> None:
    """Show the auto-cancel schedule configuration."""
    asyncio.run(_show_status(settings))


if __name__ == "__main__":
    cli()
