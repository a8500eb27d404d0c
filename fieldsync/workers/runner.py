from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field

from fieldsync.workers.scheduler import Scheduler


@dataclass(frozen=True)
class SchedulerRuntimeSettings:
    interval_ms: int = 60000
    error_backoff_ms: int = 5000


@dataclass
class SchedulerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    new_data_total: int = 0
    idle_ticks_total: int = 0
    skipped_total: int = 0
    errors_total: int = 0
    wakeups_total: int = 0
    wake_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def wake(self) -> None:
        self.wakeups_total += 1
        self.wake_event.set()


def scheduler_runtime_settings_from_env() -> SchedulerRuntimeSettings:
    return SchedulerRuntimeSettings(
        interval_ms=_env_int("FIELDSYNC_SCHEDULER_INTERVAL_MS", 60000),
        error_backoff_ms=_env_int("FIELDSYNC_SCHEDULER_ERROR_BACKOFF_MS", 5000),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


async def run_scheduler_until_stopped(
    *,
    scheduler: Scheduler,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: SchedulerRuntimeSettings,
    logger: logging.Logger,
    state: SchedulerRuntimeState | None = None,
) -> None:
    if state is None:
        state = SchedulerRuntimeState()
    state.started = True

    logger.info(
        "scheduler loop started",
        extra={"role": role, "service": role, "run_id": run_id, "outcome": "started"},
    )

    while not stop_event.is_set():
        delay_ms = settings.interval_ms
        state.wake_event.clear()
        try:
            result = await scheduler.run_once("foreground")
            state.ticks_total += 1
            if result.outcome == "new_data":
                state.new_data_total += 1
            elif result.outcome == "skipped":
                state.skipped_total += 1
            elif result.outcome == "failed":
                state.errors_total += 1
                delay_ms = settings.error_backoff_ms
            else:
                state.idle_ticks_total += 1
            logger.info(
                "scheduler tick",
                extra={
                    "role": role,
                    "service": role,
                    "run_id": run_id,
                    "outcome": result.outcome,
                    "reason": result.reason,
                },
            )
        except Exception:
            state.ticks_total += 1
            state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "scheduler tick error",
                extra={"role": role, "service": role, "run_id": run_id},
            )

        await _sleep_until_woken(stop_event=stop_event, wake_event=state.wake_event, delay_ms=delay_ms)

    logger.info(
        "scheduler loop stopped",
        extra={"role": role, "service": role, "run_id": run_id, "outcome": "stopped"},
    )
    state.stopped = True


async def _sleep_until_woken(*, stop_event: asyncio.Event, wake_event: asyncio.Event, delay_ms: int) -> None:
    stop_wait = asyncio.ensure_future(stop_event.wait())
    wake_wait = asyncio.ensure_future(wake_event.wait())
    try:
        await asyncio.wait({stop_wait, wake_wait}, timeout=delay_ms / 1000, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in (stop_wait, wake_wait):
            if not waiter.done():
                waiter.cancel()
