"""Two-phase retry policy for queue delivery steps.

Every decision here is a pure function of persisted item state and the
current time, so it can run anywhere (foreground pass, background task,
diagnostics) without touching storage or the network.

Fast phase: a step may be attempted immediately after a failure, up to
``max_fast_retries`` attempts. Reaching the bound stamps
``entered_slow_mode_at`` instead of failing permanently.

Slow phase: a step may be attempted once ``retry_cooldown`` has elapsed
since the item's last attempt. Attempts continue until the item is older
than ``max_retry_age``; after that the step is *exhausted* and only a
human can move it. A step that failed with a terminal error code is never
attempted automatically.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from fieldsync.domain.error_taxonomy import classify_error
from fieldsync.domain.models import (
    STEP_ORDER,
    OverallStatus,
    QueueItem,
    ServiceState,
    ServiceStatus,
    StepName,
)

RetryPhase = Literal["fast", "slow"]
DecisionReason = Literal[
    "completed",
    "queued",
    "exhausted",
    "terminal",
    "in_flight",
    "stuck",
    "fast_phase",
    "slow_phase",
    "cooldown",
    "finalize",
]


@dataclass(frozen=True)
class RetryPolicySettings:
    max_fast_retries: int = 3
    retry_cooldown: timedelta = timedelta(minutes=15)
    max_retry_age: timedelta = timedelta(days=7)
    processing_timeout: timedelta = timedelta(minutes=2)
    debounce: timedelta = timedelta(seconds=30)
    completed_retention: timedelta = timedelta(days=30)


@dataclass(frozen=True)
class RetryDecision:
    eligible: bool
    phase: RetryPhase
    reason: DecisionReason
    step: StepName | None = None


def retry_policy_settings_from_env() -> RetryPolicySettings:
    defaults = RetryPolicySettings()
    return RetryPolicySettings(
        max_fast_retries=_env_int("FIELDSYNC_MAX_FAST_RETRIES", defaults.max_fast_retries),
        retry_cooldown=_env_seconds("FIELDSYNC_RETRY_COOLDOWN_SECONDS", defaults.retry_cooldown),
        max_retry_age=_env_seconds("FIELDSYNC_MAX_RETRY_AGE_SECONDS", defaults.max_retry_age),
        processing_timeout=_env_seconds("FIELDSYNC_PROCESSING_TIMEOUT_SECONDS", defaults.processing_timeout),
        debounce=_env_seconds("FIELDSYNC_DEBOUNCE_SECONDS", defaults.debounce),
        completed_retention=_env_seconds("FIELDSYNC_COMPLETED_RETENTION_SECONDS", defaults.completed_retention),
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


def _env_seconds(name: str, default: timedelta) -> timedelta:
    return timedelta(seconds=_env_int(name, int(default.total_seconds())))


def phase_of(state: ServiceState) -> RetryPhase:
    return "slow" if state.in_slow_phase else "fast"


def is_exhausted(*, created_at: datetime, now: datetime, settings: RetryPolicySettings) -> bool:
    return now - created_at > settings.max_retry_age


def is_stuck(
    state: ServiceState,
    *,
    last_attempt_at: datetime | None,
    now: datetime,
    settings: RetryPolicySettings,
) -> bool:
    if state.status != ServiceStatus.PROCESSING:
        return False
    if last_attempt_at is None:
        return True
    return now - last_attempt_at > settings.processing_timeout


def evaluate_service(
    state: ServiceState,
    *,
    created_at: datetime,
    last_attempt_at: datetime | None,
    now: datetime,
    settings: RetryPolicySettings,
    step: StepName | None = None,
    ignore_cooldown: bool = False,
) -> RetryDecision:
    phase = phase_of(state)
    if state.is_completed:
        return RetryDecision(eligible=False, phase=phase, reason="completed", step=step)

    if is_exhausted(created_at=created_at, now=now, settings=settings):
        return RetryDecision(eligible=False, phase=phase, reason="exhausted", step=step)

    if (
        state.status == ServiceStatus.FAILED
        and state.error_code is not None
        and classify_error(state.error_code) == "terminal"
    ):
        # Automatic attempts cannot fix it; a manual retry clears the code first.
        return RetryDecision(eligible=False, phase=phase, reason="terminal", step=step)

    if state.status == ServiceStatus.PROCESSING:
        if is_stuck(state, last_attempt_at=last_attempt_at, now=now, settings=settings):
            # The previous attempt is presumed lost (process killed mid-call).
            return RetryDecision(eligible=True, phase=phase, reason="stuck", step=step)
        return RetryDecision(eligible=False, phase=phase, reason="in_flight", step=step)

    if not state.in_slow_phase and state.initial_retry_count < settings.max_fast_retries:
        return RetryDecision(eligible=True, phase="fast", reason="fast_phase", step=step)

    if ignore_cooldown or last_attempt_at is None or now - last_attempt_at >= settings.retry_cooldown:
        return RetryDecision(eligible=True, phase="slow", reason="slow_phase", step=step)
    return RetryDecision(eligible=False, phase="slow", reason="cooldown", step=step)


def next_step(item: QueueItem) -> StepName | None:
    for name in STEP_ORDER:
        if not item.step(name).is_completed:
            return name
    return None


def is_claimed(item: QueueItem, *, now: datetime, settings: RetryPolicySettings) -> bool:
    if item.overall_status != OverallStatus.QUEUED:
        return False
    if item.queued_at is None:
        return False
    # A claim older than the processing timeout belongs to a pass that died.
    return now - item.queued_at <= settings.processing_timeout


def evaluate_item(
    item: QueueItem,
    *,
    now: datetime,
    settings: RetryPolicySettings,
    ignore_cooldown: bool = False,
) -> RetryDecision:
    if item.overall_status == OverallStatus.COMPLETED:
        return RetryDecision(eligible=False, phase="fast", reason="completed")

    step = next_step(item)
    if step is None:
        # Every step succeeded but the item was not moved yet.
        return RetryDecision(eligible=True, phase="fast", reason="finalize")

    state = item.step(step)
    if is_claimed(item, now=now, settings=settings):
        return RetryDecision(eligible=False, phase=phase_of(state), reason="queued", step=step)

    return evaluate_service(
        state,
        created_at=item.created_at,
        last_attempt_at=item.last_attempt_at,
        now=now,
        settings=settings,
        step=step,
        ignore_cooldown=ignore_cooldown,
    )


def evaluate_services(
    item: QueueItem,
    *,
    now: datetime,
    settings: RetryPolicySettings,
) -> dict[StepName, RetryDecision]:
    return {
        name: evaluate_service(
            state,
            created_at=item.created_at,
            last_attempt_at=item.last_attempt_at,
            now=now,
            settings=settings,
            step=name,
        )
        for name, state in item.steps()
    }


def is_completely_failed(item: QueueItem, *, now: datetime, settings: RetryPolicySettings) -> bool:
    if item.overall_status == OverallStatus.COMPLETED:
        return False
    return any(
        not state.is_completed and is_exhausted(created_at=item.created_at, now=now, settings=settings)
        for _, state in item.steps()
    )


def record_failure(state: ServiceState, *, now: datetime, settings: RetryPolicySettings) -> None:
    """Advance the step's retry counters after a failed attempt."""
    if state.in_slow_phase:
        state.slow_retry_count += 1
        return

    state.initial_retry_count = min(state.initial_retry_count + 1, settings.max_fast_retries)
    if state.initial_retry_count >= settings.max_fast_retries:
        state.entered_slow_mode_at = now
