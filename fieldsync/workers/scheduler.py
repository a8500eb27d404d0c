from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
import logging
from typing import Literal

from fieldsync.domain.contracts import (
    QUEUE_UPDATED,
    Clock,
    CredentialProvider,
    EventPublisher,
    NetworkObserver,
    PowerObserver,
)
from fieldsync.domain.errors import AuthorizationError
from fieldsync.domain.models import (
    NetworkCondition,
    OverallStatus,
    PowerCondition,
    QueueItem,
    derive_overall_status,
    utc_now,
)
from fieldsync.domain.retry_policy import RetryPolicySettings, evaluate_item, is_completely_failed
from fieldsync.repositories.item_store import ItemStore
from fieldsync.services.monitor import compute_queue_metrics
from fieldsync.workers.pipeline import PipelineOutcome, SubmissionPipeline

OPTIMAL_BATCH_SIZE = 20
NORMAL_BATCH_SIZE = 10
CONSERVATIVE_BATCH_SIZE = 5
CRITICAL_BATCH_SIZE = 1
LOW_BATTERY_THRESHOLD = 0.2

PassTrigger = Literal["foreground", "background", "manual", "startup"]
PassOutcomeName = Literal["new_data", "no_data", "failed", "skipped"]
logger = logging.getLogger("queue")


class SchedulerPhase(StrEnum):
    IDLE = "IDLE"
    SAMPLING = "SAMPLING"
    FILTERING = "FILTERING"
    REAUTHORIZING = "REAUTHORIZING"
    DISPATCHING = "DISPATCHING"


@dataclass(frozen=True)
class PassResult:
    trigger: PassTrigger
    outcome: PassOutcomeName
    reason: str = ""
    batch_size: int = 0
    selected: tuple[str, ...] = ()
    items: tuple[PipelineOutcome, ...] = ()

    @property
    def completed(self) -> tuple[str, ...]:
        return tuple(outcome.local_id for outcome in self.items if outcome.status == "completed")

    @property
    def failed(self) -> tuple[str, ...]:
        return tuple(outcome.local_id for outcome in self.items if outcome.status == "failed")


def compute_batch_size(power: PowerCondition, network: NetworkCondition) -> int:
    if power.battery_level < LOW_BATTERY_THRESHOLD and not power.charging:
        return CRITICAL_BATCH_SIZE
    if network.metered or power.power_save:
        return CONSERVATIVE_BATCH_SIZE
    if power.charging:
        return OPTIMAL_BATCH_SIZE
    return NORMAL_BATCH_SIZE


def select_candidates(
    items: list[QueueItem],
    *,
    now: datetime,
    settings: RetryPolicySettings,
    network: NetworkCondition,
) -> list[QueueItem]:
    """Items a scheduled pass may attempt, in store order."""
    selected: list[QueueItem] = []
    for item in items:
        if item.overall_status == OverallStatus.COMPLETED:
            continue
        if item.overall_status == OverallStatus.FAILED and is_completely_failed(
            item, now=now, settings=settings
        ):
            continue
        if not evaluate_item(item, now=now, settings=settings).eligible:
            continue
        if item.last_attempt_at is not None and now - item.last_attempt_at < settings.debounce:
            continue
        if network.metered and item.overall_status != OverallStatus.PENDING:
            # Metered links only carry first attempts.
            continue
        selected.append(item)
    return selected


def group_items(items: list[QueueItem]) -> list[list[QueueItem]]:
    groups: dict[tuple[int, str], list[QueueItem]] = {}
    for item in items:
        groups.setdefault(item.group_key, []).append(item)
    return list(groups.values())


def slices(items: list[QueueItem], size: int) -> Iterator[list[QueueItem]]:
    step = max(size, 1)
    for start in range(0, len(items), step):
        yield items[start : start + step]


@dataclass
class Scheduler:
    """Single entry point for delivery passes.

    Foreground timer, background task and manual triggers all go through
    ``run_once``; at most one pass runs at a time and a request that arrives
    while one is in flight is dropped.
    """

    store: ItemStore
    pipeline: SubmissionPipeline
    credentials: CredentialProvider
    network: NetworkObserver
    power: PowerObserver
    events: EventPublisher
    settings: RetryPolicySettings = field(default_factory=RetryPolicySettings)
    clock: Clock = utc_now
    phase: SchedulerPhase = SchedulerPhase.IDLE
    passes_total: int = 0
    skipped_total: int = 0
    last_result: PassResult | None = None
    _in_flight: bool = field(default=False, init=False, repr=False)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run_once(self, trigger: PassTrigger = "foreground") -> PassResult:
        if self._in_flight:
            return self._skip(trigger)

        self._in_flight = True
        try:
            try:
                result = await self._run_pass(trigger)
            except Exception as exc:
                logger.exception("scheduler pass failed", extra={"outcome": "failed", "reason": trigger})
                result = PassResult(trigger=trigger, outcome="failed", reason=type(exc).__name__)
            self.passes_total += 1
            self.last_result = result
            await self.events.emit(QUEUE_UPDATED)
        finally:
            self._in_flight = False
            self.phase = SchedulerPhase.IDLE

        logger.info(
            "scheduler pass finished",
            extra={"outcome": result.outcome, "reason": result.reason or trigger},
        )
        return result

    async def run_item(self, local_id: str, trigger: PassTrigger = "manual") -> PassResult:
        """Dispatch one item under the single-flight guard, bypassing selection."""
        if self._in_flight:
            return self._skip(trigger)

        self._in_flight = True
        try:
            try:
                result = await self._run_single(local_id, trigger)
            except Exception as exc:
                logger.exception(
                    "manual dispatch failed",
                    extra={"local_id": local_id, "outcome": "failed", "reason": trigger},
                )
                result = PassResult(trigger=trigger, outcome="failed", reason=type(exc).__name__)
            self.passes_total += 1
            self.last_result = result
            await self.events.emit(QUEUE_UPDATED)
        finally:
            self._in_flight = False
            self.phase = SchedulerPhase.IDLE
        return result

    def _skip(self, trigger: PassTrigger) -> PassResult:
        self.skipped_total += 1
        logger.info("scheduler pass skipped", extra={"outcome": "skipped", "reason": "pass_in_flight"})
        return PassResult(trigger=trigger, outcome="skipped", reason="pass_in_flight")

    async def _run_pass(self, trigger: PassTrigger) -> PassResult:
        self.phase = SchedulerPhase.SAMPLING
        power = await self.power.snapshot()
        network = await self.network.snapshot()
        batch_size = compute_batch_size(power, network)

        self.phase = SchedulerPhase.FILTERING
        now = self.clock()
        items = await self.store.load_active()
        candidates = select_candidates(items, now=now, settings=self.settings, network=network)
        selected = tuple(item.local_id for item in candidates)

        if not network.connected:
            for item in candidates:
                await self.pipeline.mark_offline(item.local_id)
            await self._finish(items=None)
            return PassResult(
                trigger=trigger,
                outcome="no_data",
                reason="offline",
                batch_size=batch_size,
                selected=selected,
            )

        if not candidates:
            await self._finish(items=items)
            return PassResult(trigger=trigger, outcome="no_data", reason="no_candidates", batch_size=batch_size)

        if not await self._ensure_credentials():
            return PassResult(
                trigger=trigger,
                outcome="no_data",
                reason="unauthorized",
                batch_size=batch_size,
                selected=selected,
            )

        self.phase = SchedulerPhase.DISPATCHING
        claimed = await self._claim(candidates, now=now)
        outcomes: list[PipelineOutcome] = []
        try:
            for group in group_items(claimed):
                for batch in slices(group, batch_size):
                    for item in batch:
                        outcomes.append(await self.pipeline.run(item.local_id))
                    await asyncio.sleep(0)
        finally:
            await self._release_claims(selected)

        await self._finish(items=None)
        progressed = any(outcome.status in {"completed", "progressed"} for outcome in outcomes)
        return PassResult(
            trigger=trigger,
            outcome="new_data" if progressed else "no_data",
            reason="dispatched",
            batch_size=batch_size,
            selected=selected,
            items=tuple(outcomes),
        )

    async def _run_single(self, local_id: str, trigger: PassTrigger) -> PassResult:
        if not await self._ensure_credentials():
            return PassResult(trigger=trigger, outcome="no_data", reason="unauthorized", selected=(local_id,))

        self.phase = SchedulerPhase.DISPATCHING
        outcome = await self.pipeline.run(local_id, manual=True)
        return PassResult(
            trigger=trigger,
            outcome="new_data" if outcome.status in {"completed", "progressed"} else "no_data",
            reason=outcome.status,
            batch_size=1,
            selected=(local_id,),
            items=(outcome,),
        )

    async def _ensure_credentials(self) -> bool:
        if await self.credentials.current_token():
            return True

        self.phase = SchedulerPhase.REAUTHORIZING
        try:
            await self.credentials.reauthorize()
        except AuthorizationError:
            logger.warning("reauthorization failed", extra={"outcome": "no_data", "reason": "unauthorized"})
            return False
        logger.info("session reauthorized", extra={"outcome": "reauthorized"})
        return True

    async def _claim(self, candidates: list[QueueItem], *, now: datetime) -> list[QueueItem]:
        claimed = [
            item.model_copy(update={"overall_status": OverallStatus.QUEUED, "queued_at": now}, deep=True)
            for item in candidates
        ]
        await self.store.update_items(claimed)
        return claimed

    async def _release_claims(self, local_ids: tuple[str, ...]) -> None:
        wanted = set(local_ids)
        leftovers: list[QueueItem] = []
        for item in await self.store.load_active():
            if item.local_id in wanted and item.overall_status == OverallStatus.QUEUED:
                item.overall_status = derive_overall_status(item)
                item.queued_at = None
                leftovers.append(item)
        await self.store.update_items(leftovers)

    async def _finish(self, *, items: list[QueueItem] | None) -> None:
        await self.store.purge_expired(self.settings.completed_retention)
        if items is None:
            items = await self.store.load_active()
        metrics = compute_queue_metrics(items, now=self.clock(), settings=self.settings)
        logger.info("queue metrics", extra={"outcome": "metrics", "reason": _format_metrics(metrics.as_log_fields())})


def _format_metrics(fields: dict[str, int]) -> str:
    return " ".join(f"{name}={value}" for name, value in fields.items())
