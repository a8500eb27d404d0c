from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from fieldsync.domain.contracts import QUEUE_UPDATED, Clock, EventPublisher
from fieldsync.domain.errors import (
    ClearNotPermittedError,
    DomainValidationError,
    ItemNotFoundError,
    RetryLockedError,
)
from fieldsync.domain.ids import new_local_id
from fieldsync.domain.lifecycle import reset_to_pending
from fieldsync.domain.models import (
    STEP_ORDER,
    EventPayload,
    OverallStatus,
    QueueItem,
    ServiceStatus,
    StepName,
    derive_overall_status,
    new_queue_item,
    utc_now,
)
from fieldsync.domain.retry_policy import (
    RetryDecision,
    RetryPolicySettings,
    evaluate_services,
    is_claimed,
    is_completely_failed,
    is_stuck,
)
from fieldsync.repositories.item_store import ItemStore, Partition
from fieldsync.services.monitor import QueueMetrics, compute_queue_metrics
from fieldsync.workers.scheduler import PassResult, Scheduler

RESET_AT_LAUNCH = "reset at launch"
logger = logging.getLogger("queue")


@dataclass(frozen=True)
class ItemView:
    partition: Partition
    item: QueueItem
    decisions: dict[StepName, RetryDecision]
    contact_support: bool


@dataclass(frozen=True)
class RetryResult:
    local_id: str
    reset_steps: tuple[StepName, ...]
    dispatch: PassResult

    @property
    def dispatched(self) -> bool:
        return self.dispatch.outcome != "skipped"


@dataclass(frozen=True)
class RescuePayload:
    local_id: str
    created_at: datetime
    acknowledged_at: datetime
    total_retry_count: int
    errors: dict[str, str | None]
    payload: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "local_id": self.local_id,
            "created_at": self.created_at.isoformat(),
            "acknowledged_at": self.acknowledged_at.isoformat(),
            "total_retry_count": self.total_retry_count,
            "errors": dict(self.errors),
            "payload": self.payload,
        }


@dataclass(frozen=True)
class RecoveryReport:
    reset: tuple[str, ...] = ()
    released: tuple[str, ...] = ()
    moved: tuple[str, ...] = ()


@dataclass
class QueueService:
    """Operations exposed to the UI, the CLI and the HTTP surface."""

    store: ItemStore
    scheduler: Scheduler
    events: EventPublisher
    settings: RetryPolicySettings = field(default_factory=RetryPolicySettings)
    clock: Clock = utc_now
    wake: Callable[[], None] | None = None

    async def enqueue(self, payload: EventPayload) -> str:
        item = new_queue_item(local_id=new_local_id(), payload=payload, created_at=self.clock())
        await self.store.append_active(item)
        logger.info("item enqueued", extra={"local_id": item.local_id, "outcome": item.overall_status})
        await self.events.emit(QUEUE_UPDATED)
        self._wake()
        return item.local_id

    async def list_active(self) -> list[QueueItem]:
        return await self.store.load_active()

    async def list_completed(self) -> list[QueueItem]:
        return await self.store.load_completed()

    async def get_item(self, local_id: str) -> ItemView:
        found = await self.store.find(local_id)
        if found is None:
            raise ItemNotFoundError(f"item not found: {local_id}")

        partition, item = found
        now = self.clock()
        return ItemView(
            partition=partition,
            item=item,
            decisions=evaluate_services(item, now=now, settings=self.settings),
            contact_support=is_completely_failed(item, now=now, settings=self.settings),
        )

    async def retry_item(self, local_id: str, service: StepName | None = None) -> RetryResult:
        if service is not None and service not in STEP_ORDER:
            raise DomainValidationError(f"unknown service: {service}")

        item = await self.store.get_active(local_id)
        if item is None:
            raise ItemNotFoundError(f"item is not in the active queue: {local_id}")

        now = self.clock()
        if is_completely_failed(item, now=now, settings=self.settings):
            raise RetryLockedError(f"item exceeded the retry window, contact support: {local_id}")

        targets = (service,) if service is not None else STEP_ORDER
        reset: list[StepName] = []
        for name in targets:
            state = item.step(name)
            stale = is_stuck(state, last_attempt_at=item.last_attempt_at, now=now, settings=self.settings)
            if state.status in {ServiceStatus.FAILED, ServiceStatus.OFFLINE} or stale:
                reset_to_pending(state)
                reset.append(name)

        if reset:
            item.overall_status = derive_overall_status(item)
            item.queued_at = None
            await self.store.update_item(item)

        logger.info(
            "manual retry requested",
            extra={"local_id": local_id, "step": service or "all", "outcome": ",".join(reset) or "none"},
        )
        dispatch = await self.scheduler.run_item(local_id)
        if dispatch.outcome == "skipped":
            # The running pass, or the next one, picks the reset item up.
            await self.events.emit(QUEUE_UPDATED)
            self._wake()
        return RetryResult(local_id=local_id, reset_steps=tuple(reset), dispatch=dispatch)

    async def acknowledge_rescue(self, local_id: str) -> RescuePayload:
        item = await self.store.get_active(local_id)
        if item is None:
            raise ItemNotFoundError(f"item is not in the active queue: {local_id}")

        now = self.clock()
        if not is_completely_failed(item, now=now, settings=self.settings):
            raise ClearNotPermittedError(f"item is still being retried: {local_id}")

        if item.rescue_acknowledged_at is None:
            item.rescue_acknowledged_at = now
            await self.store.update_item(item)
        await self.events.emit(QUEUE_UPDATED)

        return RescuePayload(
            local_id=item.local_id,
            created_at=item.created_at,
            acknowledged_at=item.rescue_acknowledged_at,
            total_retry_count=item.total_retry_count,
            errors={name: state.error for name, state in item.steps()},
            payload=item.payload.model_dump(mode="json"),
        )

    async def clear_item(self, local_id: str) -> None:
        found = await self.store.find(local_id)
        if found is None:
            raise ItemNotFoundError(f"item not found: {local_id}")

        partition, item = found
        if partition == "active":
            if not is_completely_failed(item, now=self.clock(), settings=self.settings):
                raise ClearNotPermittedError(f"only completed or exhausted items can be cleared: {local_id}")
            if item.rescue_acknowledged_at is None:
                raise ClearNotPermittedError(f"rescue the item data before clearing it: {local_id}")

        await self.store.remove_everywhere(local_id)
        logger.info("item cleared", extra={"local_id": local_id, "outcome": partition})
        await self.events.emit(QUEUE_UPDATED)

    async def recover_at_launch(self) -> RecoveryReport:
        """Repair state left behind by a process that was killed mid-pass.

        Only steps past the processing timeout are reset and only stale claims
        released; a fresh PROCESSING step or claim may belong to a live
        scheduler process sharing the storage.
        """
        now = self.clock()
        reset: list[str] = []
        released: list[str] = []
        moved: list[str] = []
        updates: list[QueueItem] = []

        for item in await self.store.load_active():
            if item.overall_status == OverallStatus.COMPLETED:
                moved.append(item.local_id)
                continue

            changed = False
            for _, state in item.steps():
                if is_stuck(state, last_attempt_at=item.last_attempt_at, now=now, settings=self.settings):
                    reset_to_pending(state, error=RESET_AT_LAUNCH)
                    changed = True
            if changed:
                reset.append(item.local_id)
            elif item.overall_status == OverallStatus.QUEUED and not is_claimed(
                item, now=now, settings=self.settings
            ):
                released.append(item.local_id)
                changed = True

            if changed:
                item.overall_status = derive_overall_status(item)
                item.queued_at = None
                updates.append(item)

        await self.store.update_items(updates)
        for local_id in moved:
            await self.store.move_to_completed(local_id)

        report = RecoveryReport(reset=tuple(reset), released=tuple(released), moved=tuple(moved))
        if reset or released or moved:
            logger.info(
                "launch recovery applied",
                extra={"outcome": f"reset={len(reset)} released={len(released)} moved={len(moved)}"},
            )
            await self.events.emit(QUEUE_UPDATED)
        return report

    async def metrics(self) -> QueueMetrics:
        items = await self.store.load_active()
        return compute_queue_metrics(items, now=self.clock(), settings=self.settings)

    def _wake(self) -> None:
        if self.wake is not None:
            self.wake()
