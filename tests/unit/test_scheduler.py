from __future__ import annotations

import asyncio

import pytest

from fieldsync.domain.models import NetworkCondition, OverallStatus, PowerCondition, ServiceStatus
from fieldsync.workers.scheduler import (
    CONSERVATIVE_BATCH_SIZE,
    CRITICAL_BATCH_SIZE,
    NORMAL_BATCH_SIZE,
    OPTIMAL_BATCH_SIZE,
    SchedulerPhase,
    compute_batch_size,
    group_items,
)
from tests.unit.queue_factories import METERED, OFFLINE, build_harness, make_item, make_payload

WIFI = NetworkCondition(connected=True, metered=False, transport="wifi")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("power", "network", "expected"),
    [
        (PowerCondition(battery_level=0.9, charging=True), WIFI, OPTIMAL_BATCH_SIZE),
        (PowerCondition(battery_level=0.9, charging=False), WIFI, NORMAL_BATCH_SIZE),
        (PowerCondition(battery_level=0.9, charging=True), METERED, CONSERVATIVE_BATCH_SIZE),
        (PowerCondition(battery_level=0.6, power_save=True), WIFI, CONSERVATIVE_BATCH_SIZE),
        (PowerCondition(battery_level=0.1, charging=False), METERED, CRITICAL_BATCH_SIZE),
        (PowerCondition(battery_level=0.1, charging=True), WIFI, OPTIMAL_BATCH_SIZE),
    ],
)
def test_batch_size_shrinks_with_constraint_severity(
    power: PowerCondition, network: NetworkCondition, expected: int
) -> None:
    assert compute_batch_size(power, network) == expected


@pytest.mark.unit
def test_group_items_keeps_selection_order_within_a_group() -> None:
    first = make_item(action_id=1, company_id=5)
    second = make_item(action_id=2, company_id=None)
    third = make_item(action_id=1, company_id=5)

    groups = group_items([first, second, third])

    assert [[item.local_id for item in group] for group in groups] == [
        [first.local_id, third.local_id],
        [second.local_id],
    ]
    assert second.group_key == (2, "no-company")


@pytest.mark.unit
def test_single_pass_completes_item_and_emits_one_update() -> None:
    async def _run() -> None:
        harness = build_harness()
        local_id = await harness.queue.enqueue(make_payload())
        harness.updates.count = 0

        result = await harness.scheduler.run_once()

        assert result.outcome == "new_data"
        assert result.completed == (local_id,)
        assert result.batch_size == OPTIMAL_BATCH_SIZE
        assert harness.updates.count == 1
        assert harness.scheduler.phase == SchedulerPhase.IDLE
        assert await harness.store.load_active() == []
        assert [item.local_id for item in await harness.store.load_completed()] == [local_id]

    asyncio.run(_run())


@pytest.mark.unit
def test_ledger_failures_enter_slow_phase_and_wait_for_cooldown() -> None:
    async def _run() -> None:
        harness = build_harness()
        harness.ledger.fail_times = 10
        local_id = await harness.queue.enqueue(make_payload())

        for _ in range(3):
            await harness.scheduler.run_once()
            harness.clock.advance(seconds=31)

        item = await harness.item(local_id)
        assert item.ledger.status == ServiceStatus.FAILED
        assert item.ledger.initial_retry_count == 3
        assert item.ledger.entered_slow_mode_at is not None
        assert len(harness.ledger.calls) == 3

        await harness.scheduler.run_once()
        assert len(harness.ledger.calls) == 3

        harness.clock.advance(minutes=15)
        await harness.scheduler.run_once()
        assert len(harness.ledger.calls) == 4
        item = await harness.item(local_id)
        assert item.ledger.slow_retry_count == 1
        assert item.ledger.initial_retry_count == 3

    asyncio.run(_run())


@pytest.mark.unit
def test_metered_pass_dispatches_only_pending_items() -> None:
    async def _run() -> None:
        harness = build_harness()
        pending_id, failed_id = await asyncio.gather(
            harness.queue.enqueue(make_payload(action_id=1)),
            harness.queue.enqueue(make_payload(action_id=2)),
        )
        failed = await harness.item(failed_id)
        failed.ledger.status = ServiceStatus.FAILED
        failed.ledger.initial_retry_count = 1
        failed.overall_status = OverallStatus.FAILED
        await harness.store.update_item(failed)
        harness.network.condition = METERED

        result = await harness.scheduler.run_once()

        assert result.selected == (pending_id,)
        assert len(harness.ledger.calls) == 1
        assert (await harness.item(pending_id)).overall_status == OverallStatus.COMPLETED
        assert (await harness.item(failed_id)).overall_status == OverallStatus.FAILED

    asyncio.run(_run())


@pytest.mark.unit
def test_recently_attempted_items_are_debounced() -> None:
    async def _run() -> None:
        harness = build_harness()
        harness.ledger.fail_times = 1
        await harness.queue.enqueue(make_payload())

        await harness.scheduler.run_once()
        harness.clock.advance(seconds=10)
        result = await harness.scheduler.run_once()

        assert result.outcome == "no_data"
        assert result.reason == "no_candidates"
        assert len(harness.ledger.calls) == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_offline_pass_marks_candidates_offline_without_attempts() -> None:
    async def _run() -> None:
        harness = build_harness()
        local_id = await harness.queue.enqueue(make_payload())
        harness.network.condition = OFFLINE

        result = await harness.scheduler.run_once()

        item = await harness.item(local_id)
        assert result.outcome == "no_data"
        assert result.reason == "offline"
        assert item.overall_status == OverallStatus.OFFLINE
        assert item.total_retry_count == 0
        assert harness.ledger.calls == []

    asyncio.run(_run())


@pytest.mark.unit
def test_failed_reauthorization_aborts_pass_before_touching_items() -> None:
    async def _run() -> None:
        harness = build_harness()
        harness.credentials.token = None
        harness.credentials.reauthorize_token = None
        local_id = await harness.queue.enqueue(make_payload())
        harness.updates.count = 0

        result = await harness.scheduler.run_once()

        item = await harness.item(local_id)
        assert result.outcome == "no_data"
        assert result.reason == "unauthorized"
        assert harness.credentials.reauthorize_calls == 1
        assert item.overall_status == OverallStatus.PENDING
        assert item.ledger.status == ServiceStatus.INCOMPLETE
        assert harness.updates.count == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_missing_token_is_silently_reauthorized() -> None:
    async def _run() -> None:
        harness = build_harness()
        harness.credentials.token = None
        await harness.queue.enqueue(make_payload())

        result = await harness.scheduler.run_once()

        assert result.outcome == "new_data"
        assert harness.credentials.reauthorize_calls == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_pass_requested_while_one_runs_is_dropped() -> None:
    async def _run() -> None:
        harness = build_harness()
        gate = asyncio.Event()
        original = harness.ledger.create_record

        async def _slow_create(payload):
            await gate.wait()
            return await original(payload)

        harness.ledger.create_record = _slow_create
        await harness.queue.enqueue(make_payload())
        harness.updates.count = 0

        first = asyncio.create_task(harness.scheduler.run_once())
        while harness.scheduler.phase != SchedulerPhase.DISPATCHING:
            await asyncio.sleep(0)
        second = await harness.scheduler.run_once()
        gate.set()
        first_result = await first

        assert second.outcome == "skipped"
        assert first_result.outcome == "new_data"
        assert harness.updates.count == 1
        assert harness.scheduler.skipped_total == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_storage_failure_aborts_the_pass() -> None:
    async def _run() -> None:
        harness = build_harness()
        await harness.queue.enqueue(make_payload())
        harness.storage.fail_writes = True

        result = await harness.scheduler.run_once()

        assert result.outcome == "failed"
        assert result.reason == "StorageError"
        assert harness.scheduler.phase == SchedulerPhase.IDLE
        assert harness.scheduler.in_flight is False

    asyncio.run(_run())


@pytest.mark.unit
def test_item_failure_does_not_abort_the_rest_of_the_pass() -> None:
    async def _run() -> None:
        harness = build_harness()
        harness.ledger.fail_times = 1
        first = await harness.queue.enqueue(make_payload(action_id=1))
        second = await harness.queue.enqueue(make_payload(action_id=1))

        result = await harness.scheduler.run_once()

        assert result.failed == (first,)
        assert result.completed == (second,)
        assert (await harness.item(first)).overall_status == OverallStatus.FAILED

    asyncio.run(_run())
