from __future__ import annotations

import asyncio

import pytest

from fieldsync.domain.contracts import QUEUE_UPDATED
from fieldsync.services.events import EventBus
from fieldsync.services.sync import QueueSnapshot, QueueSyncLayer
from tests.unit.queue_factories import build_harness, make_item, make_payload


@pytest.mark.unit
def test_event_bus_isolates_failing_handlers() -> None:
    calls: list[str] = []

    def _broken() -> None:
        raise RuntimeError("boom")

    async def _async_handler() -> None:
        calls.append("async")

    async def _run() -> None:
        bus = EventBus()
        bus.subscribe(QUEUE_UPDATED, _broken)
        bus.subscribe(QUEUE_UPDATED, _async_handler)
        unsubscribe = bus.subscribe(QUEUE_UPDATED, lambda: calls.append("sync"))

        await bus.emit(QUEUE_UPDATED)
        unsubscribe()
        await bus.emit(QUEUE_UPDATED)

    asyncio.run(_run())

    assert calls == ["async", "sync", "async"]


@pytest.mark.unit
def test_sync_layer_rebuilds_from_store_on_queue_updated() -> None:
    async def _run() -> None:
        harness = build_harness()
        sync = QueueSyncLayer(store=harness.store, events=harness.events)
        sync.start()
        snapshots: list[QueueSnapshot] = []
        sync.add_listener(snapshots.append)

        local_id = await harness.queue.enqueue(make_payload())

        assert [item.local_id for item in sync.items] == [local_id]
        assert sync.completed_count == 0
        assert snapshots[-1].version == sync.snapshot.version

        await harness.scheduler.run_once()

        assert sync.items == []
        assert sync.completed_count == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_items_property_returns_a_copy() -> None:
    async def _run() -> None:
        harness = build_harness()
        await harness.seed(make_item())
        sync = QueueSyncLayer(store=harness.store, events=harness.events)
        await sync.refresh()

        items = sync.items
        items.clear()

        assert len(sync.items) == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_overlapping_refresh_requests_are_coalesced() -> None:
    async def _run() -> None:
        harness = build_harness()
        await harness.seed(make_item())
        sync = QueueSyncLayer(store=harness.store, events=harness.events)
        gate = asyncio.Event()
        original = harness.store.load_active
        reads = 0

        async def _gated_load_active():
            nonlocal reads
            reads += 1
            await gate.wait()
            return await original()

        harness.store.load_active = _gated_load_active

        first = asyncio.create_task(sync.refresh())
        await asyncio.sleep(0)
        followers = [asyncio.create_task(sync.refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, *followers)

        assert reads == 2
        assert sync.refreshes_total == 2
        assert len(sync.items) == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_duplicate_local_ids_are_collapsed() -> None:
    async def _run() -> None:
        harness = build_harness()
        item = make_item()
        harness.storage.values[harness.store.keys.active] = (
            "[" + item.model_dump_json() + "," + item.model_dump_json() + "]"
        )
        sync = QueueSyncLayer(store=harness.store, events=harness.events)

        await sync.refresh()

        assert [entry.local_id for entry in sync.items] == [item.local_id]

    asyncio.run(_run())


@pytest.mark.unit
def test_stopped_sync_layer_ignores_updates() -> None:
    async def _run() -> None:
        harness = build_harness()
        sync = QueueSyncLayer(store=harness.store, events=harness.events)
        sync.start()
        sync.stop()

        await harness.queue.enqueue(make_payload())

        assert sync.items == []
        assert harness.events.subscriber_count(QUEUE_UPDATED) == 1

    asyncio.run(_run())
