from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import inspect
import logging

from fieldsync.domain.contracts import QUEUE_UPDATED, EventPublisher
from fieldsync.domain.models import QueueItem
from fieldsync.repositories.item_store import ItemStore

SnapshotListener = Callable[["QueueSnapshot"], Awaitable[None] | None]
logger = logging.getLogger("queue")


@dataclass(frozen=True)
class QueueSnapshot:
    items: tuple[QueueItem, ...] = ()
    completed_count: int = 0
    version: int = 0


@dataclass
class QueueSyncLayer:
    """Read-side mirror of the persisted queue for UI consumers.

    The list is rebuilt wholesale from the store on every refresh and never
    patched in place. Refresh requests that arrive while one is running
    collapse into a single rerun.
    """

    store: ItemStore
    events: EventPublisher
    _snapshot: QueueSnapshot = field(default_factory=QueueSnapshot, init=False, repr=False)
    _listeners: list[SnapshotListener] = field(default_factory=list, init=False, repr=False)
    _running: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _rerun: bool = field(default=False, init=False, repr=False)
    _unsubscribe: Callable[[], None] | None = field(default=None, init=False, repr=False)
    refreshes_total: int = 0

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.events.subscribe(QUEUE_UPDATED, self.refresh)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def items(self) -> list[QueueItem]:
        return list(self._snapshot.items)

    @property
    def completed_count(self) -> int:
        return self._snapshot.completed_count

    @property
    def snapshot(self) -> QueueSnapshot:
        return self._snapshot

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def refresh(self) -> None:
        if self._running is not None and not self._running.done():
            self._rerun = True
            await asyncio.shield(self._running)
            return

        self._running = asyncio.create_task(self._refresh_loop())
        await asyncio.shield(self._running)

    async def _refresh_loop(self) -> None:
        while True:
            self._rerun = False
            await self._rebuild()
            if not self._rerun:
                return

    async def _rebuild(self) -> None:
        active = await self.store.load_active()
        completed = await self.store.load_completed()

        seen: set[str] = set()
        items: list[QueueItem] = []
        for item in active:
            if item.local_id in seen:
                continue
            seen.add(item.local_id)
            items.append(item)

        self._snapshot = QueueSnapshot(
            items=tuple(items),
            completed_count=len(completed),
            version=self._snapshot.version + 1,
        )
        self.refreshes_total += 1

        for listener in list(self._listeners):
            try:
                result = listener(self._snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("queue listener failed", extra={"outcome": "refresh"})
