from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Literal

from fieldsync.domain.contracts import Clock, KeyValueSession, KeyValueStorage
from fieldsync.domain.errors import DomainInvariantError, ItemNotFoundError, StorageError
from fieldsync.domain.models import OverallStatus, QueueItem, utc_now
from fieldsync.repositories.codecs import CorruptPartitionError, decode_partition, encode_partition
from fieldsync.repositories.storage_keys import StorageKeys

Partition = Literal["active", "completed"]
logger = logging.getLogger("queue")


@dataclass
class ItemStore:
    """Durable active/completed partitions of the submission queue.

    Every write rewrites a whole partition. Each operation runs inside one
    exclusive storage session, so overlapping writers (foreground action,
    scheduler pass, another process on the same backend) never interleave a
    read-modify-write of the same partition.
    """

    storage: KeyValueStorage
    keys: StorageKeys
    clock: Clock = utc_now

    async def load_active(self) -> list[QueueItem]:
        async with self.storage.exclusive() as session:
            return await self._read(session, "active")

    async def load_completed(self) -> list[QueueItem]:
        async with self.storage.exclusive() as session:
            items = await self._read(session, "completed")
        items.sort(key=lambda item: item.completed_at or item.created_at, reverse=True)
        return items

    async def get_active(self, local_id: str) -> QueueItem | None:
        async with self.storage.exclusive() as session:
            items = await self._read(session, "active")
        return _find(items, local_id)

    async def find(self, local_id: str) -> tuple[Partition, QueueItem] | None:
        async with self.storage.exclusive() as session:
            active = await self._read(session, "active")
            item = _find(active, local_id)
            if item is not None:
                return "active", item
            completed = await self._read(session, "completed")
        item = _find(completed, local_id)
        if item is not None:
            return "completed", item
        return None

    async def save_active(self, items: list[QueueItem]) -> None:
        async with self.storage.exclusive() as session:
            await self._write(session, "active", items)

    async def append_active(self, item: QueueItem) -> None:
        async with self.storage.exclusive() as session:
            items = await self._read(session, "active")
            if _find(items, item.local_id) is not None:
                raise DomainInvariantError(f"local id already queued: {item.local_id}")
            items.append(item)
            await self._write(session, "active", items)

    async def update_item(self, item: QueueItem) -> None:
        await self.update_items([item])

    async def update_items(self, updates: list[QueueItem]) -> None:
        if not updates:
            return
        async with self.storage.exclusive() as session:
            items = await self._read(session, "active")
            positions = {existing.local_id: index for index, existing in enumerate(items)}
            for update in updates:
                index = positions.get(update.local_id)
                if index is None:
                    raise ItemNotFoundError(f"item is not in the active queue: {update.local_id}")
                if items[index].overall_status == OverallStatus.COMPLETED:
                    raise DomainInvariantError(f"completed item is immutable: {update.local_id}")
                items[index] = update
            await self._write(session, "active", items)

    async def append_completed(self, item: QueueItem) -> None:
        async with self.storage.exclusive() as session:
            completed = await self._read(session, "completed")
            if _find(completed, item.local_id) is not None:
                return
            completed.append(self._stamp_completed(item))
            await self._write(session, "completed", completed)

    async def move_to_completed(self, local_id: str) -> QueueItem:
        """Move a finished item to the completed partition.

        Completed is written before active, so a failure in between leaves the
        item in both partitions; re-applying only drops the active copy.
        """
        async with self.storage.exclusive() as session:
            active = await self._read(session, "active")
            completed = await self._read(session, "completed")
            in_active = _find(active, local_id)
            in_completed = _find(completed, local_id)
            if in_active is None and in_completed is None:
                raise ItemNotFoundError(f"item is not queued: {local_id}")

            if in_completed is None and in_active is not None:
                if in_active.overall_status != OverallStatus.COMPLETED:
                    raise DomainInvariantError(f"item is not completed: {local_id}")
                in_completed = self._stamp_completed(in_active)
                completed.append(in_completed)
                await self._write(session, "completed", completed)

            if in_active is not None:
                await self._write(session, "active", [item for item in active if item.local_id != local_id])

        logger.info("item moved to completed", extra={"local_id": local_id})
        return in_completed

    async def purge_expired(self, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        async with self.storage.exclusive() as session:
            completed = await self._read(session, "completed")
            kept = [item for item in completed if (item.completed_at or item.created_at) >= cutoff]
            dropped = len(completed) - len(kept)
            if dropped:
                await self._write(session, "completed", kept)
        if dropped:
            logger.info("expired completed items purged", extra={"outcome": str(dropped)})
        return dropped

    async def remove_everywhere(self, local_id: str) -> bool:
        removed = False
        async with self.storage.exclusive() as session:
            for partition in ("active", "completed"):
                items = await self._read(session, partition)
                kept = [item for item in items if item.local_id != local_id]
                if len(kept) != len(items):
                    await self._write(session, partition, kept)
                    removed = True
        return removed

    def _stamp_completed(self, item: QueueItem) -> QueueItem:
        if item.completed_at is not None:
            return item
        return item.model_copy(update={"completed_at": self.clock()}, deep=True)

    def _key(self, partition: Partition) -> str:
        return self.keys.active if partition == "active" else self.keys.completed

    async def _read(self, session: KeyValueSession, partition: Partition) -> list[QueueItem]:
        key = self._key(partition)
        try:
            raw = await session.get(key)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"failed to read {partition} partition: {exc}") from exc
        if raw is None:
            return []

        try:
            items, dropped = decode_partition(raw)
        except CorruptPartitionError as exc:
            logger.warning(
                "corrupt partition reset to empty",
                extra={"reason": str(exc), "outcome": partition},
            )
            await self._set(session, key, "[]", partition=partition)
            return []

        if dropped:
            logger.warning(
                "malformed queue entries dropped",
                extra={"reason": f"{dropped} invalid", "outcome": partition},
            )
        return items

    async def _write(self, session: KeyValueSession, partition: Partition, items: list[QueueItem]) -> None:
        for item in items:
            item.assert_invariants()
        try:
            payload = encode_partition(items)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"failed to serialize {partition} partition: {exc}") from exc
        await self._set(session, self._key(partition), payload, partition=partition)

    async def _set(self, session: KeyValueSession, key: str, payload: str, *, partition: Partition) -> None:
        try:
            await session.set(key, payload)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"failed to write {partition} partition: {exc}") from exc


def _find(items: list[QueueItem], local_id: str) -> QueueItem | None:
    for item in items:
        if item.local_id == local_id:
            return item
    return None
