from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from fieldsync.domain.models import (
    EventPayload,
    LedgerRecord,
    NetworkCondition,
    PowerCondition,
    ProofReceipt,
)

Clock = Callable[[], datetime]
EventHandler = Callable[[], Awaitable[None] | None]

QUEUE_UPDATED = "queue_updated"


@runtime_checkable
class KeyValueSession(Protocol):
    """Reads and writes made while holding a storage backend's exclusive lock."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


@runtime_checkable
class KeyValueStorage(Protocol):
    """Durable string storage keyed by partition name.

    ``exclusive()`` serializes sessions across every process sharing the
    backend, so a read-modify-write inside one session is never interleaved
    with another writer. Implementations must make ``set`` atomic per key: a
    reader sees either the previous value or the new one, never a torn write.
    """

    def exclusive(self) -> AbstractAsyncContextManager[KeyValueSession]: ...


@runtime_checkable
class LedgerClient(Protocol):
    async def create_record(self, payload: EventPayload) -> LedgerRecord: ...


@runtime_checkable
class ProofClient(Protocol):
    # schema_fields are derived from the payload and the ledger record id.
    async def attest(self, schema_fields: dict[str, object]) -> ProofReceipt: ...


@runtime_checkable
class LinkClient(Protocol):
    async def attach_proof(self, *, record_id: int, proof_id: str) -> None: ...


@runtime_checkable
class CredentialProvider(Protocol):
    async def current_token(self) -> str | None: ...

    # Silent reauthorization from securely stored long-lived credentials.
    async def reauthorize(self) -> str: ...


@runtime_checkable
class NetworkObserver(Protocol):
    async def snapshot(self) -> NetworkCondition: ...


@runtime_checkable
class PowerObserver(Protocol):
    async def snapshot(self) -> PowerCondition: ...


@runtime_checkable
class EventPublisher(Protocol):
    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]: ...

    async def emit(self, event: str) -> None: ...
