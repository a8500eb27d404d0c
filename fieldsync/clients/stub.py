from __future__ import annotations

from dataclasses import dataclass, field
import itertools

from fieldsync.domain.errors import AuthorizationError, DeliveryError
from fieldsync.domain.models import (
    EventPayload,
    LedgerRecord,
    NetworkCondition,
    PowerCondition,
    ProofReceipt,
)


@dataclass
class StubLedgerClient:
    """Deterministic ledger service: fails the next ``fail_times`` calls, then succeeds."""

    fail_times: int = 0
    error_message: str = "ledger service unavailable"
    calls: list[EventPayload] = field(default_factory=list)
    records: dict[int, EventPayload] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1001), repr=False)

    async def create_record(self, payload: EventPayload) -> LedgerRecord:
        self.calls.append(payload)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError(self.error_message)
        record_id = next(self._ids)
        self.records[record_id] = payload
        return LedgerRecord(record_id=record_id)


@dataclass
class StubProofClient:
    fail_times: int = 0
    error_message: str = "attestation rejected"
    calls: list[dict[str, object]] = field(default_factory=list)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1), repr=False)

    async def attest(self, schema_fields: dict[str, object]) -> ProofReceipt:
        self.calls.append(dict(schema_fields))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError(self.error_message)
        return ProofReceipt(proof_id=f"0x{next(self._ids):064x}")


@dataclass
class StubLinkClient:
    fail_times: int = 0
    calls: list[tuple[int, str]] = field(default_factory=list)
    links: dict[int, str] = field(default_factory=dict)

    async def attach_proof(self, *, record_id: int, proof_id: str) -> None:
        self.calls.append((record_id, proof_id))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError("failed to link proof to ledger record")
        # Idempotent by record id in stub mode.
        self.links[record_id] = proof_id


@dataclass
class StubCredentialProvider:
    token: str | None = "stub-session-token"
    reauthorize_token: str | None = "stub-reauthorized-token"
    reauthorize_calls: int = 0

    async def current_token(self) -> str | None:
        return self.token

    async def reauthorize(self) -> str:
        self.reauthorize_calls += 1
        if self.reauthorize_token is None:
            raise AuthorizationError("stored credentials were rejected")
        self.token = self.reauthorize_token
        return self.token


@dataclass
class StaticNetworkObserver:
    condition: NetworkCondition = field(
        default_factory=lambda: NetworkCondition(connected=True, metered=False, transport="wifi")
    )

    async def snapshot(self) -> NetworkCondition:
        return self.condition


@dataclass
class StaticPowerObserver:
    condition: PowerCondition = field(
        default_factory=lambda: PowerCondition(battery_level=1.0, charging=True, power_save=False)
    )

    async def snapshot(self) -> PowerCondition:
        return self.condition
