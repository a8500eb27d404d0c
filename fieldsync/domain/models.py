from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import AwareDatetime, BaseModel, Field, model_validator

from fieldsync.domain.error_taxonomy import ErrorCode
from fieldsync.domain.errors import DomainInvariantError

StepName = Literal["ledger", "proof", "linking"]
STEP_ORDER: tuple[StepName, ...] = ("ledger", "proof", "linking")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# Per-dependency delivery status.
#
# IMPORTANT:
# - Keep this enum synchronized with fieldsync/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS).
# - Values are persisted in both queue partitions; renaming one is a
#   storage migration.
class ServiceStatus(StrEnum):
    INCOMPLETE = "INCOMPLETE"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    OFFLINE = "OFFLINE"


class OverallStatus(StrEnum):
    PENDING = "PENDING"
    # Claimed by a scheduling pass; other passes must not race it.
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    OFFLINE = "OFFLINE"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class MaterialLine(BaseModel):
    material_id: int
    code: str | None = None
    weight_kg: float | None = Field(default=None, ge=0)


class ManufacturingBlock(BaseModel):
    product_id: int
    quantity: int | None = Field(default=None, ge=0)
    weight_per_item_kg: float | None = Field(default=None, ge=0)


class GeoLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_m: float | None = None


class EventPayload(BaseModel):
    # Produced by the form collaborator; the queue only needs it to serialize.
    action_id: int
    action_name: str
    company_id: int | None = None
    event_date: AwareDatetime
    incoming_materials: list[MaterialLine] = Field(default_factory=list)
    outgoing_materials: list[MaterialLine] = Field(default_factory=list)
    manufacturing: ManufacturingBlock | None = None
    collector_id: str | None = None
    location: GeoLocation | None = None


class ServiceState(BaseModel):
    status: ServiceStatus = ServiceStatus.INCOMPLETE
    error: str | None = None
    error_code: ErrorCode | None = None
    initial_retry_count: int = Field(default=0, ge=0)
    slow_retry_count: int = Field(default=0, ge=0)
    # Presence of this timestamp is the fast/slow phase discriminant.
    entered_slow_mode_at: AwareDatetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == ServiceStatus.COMPLETED

    @property
    def in_slow_phase(self) -> bool:
        return self.entered_slow_mode_at is not None


class LedgerState(ServiceState):
    record_id: int | None = None


class ProofState(ServiceState):
    proof_id: str | None = None


class LinkState(ServiceState):
    linked_at: AwareDatetime | None = None


class QueueItem(BaseModel):
    local_id: str
    created_at: AwareDatetime
    last_attempt_at: AwareDatetime | None = None
    queued_at: AwareDatetime | None = None
    completed_at: AwareDatetime | None = None
    rescue_acknowledged_at: AwareDatetime | None = None
    payload: EventPayload
    overall_status: OverallStatus = OverallStatus.PENDING
    ledger: LedgerState = Field(default_factory=LedgerState)
    proof: ProofState = Field(default_factory=ProofState)
    linking: LinkState = Field(default_factory=LinkState)
    total_retry_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _completion_matches_steps(self) -> QueueItem:
        if not self.completion_consistent():
            raise ValueError("overall status COMPLETED must match three completed steps")
        return self

    def completion_consistent(self) -> bool:
        all_completed = all(state.is_completed for _, state in self.steps())
        return (self.overall_status == OverallStatus.COMPLETED) == all_completed

    def assert_invariants(self) -> None:
        if not self.completion_consistent():
            raise DomainInvariantError(
                f"item {self.local_id}: overall status {self.overall_status} "
                "does not match step states"
            )

    def step(self, name: StepName) -> ServiceState:
        if name == "ledger":
            return self.ledger
        if name == "proof":
            return self.proof
        if name == "linking":
            return self.linking
        raise DomainInvariantError(f"unknown step: {name}")

    def steps(self) -> Iterator[tuple[StepName, ServiceState]]:
        for name in STEP_ORDER:
            yield name, self.step(name)

    @property
    def group_key(self) -> tuple[int, str]:
        company = str(self.payload.company_id) if self.payload.company_id is not None else "no-company"
        return (self.payload.action_id, company)


def derive_overall_status(item: QueueItem) -> OverallStatus:
    statuses = [state.status for _, state in item.steps()]
    if all(status == ServiceStatus.COMPLETED for status in statuses):
        return OverallStatus.COMPLETED
    if ServiceStatus.PROCESSING in statuses:
        return OverallStatus.PROCESSING
    if ServiceStatus.OFFLINE in statuses:
        return OverallStatus.OFFLINE
    if ServiceStatus.FAILED in statuses:
        return OverallStatus.FAILED
    return OverallStatus.PENDING


def new_queue_item(*, local_id: str, payload: EventPayload, created_at: datetime) -> QueueItem:
    return QueueItem(
        local_id=local_id,
        created_at=created_at,
        payload=payload,
        overall_status=OverallStatus.PENDING,
    )


@dataclass(frozen=True)
class NetworkCondition:
    connected: bool
    metered: bool = False
    transport: str = "unknown"


@dataclass(frozen=True)
class PowerCondition:
    battery_level: float
    charging: bool = False
    power_save: bool = False


@dataclass(frozen=True)
class LedgerRecord:
    record_id: int


@dataclass(frozen=True)
class ProofReceipt:
    proof_id: str
