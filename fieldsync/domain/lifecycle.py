from __future__ import annotations

from dataclasses import dataclass

from fieldsync.domain.error_taxonomy import ErrorCode
from fieldsync.domain.errors import DomainInvariantError
from fieldsync.domain.models import ServiceState, ServiceStatus, StepName


@dataclass(frozen=True)
class StepLifecycle:
    step: StepName
    requires: tuple[StepName, ...]
    result_field: str


STEP_LIFECYCLES: dict[StepName, StepLifecycle] = {
    "ledger": StepLifecycle(step="ledger", requires=(), result_field="record_id"),
    "proof": StepLifecycle(step="proof", requires=("ledger",), result_field="proof_id"),
    "linking": StepLifecycle(step="linking", requires=("ledger", "proof"), result_field="linked_at"),
}


ALLOWED_TRANSITIONS: dict[ServiceStatus, set[ServiceStatus]] = {
    ServiceStatus.INCOMPLETE: {ServiceStatus.PENDING, ServiceStatus.PROCESSING, ServiceStatus.OFFLINE},
    ServiceStatus.PENDING: {ServiceStatus.PENDING, ServiceStatus.PROCESSING, ServiceStatus.OFFLINE},
    ServiceStatus.PROCESSING: {
        ServiceStatus.PROCESSING,
        ServiceStatus.COMPLETED,
        ServiceStatus.FAILED,
        ServiceStatus.OFFLINE,
        ServiceStatus.PENDING,
    },
    ServiceStatus.FAILED: {ServiceStatus.PENDING, ServiceStatus.PROCESSING, ServiceStatus.OFFLINE},
    ServiceStatus.OFFLINE: {ServiceStatus.PENDING, ServiceStatus.PROCESSING, ServiceStatus.OFFLINE},
    ServiceStatus.COMPLETED: set(),
}


def transition(state: ServiceState, to_status: ServiceStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[state.status]:
        raise DomainInvariantError(f"invalid step transition {state.status} -> {to_status}")
    state.status = to_status


def mark_processing(state: ServiceState) -> None:
    transition(state, ServiceStatus.PROCESSING)


def mark_completed(state: ServiceState, *, result_field: str, value: object) -> None:
    current = getattr(state, result_field)
    if current is not None and current != value:
        # Result fields are write-once.
        raise DomainInvariantError(f"{result_field} already set to {current!r}")
    transition(state, ServiceStatus.COMPLETED)
    setattr(state, result_field, value)
    state.error = None
    state.error_code = None


def mark_failed(state: ServiceState, *, error: str, error_code: ErrorCode) -> None:
    transition(state, ServiceStatus.FAILED)
    state.error = error
    state.error_code = error_code


def mark_offline(state: ServiceState, *, error: str) -> None:
    transition(state, ServiceStatus.OFFLINE)
    state.error = error
    state.error_code = "network_unavailable"


def reset_to_pending(state: ServiceState, *, error: str | None = None) -> None:
    transition(state, ServiceStatus.PENDING)
    state.error = error
    state.error_code = None


def unmet_requirements(step: StepName, completed: set[StepName]) -> tuple[StepName, ...]:
    return tuple(name for name in STEP_LIFECYCLES[step].requires if name not in completed)
