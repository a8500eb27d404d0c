from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Literal

from fieldsync.domain.attestation import build_attestation_fields
from fieldsync.domain.contracts import Clock, LedgerClient, LinkClient, NetworkObserver, ProofClient
from fieldsync.domain.error_taxonomy import (
    STEP_FAILURE_CODE,
    ErrorCode,
    classify_error,
    resolve_step_error,
)
from fieldsync.domain.errors import AuthorizationError, DeliveryError
from fieldsync.domain.lifecycle import (
    STEP_LIFECYCLES,
    mark_completed,
    mark_failed,
    mark_offline,
    mark_processing,
    unmet_requirements,
)
from fieldsync.domain.models import (
    STEP_ORDER,
    OverallStatus,
    QueueItem,
    StepName,
    derive_overall_status,
    utc_now,
)
from fieldsync.domain.retry_policy import RetryPolicySettings, evaluate_service, record_failure
from fieldsync.repositories.item_store import ItemStore

OFFLINE_MESSAGE = "No network connection - will retry when back online"

PipelineStatus = Literal["missing", "completed", "offline", "blocked", "failed", "progressed"]
logger = logging.getLogger("queue")


@dataclass(frozen=True)
class PipelineOutcome:
    local_id: str
    status: PipelineStatus
    attempted: tuple[StepName, ...] = ()
    failed_step: StepName | None = None
    reason: str = ""
    overall_status: OverallStatus | None = None


@dataclass
class SubmissionPipeline:
    """Drives one queue item through ledger write, proof attestation and linking.

    The item is persisted after every sub-state transition, so a process kill
    at any point leaves a well-defined state on disk.
    """

    store: ItemStore
    ledger: LedgerClient
    proof: ProofClient
    link: LinkClient
    network: NetworkObserver
    settings: RetryPolicySettings = field(default_factory=RetryPolicySettings)
    clock: Clock = utc_now

    async def run(self, local_id: str, *, manual: bool = False) -> PipelineOutcome:
        item = await self.store.get_active(local_id)
        if item is None:
            return PipelineOutcome(local_id=local_id, status="missing", reason="not in active queue")

        if item.overall_status == OverallStatus.COMPLETED:
            await self.store.move_to_completed(local_id)
            return PipelineOutcome(local_id=local_id, status="completed", overall_status=item.overall_status)

        condition = await self.network.snapshot()
        if not condition.connected:
            await self._mark_item_offline(item)
            return PipelineOutcome(
                local_id=local_id,
                status="offline",
                reason="network_unavailable",
                overall_status=item.overall_status,
            )

        attempted: list[StepName] = []
        failed_step: StepName | None = None
        reason = ""
        for step in STEP_ORDER:
            state = item.step(step)
            if state.is_completed:
                continue

            completed = {name for name, other in item.steps() if other.is_completed}
            missing = unmet_requirements(step, completed)
            if missing:
                reason = f"waiting_for_{missing[0]}"
                break

            decision = evaluate_service(
                state,
                created_at=item.created_at,
                last_attempt_at=item.last_attempt_at,
                now=self.clock(),
                settings=self.settings,
                step=step,
                ignore_cooldown=manual,
            )
            if not decision.eligible:
                reason = decision.reason
                break

            attempted.append(step)
            if not await self._attempt(item, step):
                failed_step = step
                reason = item.step(step).error_code or "internal_error"
                break

        if item.overall_status == OverallStatus.COMPLETED:
            await self.store.move_to_completed(local_id)
            status: PipelineStatus = "completed"
        else:
            await self._persist(item)
            if failed_step is not None:
                status = "failed"
            elif attempted:
                status = "progressed"
            else:
                status = "blocked"

        return PipelineOutcome(
            local_id=local_id,
            status=status,
            attempted=tuple(attempted),
            failed_step=failed_step,
            reason=reason,
            overall_status=item.overall_status,
        )

    async def mark_offline(self, local_id: str) -> QueueItem | None:
        item = await self.store.get_active(local_id)
        if item is None or item.overall_status == OverallStatus.COMPLETED:
            return item
        await self._mark_item_offline(item)
        return item

    async def _mark_item_offline(self, item: QueueItem) -> None:
        # Offline time never consumes retry budget.
        for _, state in item.steps():
            if not state.is_completed:
                mark_offline(state, error=OFFLINE_MESSAGE)
        await self._persist(item)
        logger.info("item marked offline", extra={"local_id": item.local_id, "reason": "network_unavailable"})

    async def _attempt(self, item: QueueItem, step: StepName) -> bool:
        state = item.step(step)
        mark_processing(state)
        item.last_attempt_at = self.clock()
        item.total_retry_count += 1
        await self._persist(item)

        try:
            value = await self._call(item, step)
        except Exception as exc:
            error_code = _error_code_for(step, exc)
            mark_failed(state, error=str(exc) or type(exc).__name__, error_code=error_code)
            record_failure(state, now=self.clock(), settings=self.settings)
            await self._persist(item)
            logger.warning(
                "pipeline step failed",
                extra={
                    "local_id": item.local_id,
                    "step": step,
                    "reason": error_code,
                    "outcome": classify_error(error_code),
                },
            )
            return False

        mark_completed(state, result_field=STEP_LIFECYCLES[step].result_field, value=value)
        await self._persist(item)
        logger.info("pipeline step completed", extra={"local_id": item.local_id, "step": step})
        return True

    async def _call(self, item: QueueItem, step: StepName) -> object:
        if step == "ledger":
            record = await self.ledger.create_record(item.payload)
            return record.record_id

        record_id = item.ledger.record_id
        if record_id is None:
            raise DeliveryError("ledger record id is missing", code="ledger_record_missing")

        if step == "proof":
            receipt = await self.proof.attest(build_attestation_fields(item.payload, record_id=record_id))
            return receipt.proof_id

        proof_id = item.proof.proof_id
        if proof_id is None:
            raise DeliveryError("proof id is missing", code="internal_error")
        await self.link.attach_proof(record_id=record_id, proof_id=proof_id)
        return self.clock()

    async def _persist(self, item: QueueItem) -> None:
        item.overall_status = derive_overall_status(item)
        item.queued_at = None
        await self.store.update_item(item)


def _error_code_for(step: StepName, exc: Exception) -> ErrorCode:
    if isinstance(exc, AuthorizationError):
        return resolve_step_error(step=step, code="authorization_failed")
    code = getattr(exc, "code", None) or STEP_FAILURE_CODE[step]
    return resolve_step_error(step=step, code=code)
