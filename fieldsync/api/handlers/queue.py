from __future__ import annotations

from fieldsync.api.handlers.deps import ApiDeps
from fieldsync.api.schemas import (
    EnqueueResponse,
    QueueItemResponse,
    QueueListResponse,
    QueueMetricsResponse,
    RescueResponse,
    RetryDecisionView,
    RetryResponse,
    RunPassResponse,
)
from fieldsync.domain.models import EventPayload, StepName


async def enqueue_handler(*, payload: EventPayload, api_deps: ApiDeps) -> EnqueueResponse:
    local_id = await api_deps.queue.enqueue(payload)
    return EnqueueResponse(local_id=local_id)


async def list_active_handler(*, api_deps: ApiDeps) -> QueueListResponse:
    items = await api_deps.queue.list_active()
    return QueueListResponse(items=items, count=len(items))


async def list_completed_handler(*, api_deps: ApiDeps) -> QueueListResponse:
    items = await api_deps.queue.list_completed()
    return QueueListResponse(items=items, count=len(items))


async def get_item_handler(*, local_id: str, api_deps: ApiDeps) -> QueueItemResponse:
    view = await api_deps.queue.get_item(local_id)
    return QueueItemResponse(
        partition=view.partition,
        contact_support=view.contact_support,
        decisions={
            name: RetryDecisionView(eligible=decision.eligible, phase=decision.phase, reason=decision.reason)
            for name, decision in view.decisions.items()
        },
        item=view.item,
    )


async def retry_item_handler(*, local_id: str, service: StepName | None, api_deps: ApiDeps) -> RetryResponse:
    """Manual retry; the dispatch shares the scheduler's single-flight guard."""
    result = await api_deps.queue.retry_item(local_id, service=service)
    outcome = result.dispatch.items[0].status if result.dispatch.items else result.dispatch.outcome
    return RetryResponse(
        local_id=result.local_id,
        reset_steps=list(result.reset_steps),
        dispatched=result.dispatched,
        outcome=outcome,
        reason=result.dispatch.reason,
    )


async def acknowledge_rescue_handler(*, local_id: str, api_deps: ApiDeps) -> RescueResponse:
    rescue = await api_deps.queue.acknowledge_rescue(local_id)
    return RescueResponse.model_validate(rescue.as_dict())


async def clear_item_handler(*, local_id: str, api_deps: ApiDeps) -> None:
    await api_deps.queue.clear_item(local_id)


async def run_pass_handler(*, api_deps: ApiDeps) -> RunPassResponse:
    result = await api_deps.scheduler.run_once("manual")
    return RunPassResponse(
        trigger=result.trigger,
        outcome=result.outcome,
        reason=result.reason,
        batch_size=result.batch_size,
        selected=list(result.selected),
        completed=list(result.completed),
        failed=list(result.failed),
    )


async def metrics_handler(*, api_deps: ApiDeps) -> QueueMetricsResponse:
    metrics = await api_deps.queue.metrics()
    completed = await api_deps.queue.list_completed()
    return QueueMetricsResponse(**metrics.as_log_fields(), completed=len(completed))
