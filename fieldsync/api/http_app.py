from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import Body, FastAPI, HTTPException

from fieldsync.api.handlers.deps import ApiDeps
from fieldsync.api.handlers.queue import (
    acknowledge_rescue_handler,
    clear_item_handler,
    enqueue_handler,
    get_item_handler,
    list_active_handler,
    list_completed_handler,
    metrics_handler,
    retry_item_handler,
    run_pass_handler,
)
from fieldsync.api.schemas import (
    EnqueueResponse,
    ErrorResponse,
    HealthResponse,
    QueueItemResponse,
    QueueListResponse,
    QueueMetricsResponse,
    ReadyResponse,
    RescueResponse,
    RetryRequest,
    RetryResponse,
    RunPassResponse,
    SchedulerMetrics,
)
from fieldsync.domain.errors import (
    ClearNotPermittedError,
    DomainValidationError,
    ItemNotFoundError,
    RetryLockedError,
)
from fieldsync.domain.models import EventPayload
from fieldsync.workers.runner import (
    SchedulerRuntimeSettings,
    SchedulerRuntimeState,
    run_scheduler_until_stopped,
    scheduler_runtime_settings_from_env,
)


def build_app(
    role: str,
    run_id: str,
    api_deps: ApiDeps | None = None,
    run_scheduler_loop: bool = False,
    scheduler_state: SchedulerRuntimeState | None = None,
    scheduler_runtime_settings: SchedulerRuntimeSettings | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    scheduler_enabled = run_scheduler_loop and api_deps is not None
    scheduler_task: asyncio.Task[None] | None = None
    state = scheduler_state or SchedulerRuntimeState()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal scheduler_task
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if api_deps is not None:
            await api_deps.queue.recover_at_launch()
            await api_deps.sync.refresh()

        if scheduler_enabled:
            settings = scheduler_runtime_settings or scheduler_runtime_settings_from_env()
            stop_event = asyncio.Event()
            scheduler_task = asyncio.create_task(
                run_scheduler_until_stopped(
                    scheduler=api_deps.scheduler,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=state,
                )
            )

        yield

        if stop_event is not None and scheduler_task is not None:
            stop_event.set()
            await scheduler_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="fieldsync", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="stub")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        scheduler_ready = True
        if scheduler_enabled:
            scheduler_ready = state.started and scheduler_task is not None and not scheduler_task.done()

        return ReadyResponse(
            status="ready",
            role=role,
            mode="stub",
            scheduler_loop_enabled=scheduler_enabled,
            scheduler_loop_ready=scheduler_ready,
            scheduler_metrics=SchedulerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                new_data_total=state.new_data_total,
                idle_ticks_total=state.idle_ticks_total,
                skipped_total=state.skipped_total,
                errors_total=state.errors_total,
            ),
        )

    @app.post(
        "/queue/items",
        response_model=EnqueueResponse,
        status_code=201,
        responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Queue"],
    )
    async def enqueue(payload: EventPayload) -> EnqueueResponse:
        return await enqueue_handler(payload=payload, api_deps=_require_deps())

    @app.get("/queue/items", response_model=QueueListResponse, tags=["Queue"])
    async def list_active() -> QueueListResponse:
        return await list_active_handler(api_deps=_require_deps())

    @app.get("/queue/completed", response_model=QueueListResponse, tags=["Queue"])
    async def list_completed() -> QueueListResponse:
        return await list_completed_handler(api_deps=_require_deps())

    @app.get(
        "/queue/items/{local_id}",
        response_model=QueueItemResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Queue"],
    )
    async def get_item(local_id: str) -> QueueItemResponse:
        deps = _require_deps()
        try:
            return await get_item_handler(local_id=local_id, api_deps=deps)
        except ItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post(
        "/queue/items/{local_id}/retry",
        response_model=RetryResponse,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
        tags=["Queue"],
    )
    async def retry_item(local_id: str, request: RetryRequest | None = Body(default=None)) -> RetryResponse:
        deps = _require_deps()
        service = request.service if request is not None else None
        try:
            return await retry_item_handler(local_id=local_id, service=service, api_deps=deps)
        except ItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except RetryLockedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except DomainValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post(
        "/queue/items/{local_id}/rescue",
        response_model=RescueResponse,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        tags=["Queue"],
    )
    async def acknowledge_rescue(local_id: str) -> RescueResponse:
        deps = _require_deps()
        try:
            return await acknowledge_rescue_handler(local_id=local_id, api_deps=deps)
        except ItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ClearNotPermittedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.delete(
        "/queue/items/{local_id}",
        status_code=204,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        tags=["Queue"],
    )
    async def clear_item(local_id: str) -> None:
        deps = _require_deps()
        try:
            await clear_item_handler(local_id=local_id, api_deps=deps)
        except ItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ClearNotPermittedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/queue/run", response_model=RunPassResponse, tags=["Queue"])
    async def run_pass() -> RunPassResponse:
        return await run_pass_handler(api_deps=_require_deps())

    @app.get("/queue/metrics", response_model=QueueMetricsResponse, tags=["Queue"])
    async def metrics() -> QueueMetricsResponse:
        return await metrics_handler(api_deps=_require_deps())

    return app
