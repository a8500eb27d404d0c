from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from fieldsync.api.handlers.deps import ApiDeps
from fieldsync.clients.stub import (
    StaticNetworkObserver,
    StaticPowerObserver,
    StubCredentialProvider,
    StubLedgerClient,
    StubLinkClient,
    StubProofClient,
)
from fieldsync.domain.contracts import (
    CredentialProvider,
    KeyValueStorage,
    LedgerClient,
    LinkClient,
    NetworkObserver,
    PowerObserver,
    ProofClient,
)
from fieldsync.domain.retry_policy import RetryPolicySettings, retry_policy_settings_from_env
from fieldsync.repositories.item_store import ItemStore
from fieldsync.repositories.postgres import AsyncpgPoolManager, PostgresKeyValueStorage
from fieldsync.repositories.storage import FileKeyValueStorage, InMemoryKeyValueStorage
from fieldsync.repositories.storage_keys import StorageKeys, storage_keys_from_env
from fieldsync.roles import RuntimeRole
from fieldsync.services.events import EventBus
from fieldsync.services.queue_service import QueueService
from fieldsync.services.sync import QueueSyncLayer
from fieldsync.workers.background import BackgroundTaskAdapter
from fieldsync.workers.pipeline import SubmissionPipeline
from fieldsync.workers.runner import SchedulerRuntimeState
from fieldsync.workers.scheduler import Scheduler


@dataclass
class RuntimeContainer:
    storage: KeyValueStorage
    store: ItemStore
    events: EventBus
    ledger: LedgerClient
    proof: ProofClient
    link: LinkClient
    credentials: CredentialProvider
    network: NetworkObserver
    power: PowerObserver
    pipeline: SubmissionPipeline
    scheduler: Scheduler
    scheduler_state: SchedulerRuntimeState
    background: BackgroundTaskAdapter
    sync: QueueSyncLayer
    queue: QueueService
    api_deps: ApiDeps
    run_scheduler_loop: bool
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_storage() -> tuple[
    KeyValueStorage,
    Callable[[], Awaitable[None]] | None,
    Callable[[], Awaitable[None]] | None,
]:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        return PostgresKeyValueStorage(pool_manager=pool_manager), pool_manager.startup, pool_manager.shutdown

    storage_dir = os.getenv("FIELDSYNC_STORAGE_DIR")
    if storage_dir:
        return FileKeyValueStorage(directory=storage_dir), None, None
    return InMemoryKeyValueStorage(), None, None


def build_runtime_container(
    role: RuntimeRole,
    *,
    keys: StorageKeys | None = None,
    settings: RetryPolicySettings | None = None,
    storage: KeyValueStorage | None = None,
) -> RuntimeContainer:
    """Wire one process worth of queue components.

    Storage keys are required configuration and are read before anything
    else, so a misconfigured process fails before it touches storage.
    """
    keys = keys or storage_keys_from_env()
    settings = settings or retry_policy_settings_from_env()

    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    if storage is None:
        storage, on_startup, on_shutdown = build_storage()

    store = ItemStore(storage=storage, keys=keys)
    events = EventBus()
    ledger = StubLedgerClient()
    proof = StubProofClient()
    link = StubLinkClient()
    credentials = StubCredentialProvider()
    network = StaticNetworkObserver()
    power = StaticPowerObserver()

    pipeline = SubmissionPipeline(
        store=store,
        ledger=ledger,
        proof=proof,
        link=link,
        network=network,
        settings=settings,
    )
    scheduler = Scheduler(
        store=store,
        pipeline=pipeline,
        credentials=credentials,
        network=network,
        power=power,
        events=events,
        settings=settings,
    )
    scheduler_state = SchedulerRuntimeState()
    queue = QueueService(
        store=store,
        scheduler=scheduler,
        events=events,
        settings=settings,
        wake=scheduler_state.wake,
    )
    sync = QueueSyncLayer(store=store, events=events)
    sync.start()

    return RuntimeContainer(
        storage=storage,
        store=store,
        events=events,
        ledger=ledger,
        proof=proof,
        link=link,
        credentials=credentials,
        network=network,
        power=power,
        pipeline=pipeline,
        scheduler=scheduler,
        scheduler_state=scheduler_state,
        background=BackgroundTaskAdapter(scheduler=scheduler),
        sync=sync,
        queue=queue,
        api_deps=ApiDeps(queue=queue, scheduler=scheduler, sync=sync),
        run_scheduler_loop=role.runs_scheduler,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
