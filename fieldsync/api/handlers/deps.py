from __future__ import annotations

from dataclasses import dataclass

from fieldsync.services.queue_service import QueueService
from fieldsync.services.sync import QueueSyncLayer
from fieldsync.workers.scheduler import Scheduler


@dataclass(frozen=True)
class ApiDeps:
    queue: QueueService
    scheduler: Scheduler
    sync: QueueSyncLayer
