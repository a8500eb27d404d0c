from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import logging

from fieldsync.workers.scheduler import Scheduler

BACKGROUND_SYNC_TASK = "BACKGROUND_SYNC_TASK"
logger = logging.getLogger("queue")


class BackgroundFetchResult(StrEnum):
    NEW_DATA = "NEW_DATA"
    NO_DATA = "NO_DATA"
    FAILED = "FAILED"


@dataclass(frozen=True)
class BackgroundTaskRegistration:
    task_name: str = BACKGROUND_SYNC_TASK
    minimum_interval_seconds: int = 15 * 60
    stop_on_terminate: bool = False
    start_on_boot: bool = True


@dataclass
class BackgroundTaskAdapter:
    """Boundary between the OS background-fetch facility and the scheduler.

    The OS only understands three results, and nothing may escape this call.
    """

    scheduler: Scheduler
    registration: BackgroundTaskRegistration = BackgroundTaskRegistration()
    runs_total: int = 0

    async def execute(self) -> BackgroundFetchResult:
        self.runs_total += 1
        try:
            result = await self.scheduler.run_once("background")
        except Exception:
            logger.exception("background task failed", extra={"outcome": BackgroundFetchResult.FAILED})
            return BackgroundFetchResult.FAILED

        if result.outcome == "new_data":
            return BackgroundFetchResult.NEW_DATA
        if result.outcome == "failed":
            return BackgroundFetchResult.FAILED
        return BackgroundFetchResult.NO_DATA
