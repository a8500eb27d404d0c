from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime

from fieldsync.domain.models import OverallStatus, QueueItem, ServiceStatus
from fieldsync.domain.retry_policy import RetryPolicySettings, is_completely_failed, is_stuck


@dataclass(frozen=True)
class QueueMetrics:
    total_active: int = 0
    processing: int = 0
    stuck: int = 0
    pending: int = 0
    queued: int = 0
    offline: int = 0
    failed: int = 0
    exhausted: int = 0
    with_retries: int = 0
    total_retries: int = 0

    def as_log_fields(self) -> dict[str, int]:
        return asdict(self)


def compute_queue_metrics(
    items: list[QueueItem],
    *,
    now: datetime,
    settings: RetryPolicySettings,
) -> QueueMetrics:
    counts = {status: 0 for status in OverallStatus}
    stuck = 0
    exhausted = 0
    with_retries = 0
    total_retries = 0
    for item in items:
        counts[item.overall_status] += 1
        if any(
            is_stuck(state, last_attempt_at=item.last_attempt_at, now=now, settings=settings)
            for _, state in item.steps()
            if state.status == ServiceStatus.PROCESSING
        ):
            stuck += 1
        if is_completely_failed(item, now=now, settings=settings):
            exhausted += 1
        if item.total_retry_count > 0:
            with_retries += 1
        total_retries += item.total_retry_count

    return QueueMetrics(
        total_active=len(items),
        processing=counts[OverallStatus.PROCESSING],
        stuck=stuck,
        pending=counts[OverallStatus.PENDING],
        queued=counts[OverallStatus.QUEUED],
        offline=counts[OverallStatus.OFFLINE],
        failed=counts[OverallStatus.FAILED],
        exhausted=exhausted,
        with_retries=with_retries,
        total_retries=total_retries,
    )
