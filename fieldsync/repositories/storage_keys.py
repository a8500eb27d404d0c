from __future__ import annotations

import os
from dataclasses import dataclass

from fieldsync.domain.errors import ConfigurationError


@dataclass(frozen=True)
class StorageKeys:
    active: str
    completed: str


def storage_keys_from_env() -> StorageKeys:
    return StorageKeys(
        active=_required_key("FIELDSYNC_ACTIVE_QUEUE_KEY"),
        completed=_required_key("FIELDSYNC_COMPLETED_QUEUE_KEY"),
    )


def _required_key(name: str) -> str:
    value = (os.getenv(name) or "").strip()
    if not value:
        raise ConfigurationError(f"{name} is not configured. Set it in the environment before startup.")
    return value
