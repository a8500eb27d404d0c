from __future__ import annotations

import json

from pydantic import ValidationError

from fieldsync.domain.models import QueueItem


class CorruptPartitionError(ValueError):
    pass


def encode_partition(items: list[QueueItem]) -> str:
    return json.dumps([item.model_dump(mode="json") for item in items], sort_keys=True)


def decode_partition(raw: str) -> tuple[list[QueueItem], int]:
    """Decode a stored partition, returning valid items and the number dropped."""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CorruptPartitionError(f"partition is not valid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise CorruptPartitionError(f"partition must be a list, got {type(parsed).__name__}")

    items: list[QueueItem] = []
    dropped = 0
    for entry in parsed:
        try:
            items.append(QueueItem.model_validate(entry))
        except ValidationError:
            dropped += 1
    return items, dropped
