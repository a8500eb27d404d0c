from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")

LOCAL_ID_PATTERN = r"^q_[0-9A-HJKMNP-TV-Z]{26}$"


def new_local_id() -> str:
    return f"q_{ulid_module.new().str}"
