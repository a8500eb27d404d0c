from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

# Canonical error vocabulary for all delivery steps.
ErrorCode = Literal[
    "network_unavailable",
    "ledger_write_failed",
    "ledger_record_missing",
    "proof_attestation_failed",
    "link_failed",
    "authorization_failed",
    "storage_failed",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for ServiceState.error_code.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "network_unavailable",
    "ledger_write_failed",
    "ledger_record_missing",
    "proof_attestation_failed",
    "link_failed",
    "authorization_failed",
    "storage_failed",
    "internal_error",
)

# Errors that the retry policy may attempt again automatically.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "network_unavailable",
        "ledger_write_failed",
        "proof_attestation_failed",
        "link_failed",
        "authorization_failed",
        "internal_error",
    }
)

# Step-specific allowlist. If a step emits a code outside this map,
# it is normalized to internal_error by resolve_step_error().
STEP_ERROR_MAP: Mapping[str, frozenset[ErrorCode]] = {
    "ledger": frozenset(
        {
            "network_unavailable",
            "ledger_write_failed",
            "authorization_failed",
            "internal_error",
        }
    ),
    "proof": frozenset(
        {
            "network_unavailable",
            "ledger_record_missing",
            "proof_attestation_failed",
            "authorization_failed",
            "internal_error",
        }
    ),
    "linking": frozenset(
        {
            "network_unavailable",
            "ledger_record_missing",
            "link_failed",
            "authorization_failed",
            "internal_error",
        }
    ),
}

# Default failure code per step when the collaborator raised without a code.
STEP_FAILURE_CODE: Mapping[str, ErrorCode] = {
    "ledger": "ledger_write_failed",
    "proof": "proof_attestation_failed",
    "linking": "link_failed",
}


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_step_error(*, step: str, code: str) -> ErrorCode:
    allowed = STEP_ERROR_MAP.get(step, frozenset({"internal_error"}))
    if code in allowed and is_canonical_error_code(code):
        return code
    # Keep persistence stable even if a collaborator emitted an unsupported code.
    return "internal_error"
