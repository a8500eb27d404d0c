from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_ROLES = (
    "api",
    "worker-scheduler",
)


@dataclass(frozen=True)
class RuntimeRole:
    name: str

    @property
    def runs_scheduler(self) -> bool:
        return self.name == "worker-scheduler"


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role)

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: the background task is triggered with --run-once, not a role."
    )
