from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class DeliveryError(DomainDependencyError):
    """Ledger, proof or link collaborator call failed."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class AuthorizationError(DomainDependencyError):
    pass


class StorageError(DomainError):
    pass


class ConfigurationError(DomainError):
    pass


class ItemNotFoundError(DomainError):
    pass


class RetryLockedError(DomainError):
    """Item is completely failed; only support can move it."""


class ClearNotPermittedError(DomainError):
    pass
