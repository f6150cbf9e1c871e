"""
Error types for FieldVault.

Every failure the durability core reports is one of these types:
- NotFoundError: No snapshot, version or operation exists
- ProviderUnavailableError: Data provider read/write failed
- TransportUnreachableError: Network transport failed or timed out
- SerializationError: Encode/decode of a record failed
- ValidationFailedError: Structural defect in a snapshot
- RetryExhaustedError: Offline operation exceeded max attempts
- ConflictDetectedError: Local and remote versions diverged

Invariants:
    - All errors inherit from FieldVaultError
    - Each error carries a stable ``code`` for programmatic handling
    - Backend exceptions are translated at the component edge (raise ... from)

How to change safely:
    - Never change an existing ``code`` string, the console and CLI match on it
    - Add new subclasses rather than overloading existing ones
"""

from __future__ import annotations

from typing import Any


class FieldVaultError(Exception):
    """Base exception for all FieldVault errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code_default = "FIELDVAULT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code_default
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(FieldVaultError):
    """Requested snapshot, version or operation does not exist."""

    code_default = "NOT_FOUND"


class NoBackupFoundError(NotFoundError):
    """An operation needs a current snapshot and none has been taken yet."""

    code_default = "NO_BACKUP_FOUND"

    def __init__(self, message: str = "No backup found") -> None:
        super().__init__(message)


class ProviderUnavailableError(FieldVaultError):
    """The data provider could not be read or written.

    Always recoverable: the next scheduled cycle retries.
    """

    code_default = "PROVIDER_UNAVAILABLE"


class TransportUnreachableError(FieldVaultError):
    """The network transport failed, was unreachable or timed out.

    Raised when:
    - The remote store cannot be contacted
    - A push/pull exceeds the configured timeout
    - The remote rejects the request
    """

    code_default = "TRANSPORT_UNREACHABLE"

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message, details={"timed_out": timed_out})
        self.timed_out = timed_out


class SerializationError(FieldVaultError):
    """A record could not be encoded or decoded.

    Attributes:
        key: Persisted key involved, if any
    """

    code_default = "SERIALIZATION_ERROR"

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message, details={"key": key})
        self.key = key


class ValidationFailedError(FieldVaultError):
    """A snapshot has structural defects.

    Attributes:
        errors: Hard error messages that made the snapshot invalid
    """

    code_default = "VALIDATION_FAILED"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, details={"errors": errors or []})
        self.errors = errors or []


class RetryExhaustedError(FieldVaultError):
    """An offline operation failed on every allowed attempt."""

    code_default = "RETRY_EXHAUSTED"

    def __init__(self, message: str, operation_id: str, attempts: int) -> None:
        super().__init__(
            message,
            details={"operation_id": operation_id, "attempts": attempts},
        )
        self.operation_id = operation_id
        self.attempts = attempts


class ConflictDetectedError(FieldVaultError):
    """Local and remote version state diverged.

    Conflicts are resolved automatically (last writer wins); this type is
    used for the logged/notified record of the resolution.
    """

    code_default = "CONFLICT_DETECTED"

    def __init__(self, message: str, local_id: str, remote_id: str, winner: str) -> None:
        super().__init__(
            message,
            details={"local_id": local_id, "remote_id": remote_id, "winner": winner},
        )
        self.local_id = local_id
        self.remote_id = remote_id
        self.winner = winner


__all__ = [
    "FieldVaultError",
    "NotFoundError",
    "NoBackupFoundError",
    "ProviderUnavailableError",
    "TransportUnreachableError",
    "SerializationError",
    "ValidationFailedError",
    "RetryExhaustedError",
    "ConflictDetectedError",
]
