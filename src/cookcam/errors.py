"""Error taxonomy for the progression engine.

ValidationError   -> rejected immediately, nothing written
ConflictError     -> optimistic version mismatch; retried internally
RetryableError    -> conflicts exhausted; caller retries with the same key
PersistenceError  -> storage unavailable or timed out after backoff
DuplicateRequest  -> idempotency key already applied; internal only
"""

from __future__ import annotations

from typing import Any


class ProgressionError(Exception):
    """Base exception for all progression engine errors."""

    def __init__(
        self,
        message: str,
        *,
        user_id: str | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.operation = operation
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_id": self.user_id,
            "operation": self.operation,
            "context": self.context,
        }


class ValidationError(ProgressionError):
    """Unknown action type or malformed context."""


class ConflictError(ProgressionError):
    """Concurrent update detected on the user's progress row."""


class RetryableError(ProgressionError):
    """The operation can be retried by the caller with the same idempotency key."""


class PersistenceError(ProgressionError):
    """Storage unavailable or timed out."""

    def __init__(self, message: str, *, transient: bool = False, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.transient = transient

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["transient"] = self.transient
        return data


class DuplicateRequest(ProgressionError):
    """Idempotency key was already applied. Not surfaced to callers.

    Carries the stored result so the orchestrator can answer the retry
    without touching the progress row.
    """

    def __init__(
        self,
        idempotency_key: str,
        *,
        stored_result: dict[str, Any] | None = None,
        followup_status: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(f"Idempotency key already applied: {idempotency_key}", **kwargs)
        self.idempotency_key = idempotency_key
        self.stored_result = stored_result
        self.followup_status = followup_status
