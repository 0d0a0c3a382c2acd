"""Error types shared by the orchestrator, the state store and providers."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Worker level error codes surfaced in logs and the status API."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    STATE_STORE_ERROR = "STATE_STORE_ERROR"
    STATE_STORE_UNAVAILABLE = "STATE_STORE_UNAVAILABLE"
    CANCELLED = "CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SongworkerError(Exception):
    """Base exception for songworker specific failures."""

    __slots__ = ("message", "code", "meta")

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.meta = dict(meta) if meta is not None else None

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.meta:
            error["meta"] = dict(self.meta)
        return {"ok": False, "error": error}


class ProviderError(SongworkerError):
    """Raised when a text, image or audio provider call fails."""

    __slots__ = ("provider", "retryable", "status_code")

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        retryable: bool = False,
        status_code: int | None = None,
        code: ErrorCode = ErrorCode.PROVIDER_ERROR,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, meta=meta)
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its configured timeout."""

    __slots__ = ("timeout_ms",)

    def __init__(self, provider: str, timeout_ms: int) -> None:
        super().__init__(
            f"{provider} request timed out after {timeout_ms}ms",
            provider=provider,
            retryable=True,
            code=ErrorCode.PROVIDER_TIMEOUT,
        )
        self.timeout_ms = timeout_ms


class InvalidTransitionError(SongworkerError):
    """Raised when a status change is not allowed by the transition table."""

    __slots__ = ("entity", "from_status", "to_status")

    def __init__(self, entity: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Invalid {entity} transition: {from_status} -> {to_status}",
            code=ErrorCode.INVALID_TRANSITION,
            meta={"entity": entity, "from": from_status, "to": to_status},
        )
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status


class StateStoreError(SongworkerError):
    """Raised when the state store rejects or fails a request."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.STATE_STORE_ERROR,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, meta=meta)


class StateStoreUnavailableError(StateStoreError):
    """Raised when the state store cannot be reached at all."""

    def __init__(self, message: str = "State store is unavailable.") -> None:
        super().__init__(message, code=ErrorCode.STATE_STORE_UNAVAILABLE)


class NotFoundError(SongworkerError):
    """Raised when a session or song could not be located."""

    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(message, code=ErrorCode.NOT_FOUND)


class OperationCancelled(SongworkerError):
    """Raised when a session's cancellation token fires mid-operation."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Operation cancelled for session {session_id}",
            code=ErrorCode.CANCELLED,
            meta={"session_id": session_id},
        )
        self.session_id = session_id


__all__ = [
    "ErrorCode",
    "InvalidTransitionError",
    "NotFoundError",
    "OperationCancelled",
    "ProviderError",
    "ProviderTimeoutError",
    "SongworkerError",
    "StateStoreError",
    "StateStoreUnavailableError",
]
