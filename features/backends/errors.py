"""
Backend error taxonomy and the uniform result envelope.

Every Backend Port operation returns a ``BackendResult``: on success it
carries ``data``; on failure it carries a ``BackendError`` with a code
from ``ErrorCode`` and a ``retryable`` flag. Raw store errors are
classified here so no free-text tracker message leaks past an adapter.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    INVALID_INPUT = "INVALID_INPUT"
    TIMEOUT = "TIMEOUT"
    LOCKED = "LOCKED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNAVAILABLE = "UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    UNSUPPORTED = "UNSUPPORTED"
    INTERNAL = "INTERNAL"


RETRYABLE_BY_DEFAULT = frozenset({
    ErrorCode.LOCKED,
    ErrorCode.TIMEOUT,
    ErrorCode.UNAVAILABLE,
    ErrorCode.RATE_LIMITED,
})


def is_retryable_by_default(code: ErrorCode) -> bool:
    return code in RETRYABLE_BY_DEFAULT


@dataclass(frozen=True)
class BackendError:
    code: ErrorCode
    message: str
    retryable: bool = False

    @classmethod
    def of(cls, code: ErrorCode, message: str, retryable: bool | None = None) -> "BackendError":
        if retryable is None:
            retryable = is_retryable_by_default(code)
        return cls(code=code, message=message, retryable=retryable)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "retryable": self.retryable}


@dataclass
class BackendResult(Generic[T]):
    ok: bool
    data: T | None = None
    error: BackendError | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "data": self.data}
        return {"ok": False, "error": self.error.to_dict() if self.error else None}


class BackendOperationError(Exception):
    """Raised by callers that turn a failed ``BackendResult`` into control flow."""

    def __init__(self, error: BackendError, context: str = ""):
        self.error = error
        message = f"{context}: {error.message}" if context else error.message
        super().__init__(message)

    @property
    def code(self) -> ErrorCode:
        return self.error.code


# ── Result helpers ───────────────────────────────────────────────────

def ok(data: Any = None) -> BackendResult:
    return BackendResult(ok=True, data=data)


def fail(code: ErrorCode, message: str, retryable: bool | None = None) -> BackendResult:
    return BackendResult(ok=False, error=BackendError.of(code, message, retryable))


def fail_with(error: BackendError) -> BackendResult:
    return BackendResult(ok=False, error=error)


def not_found(beat_id: str) -> BackendResult:
    return fail(ErrorCode.NOT_FOUND, f"Beat {beat_id} not found")


def invalid_input(message: str) -> BackendResult:
    return fail(ErrorCode.INVALID_INPUT, message)


def unwrap(result: BackendResult[T], context: str = "") -> T:
    """Return ``result.data`` or raise ``BackendOperationError``."""
    if not result.ok:
        error = result.error or BackendError.of(ErrorCode.INTERNAL, "Unknown backend error")
        raise BackendOperationError(error, context)
    return result.data  # type: ignore[return-value]


# ── Raw message classification ───────────────────────────────────────

# Checked in order; the first rule whose pattern matches wins.
_CLASSIFICATION_RULES: list[tuple[ErrorCode, re.Pattern[str]]] = [
    (ErrorCode.NOT_FOUND, re.compile(r"not found|no such|does not exist")),
    (ErrorCode.ALREADY_EXISTS, re.compile(r"already exists|duplicate")),
    (ErrorCode.INVALID_INPUT, re.compile(r"invalid")),
    (ErrorCode.TIMEOUT, re.compile(r"timed out|timeout")),
    (ErrorCode.LOCKED, re.compile(r"\block(ed|s)?\b|\bbusy\b")),
    (ErrorCode.PERMISSION_DENIED, re.compile(r"permission denied|unauthori[sz]ed|eacces")),
    (ErrorCode.UNAVAILABLE, re.compile(r"unavailable|unable to open|connection refused")),
    (ErrorCode.RATE_LIMITED, re.compile(r"rate limit|too many requests")),
]


def classify_error_message(raw: str) -> ErrorCode:
    """Map a free-text store error to an ``ErrorCode`` (case-insensitive)."""
    lower = (raw or "").lower()
    for code, pattern in _CLASSIFICATION_RULES:
        if pattern.search(lower):
            return code
    return ErrorCode.INTERNAL


def backend_error_from_message(raw: str, retryable: bool | None = None) -> BackendError:
    message = (raw or "").strip() or "Unknown backend error"
    return BackendError.of(classify_error_message(message), message, retryable)


def backend_error_from_exception(exc: BaseException) -> BackendError:
    """Convert a subprocess / OS exception into a structured error."""
    if isinstance(exc, subprocess.TimeoutExpired):
        return BackendError.of(ErrorCode.TIMEOUT, f"Command timed out after {exc.timeout}s: {exc.cmd}")
    if isinstance(exc, FileNotFoundError):
        return BackendError.of(ErrorCode.UNAVAILABLE, f"Command not available: {exc.filename or exc}")
    if isinstance(exc, PermissionError):
        return BackendError.of(ErrorCode.PERMISSION_DENIED, str(exc))
    return backend_error_from_message(str(exc))


def is_suppressible(error: BackendError) -> bool:
    """Transient infrastructure errors that a stale cached read may paper over."""
    return error.code in RETRYABLE_BY_DEFAULT
