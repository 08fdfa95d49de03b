"""
Stale-read suppression for tracker list operations.

When a list/ready/search call fails with a transient lock error, the last
successful result for the same call is served for up to two minutes from
the start of the failure streak. After that the caller gets a degraded
UNAVAILABLE error. Non-transient errors pass through untouched.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any

from features.backends.errors import BackendResult, ErrorCode, fail, is_suppressible

SUPPRESSION_WINDOW_SEC = 2 * 60
MAX_CACHE_ENTRIES = 64
DEGRADED_ERROR_MESSAGE = (
    "Unable to interact with the tracker store; retry shortly. "
    "If problems persist, investigate the tracker install"
)


@dataclass
class _CacheEntry:
    result: BackendResult
    stored_at: float


class ErrorSuppressor:
    """Per-call-signature cache of the last good list result."""

    def __init__(self, window_sec: float = SUPPRESSION_WINDOW_SEC, max_entries: int = MAX_CACHE_ENTRIES):
        self.window_sec = window_sec
        self.max_entries = max_entries
        self._results: dict[str, _CacheEntry] = {}
        self._first_failed_at: dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(operation: str, filters: dict[str, Any] | None = None,
                  repo_path: str | None = None, query: str | None = None) -> str:
        return f"{operation}:{query or ''}:{json.dumps(filters or {}, sort_keys=True)}:{repo_path or ''}"

    def apply(self, key: str, result: BackendResult, now: float | None = None) -> BackendResult:
        now = time.monotonic() if now is None else now
        with self._lock:
            if result.ok:
                self._results[key] = _CacheEntry(result, now)
                self._first_failed_at.pop(key, None)
                self._evict()
                return result

            if result.error is None or not is_suppressible(result.error):
                return result
            cached = self._results.get(key)
            if cached is None:
                return result

            first = self._first_failed_at.setdefault(key, now)
            if now - first < self.window_sec:
                return cached.result
            return fail(ErrorCode.UNAVAILABLE, DEGRADED_ERROR_MESSAGE)

    def reset(self) -> None:
        with self._lock:
            self._results.clear()
            self._first_failed_at.clear()

    def _evict(self) -> None:
        while len(self._results) > self.max_entries:
            oldest = min(self._results, key=lambda k: self._results[k].stored_at)
            del self._results[oldest]
            self._first_failed_at.pop(oldest, None)
