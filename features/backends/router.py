"""
Auto-routing backend — picks a concrete store per repository.

The first operation against a repository checks it for marker
directories (highest precedence first) and caches the resolved backend
type per path. Concrete backends are created once per type and shared by
every repository that resolves to it.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path

import config
from features.backends.capabilities import FULL_CAPABILITIES, BackendCapabilities
from features.backends.cli_backend import CliBackend
from features.backends.file_backend import FileBackend
from features.backends.port import BackendPort
from features.backends.service_backend import ServiceBackend
from features.backends.stub_backend import StubBackend

log = logging.getLogger(__name__)


class BackendType(str, Enum):
    AUTO = "auto"
    CLI = "cli"
    STUB = "stub"
    BEADS = "beads"
    KNOTS = "knots"


# (marker directory, backend type), highest precedence first.
REPO_MARKERS: list[tuple[str, BackendType]] = [
    (".knots", BackendType.KNOTS),
    (".beads", BackendType.CLI),
]


def create_concrete_backend(backend_type: BackendType) -> BackendPort:
    if backend_type == BackendType.CLI:
        return CliBackend()
    if backend_type == BackendType.STUB:
        return StubBackend()
    if backend_type == BackendType.BEADS:
        return FileBackend()
    if backend_type == BackendType.KNOTS:
        return ServiceBackend()
    raise ValueError(f"Unknown backend type: {backend_type}")


def detect_backend_type(repo_path: str) -> BackendType | None:
    root = Path(repo_path)
    for marker, backend_type in REPO_MARKERS:
        if (root / marker).exists():
            return backend_type
    return None


def _coerce_type(value: str | BackendType) -> BackendType:
    try:
        return BackendType(value)
    except ValueError:
        log.warning("[BACKEND] Unknown backend type %r, using cli", value)
        return BackendType.CLI


class AutoRoutingBackend:
    """Backend Port that delegates each call to the store detected for ``repo_path``."""

    capabilities = FULL_CAPABILITIES

    def __init__(self, fallback_type: str | BackendType = BackendType.CLI):
        fallback = _coerce_type(fallback_type)
        self.fallback_type = BackendType.CLI if fallback == BackendType.AUTO else fallback
        self._lock = threading.Lock()
        self._detected: dict[str, tuple[BackendType, BackendCapabilities]] = {}
        self._instances: dict[BackendType, BackendPort] = {}
        self.detect_count = 0

    # ── Resolution ────────────────────────────────────────────────────

    def _instance(self, backend_type: BackendType) -> BackendPort:
        with self._lock:
            backend = self._instances.get(backend_type)
            if backend is None:
                backend = create_concrete_backend(backend_type)
                self._instances[backend_type] = backend
            return backend

    def resolve_type(self, repo_path: str | None) -> BackendType:
        if not repo_path:
            return self.fallback_type
        key = str(Path(repo_path).resolve())
        with self._lock:
            cached = self._detected.get(key)
            if cached is not None:
                return cached[0]
            self.detect_count += 1
            backend_type = detect_backend_type(key) or self.fallback_type
        capabilities = self._instance(backend_type).capabilities
        with self._lock:
            self._detected[key] = (backend_type, capabilities)
        log.info("[BACKEND] %s routed to %s backend", key, backend_type.value)
        return backend_type

    def capabilities_for(self, repo_path: str | None = None) -> BackendCapabilities:
        return self._instance(self.resolve_type(repo_path)).capabilities

    def backend_for(self, repo_path: str | None = None) -> BackendPort:
        return self._instance(self.resolve_type(repo_path))

    def clear_repo_cache(self, repo_path: str | None = None) -> None:
        """Forget detected routes for one path, or for every path when omitted."""
        with self._lock:
            if repo_path is None:
                self._detected.clear()
            else:
                self._detected.pop(str(Path(repo_path).resolve()), None)

    # ── Port delegation ───────────────────────────────────────────────

    async def list_workflows(self, repo_path=None):
        return await self.backend_for(repo_path).list_workflows(repo_path)

    async def list(self, filters=None, repo_path=None):
        return await self.backend_for(repo_path).list(filters, repo_path)

    async def list_ready(self, filters=None, repo_path=None):
        return await self.backend_for(repo_path).list_ready(filters, repo_path)

    async def search(self, query, filters=None, repo_path=None):
        return await self.backend_for(repo_path).search(query, filters, repo_path)

    async def query(self, expression, options=None, repo_path=None):
        return await self.backend_for(repo_path).query(expression, options, repo_path)

    async def get(self, beat_id, repo_path=None):
        return await self.backend_for(repo_path).get(beat_id, repo_path)

    async def create(self, data, repo_path=None):
        return await self.backend_for(repo_path).create(data, repo_path)

    async def update(self, beat_id, data, repo_path=None):
        return await self.backend_for(repo_path).update(beat_id, data, repo_path)

    async def delete(self, beat_id, repo_path=None):
        return await self.backend_for(repo_path).delete(beat_id, repo_path)

    async def close(self, beat_id, reason=None, repo_path=None):
        return await self.backend_for(repo_path).close(beat_id, reason, repo_path)

    async def list_dependencies(self, beat_id, dep_type=None, repo_path=None):
        return await self.backend_for(repo_path).list_dependencies(beat_id, dep_type, repo_path)

    async def add_dependency(self, blocker_id, blocked_id, repo_path=None):
        return await self.backend_for(repo_path).add_dependency(blocker_id, blocked_id, repo_path)

    async def remove_dependency(self, blocker_id, blocked_id, repo_path=None):
        return await self.backend_for(repo_path).remove_dependency(blocker_id, blocked_id, repo_path)

    async def build_take_prompt(self, beat_id, options=None, repo_path=None):
        return await self.backend_for(repo_path).build_take_prompt(beat_id, options, repo_path)

    async def build_poll_prompt(self, options=None, repo_path=None):
        return await self.backend_for(repo_path).build_poll_prompt(options, repo_path)


def create_backend(backend_type: str | BackendType = BackendType.AUTO,
                   fallback_type: str | BackendType = BackendType.CLI) -> BackendPort:
    resolved = _coerce_type(backend_type)
    if resolved == BackendType.AUTO:
        return AutoRoutingBackend(fallback_type)
    return create_concrete_backend(resolved)


# ── Process-wide instance ────────────────────────────────────────────

_backend: BackendPort | None = None


def get_backend() -> BackendPort:
    """Routed backend; ``BACKEND_TYPE`` serves requests that carry no repo path."""
    global _backend
    if _backend is None:
        _backend = create_backend(BackendType.AUTO, config.BACKEND_TYPE)
    return _backend


def set_backend(backend: BackendPort | None) -> None:
    global _backend
    _backend = backend


def reset_backend() -> None:
    set_backend(None)


def clear_repo_cache(repo_path: str | None = None) -> None:
    backend = get_backend()
    if isinstance(backend, AutoRoutingBackend):
        backend.clear_repo_cache(repo_path)
