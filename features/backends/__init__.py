"""
Backends feature — one contract over several work-item stores.

Public API:
    from features.backends import BackendPort, get_backend, clear_repo_cache
    from features.backends import BackendResult, BackendError, ErrorCode
"""

from features.backends.capabilities import BackendCapabilities
from features.backends.errors import BackendError, BackendResult, ErrorCode
from features.backends.port import BackendPort
from features.backends.router import (
    AutoRoutingBackend,
    BackendType,
    clear_repo_cache,
    create_backend,
    get_backend,
    reset_backend,
    set_backend,
)

__all__ = [
    "AutoRoutingBackend",
    "BackendCapabilities",
    "BackendError",
    "BackendPort",
    "BackendResult",
    "BackendType",
    "ErrorCode",
    "clear_repo_cache",
    "create_backend",
    "get_backend",
    "reset_backend",
    "set_backend",
]
