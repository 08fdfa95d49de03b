"""
Capability descriptions — let callers feature-detect before issuing an
operation the active backend cannot satisfy.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class BackendCapabilities:
    can_create: bool
    can_update: bool
    can_delete: bool
    can_close: bool
    can_search: bool
    can_query: bool
    can_list_ready: bool
    can_manage_dependencies: bool
    can_manage_labels: bool
    can_sync: bool
    max_concurrency: int  # 0 means unlimited

    def to_dict(self) -> dict:
        return asdict(self)


FULL_CAPABILITIES = BackendCapabilities(
    can_create=True,
    can_update=True,
    can_delete=True,
    can_close=True,
    can_search=True,
    can_query=True,
    can_list_ready=True,
    can_manage_dependencies=True,
    can_manage_labels=True,
    can_sync=True,
    max_concurrency=0,
)

# Reads succeed with empty data; every write is refused.
STUB_CAPABILITIES = BackendCapabilities(
    can_create=False,
    can_update=False,
    can_delete=False,
    can_close=False,
    can_search=True,
    can_query=True,
    can_list_ready=True,
    can_manage_dependencies=False,
    can_manage_labels=False,
    can_sync=False,
    max_concurrency=0,
)

# A single JSONL file per repo: no sync, one writer at a time.
FILE_CAPABILITIES = BackendCapabilities(
    can_create=True,
    can_update=True,
    can_delete=True,
    can_close=True,
    can_search=True,
    can_query=True,
    can_list_ready=True,
    can_manage_dependencies=True,
    can_manage_labels=True,
    can_sync=False,
    max_concurrency=1,
)

# The service never hard-deletes records.
SERVICE_CAPABILITIES = BackendCapabilities(
    can_create=True,
    can_update=True,
    can_delete=False,
    can_close=True,
    can_search=True,
    can_query=True,
    can_list_ready=True,
    can_manage_dependencies=True,
    can_manage_labels=True,
    can_sync=True,
    max_concurrency=1,
)
