"""
Backend Port — the contract every work-item store implements.

All operations are coroutines and return a ``BackendResult``; none of them
raise for store-level failures. ``repo_path`` is always the last argument
so the auto-routing backend can dispatch on it.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from features.backends.capabilities import BackendCapabilities
from features.backends.errors import BackendResult
from features.backends.workflows import WorkflowDescriptor
from models.schemas import (
    Beat,
    BeatFilters,
    CreateBeatInput,
    Dependency,
    PollPromptOptions,
    PollPromptResult,
    QueryOptions,
    TakePromptOptions,
    TakePromptResult,
    UpdateBeatInput,
)


@runtime_checkable
class BackendPort(Protocol):
    capabilities: BackendCapabilities

    async def list_workflows(self, repo_path: str | None = None) -> BackendResult[list[WorkflowDescriptor]]: ...

    async def list(self, filters: BeatFilters | None = None,
                   repo_path: str | None = None) -> BackendResult[list[Beat]]: ...

    async def list_ready(self, filters: BeatFilters | None = None,
                         repo_path: str | None = None) -> BackendResult[list[Beat]]: ...

    async def search(self, query: str, filters: BeatFilters | None = None,
                     repo_path: str | None = None) -> BackendResult[list[Beat]]: ...

    async def query(self, expression: str, options: QueryOptions | None = None,
                    repo_path: str | None = None) -> BackendResult[list[Beat]]: ...

    async def get(self, beat_id: str, repo_path: str | None = None) -> BackendResult[Beat]: ...

    async def create(self, data: CreateBeatInput,
                     repo_path: str | None = None) -> BackendResult[dict]: ...

    async def update(self, beat_id: str, data: UpdateBeatInput,
                     repo_path: str | None = None) -> BackendResult[None]: ...

    async def delete(self, beat_id: str, repo_path: str | None = None) -> BackendResult[None]: ...

    async def close(self, beat_id: str, reason: str | None = None,
                    repo_path: str | None = None) -> BackendResult[None]: ...

    async def list_dependencies(self, beat_id: str, dep_type: str | None = None,
                                repo_path: str | None = None) -> BackendResult[list[Dependency]]: ...

    async def add_dependency(self, blocker_id: str, blocked_id: str,
                             repo_path: str | None = None) -> BackendResult[None]: ...

    async def remove_dependency(self, blocker_id: str, blocked_id: str,
                                repo_path: str | None = None) -> BackendResult[None]: ...

    async def build_take_prompt(self, beat_id: str, options: TakePromptOptions | None = None,
                                repo_path: str | None = None) -> BackendResult[TakePromptResult]: ...

    async def build_poll_prompt(self, options: PollPromptOptions | None = None,
                                repo_path: str | None = None) -> BackendResult[PollPromptResult]: ...
