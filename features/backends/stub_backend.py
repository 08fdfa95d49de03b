"""
Stub backend — read-only and empty.

Used as a safe default when no compatible store is detected: every read
succeeds with empty data and every write is refused with UNAVAILABLE.
"""

from __future__ import annotations

from features.backends.capabilities import STUB_CAPABILITIES
from features.backends.errors import ErrorCode, fail, ok
from features.backends.workflows import builtin_workflow_descriptors


def _unavailable(operation: str):
    return fail(ErrorCode.UNAVAILABLE, f"Stub backend does not support {operation}", retryable=False)


class StubBackend:
    capabilities = STUB_CAPABILITIES

    async def list_workflows(self, repo_path=None):
        return ok(builtin_workflow_descriptors())

    async def list(self, filters=None, repo_path=None):
        return ok([])

    async def list_ready(self, filters=None, repo_path=None):
        return ok([])

    async def search(self, query, filters=None, repo_path=None):
        return ok([])

    async def query(self, expression, options=None, repo_path=None):
        return ok([])

    async def get(self, beat_id, repo_path=None):
        return fail(ErrorCode.NOT_FOUND, f"Beat {beat_id} not found (stub)")

    async def create(self, data, repo_path=None):
        return _unavailable("create")

    async def update(self, beat_id, data, repo_path=None):
        return _unavailable("update")

    async def delete(self, beat_id, repo_path=None):
        return _unavailable("delete")

    async def close(self, beat_id, reason=None, repo_path=None):
        return _unavailable("close")

    async def list_dependencies(self, beat_id, dep_type=None, repo_path=None):
        return ok([])

    async def add_dependency(self, blocker_id, blocked_id, repo_path=None):
        return _unavailable("add_dependency")

    async def remove_dependency(self, blocker_id, blocked_id, repo_path=None):
        return _unavailable("remove_dependency")

    async def build_take_prompt(self, beat_id, options=None, repo_path=None):
        return _unavailable("build_take_prompt")

    async def build_poll_prompt(self, options=None, repo_path=None):
        return _unavailable("build_poll_prompt")
