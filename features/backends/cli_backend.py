"""
CLI-backed store — delegates every operation to the ``bd`` tracker binary.

The adapter is stateless apart from the stale-read suppressor. Tracker
calls are blocking subprocesses, so they run in the default executor;
their plain-string failures are classified into the error taxonomy before
they leave this module.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import subprocess
from typing import Any, Callable

from features.backends import bd
from features.backends.capabilities import FULL_CAPABILITIES
from features.backends.error_suppression import ErrorSuppressor
from features.backends.errors import (
    BackendResult,
    ErrorCode,
    backend_error_from_exception,
    backend_error_from_message,
    fail,
    fail_with,
    invalid_input,
    ok,
)
from features.backends.workflows import (
    apply_workflow_view,
    builtin_profile_descriptor,
    builtin_workflow_descriptors,
    derive_profile_id,
    derive_workflow_state,
    find_builtin_profile,
    with_workflow_profile_label,
)
from models.schemas import (
    DEFAULT_PRIORITY,
    Beat,
    Dependency,
    PollPromptResult,
    TakePromptResult,
    dedupe_labels,
)

log = logging.getLogger(__name__)


def _priority(value: Any) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return priority if 0 <= priority <= 4 else DEFAULT_PRIORITY


def normalize_issue(raw: dict[str, Any]) -> Beat:
    """Map tracker JSON field names onto a ``Beat``."""
    labels = dedupe_labels(raw.get("labels") or [])
    metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
    beat = Beat(
        id=str(raw.get("id", "")),
        title=str(raw.get("title", "")),
        type=raw.get("issue_type") or raw.get("type") or "task",
        status=raw.get("status") or "open",
        priority=_priority(raw.get("priority")),
        labels=labels,
        description=raw.get("description"),
        notes=raw.get("notes"),
        acceptance=raw.get("acceptance_criteria") or raw.get("acceptance"),
        parent=raw.get("parent"),
        assignee=raw.get("assignee"),
        owner=raw.get("owner"),
        due=raw.get("due"),
        estimate=raw.get("estimated_minutes") or raw.get("estimate"),
        created=raw.get("created_at") or raw.get("created") or "",
        updated=raw.get("updated_at") or raw.get("updated") or "",
        closed=raw.get("closed_at") or raw.get("closed"),
        metadata=dict(metadata),
    )
    workflow = builtin_profile_descriptor(derive_profile_id(labels, metadata))
    apply_workflow_view(beat, workflow, derive_workflow_state(beat.status, labels, workflow))
    return beat


def _normalize_dependency(raw: dict[str, Any], beat_id: str) -> Dependency:
    dep_type = raw.get("dependency_type") or raw.get("type") or "blocks"
    return Dependency(
        id=str(raw.get("id", "")),
        type=dep_type,
        source=raw.get("source") or raw.get("depends_on_id") or str(raw.get("id", "")),
        target=raw.get("target") or raw.get("issue_id") or beat_id,
    )


def _filters_dict(filters) -> dict[str, Any] | None:
    if filters is None:
        return None
    record = {k: str(v) for k, v in filters.as_dict().items()}
    return record or None


class CliBackend:
    capabilities = FULL_CAPABILITIES

    def __init__(self, suppressor: ErrorSuppressor | None = None):
        self._suppressor = suppressor or ErrorSuppressor()

    async def _call(self, fn: Callable, *args, **kwargs) -> BackendResult:
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except bd.BdCommandError as e:
            return fail_with(backend_error_from_message(str(e)))
        except (subprocess.SubprocessError, OSError, json.JSONDecodeError) as e:
            log.warning("[BACKEND] bd call %s failed: %s", fn.__name__, e)
            return fail_with(backend_error_from_exception(e))
        return ok(data)

    async def _list_call(self, operation: str, fn: Callable, filters=None, repo_path=None,
                         query: str | None = None, **kwargs) -> BackendResult:
        record = _filters_dict(filters)
        args = (query, record) if query is not None else (record,)
        result = await self._call(fn, *args, repo_path=repo_path, **kwargs)
        if result.ok:
            result = ok([normalize_issue(raw) for raw in result.data or []])
        key = ErrorSuppressor.cache_key(operation, record, repo_path, query)
        return self._suppressor.apply(key, result)

    async def list_workflows(self, repo_path=None):
        return ok(builtin_workflow_descriptors())

    async def list(self, filters=None, repo_path=None):
        return await self._list_call("list", bd.list_issues, filters, repo_path)

    async def list_ready(self, filters=None, repo_path=None):
        return await self._list_call("ready", bd.ready_issues, filters, repo_path)

    async def search(self, query, filters=None, repo_path=None):
        return await self._list_call("search", bd.search_issues, filters, repo_path, query=query)

    async def query(self, expression, options=None, repo_path=None):
        limit = options.limit if options else None
        sort = options.sort if options else None
        result = await self._call(bd.query_issues, expression, limit, sort, repo_path=repo_path)
        if not result.ok:
            return result
        return ok([normalize_issue(raw) for raw in result.data or []])

    async def get(self, beat_id, repo_path=None):
        result = await self._call(bd.show_issue, beat_id, repo_path=repo_path)
        if not result.ok:
            return result
        return ok(normalize_issue(result.data))

    async def create(self, data, repo_path=None):
        labels = dedupe_labels(data.labels)
        if data.profile_id:
            if find_builtin_profile(data.profile_id) is None:
                return invalid_input(f"Unknown workflow profile: {data.profile_id}")
            labels = with_workflow_profile_label(labels, data.profile_id)
        fields = {
            "title": data.title,
            "type": data.type,
            "priority": data.priority,
            "description": data.description,
            "notes": data.notes,
            "acceptance": data.acceptance,
            "parent": data.parent,
            "assignee": data.assignee,
            "due": data.due,
            "estimate": data.estimate,
            "labels": labels,
        }
        result = await self._call(bd.create_issue, fields, repo_path=repo_path)
        if not result.ok:
            return result
        return ok({"id": result.data})

    async def update(self, beat_id, data, repo_path=None):
        add_labels = list(data.labels or [])
        if data.profile_id is not None:
            if find_builtin_profile(data.profile_id) is None:
                return invalid_input(f"Unknown workflow profile: {data.profile_id}")
            add_labels = with_workflow_profile_label(add_labels, data.profile_id)
        fields = {
            "title": data.title,
            "type": data.type,
            "status": data.status,
            "priority": data.priority,
            "description": data.description,
            "notes": data.notes,
            "acceptance": data.acceptance,
            "parent": data.parent,
            "assignee": data.assignee,
            "due": data.due,
            "estimate": data.estimate,
        }
        result = await self._call(
            bd.update_issue, beat_id, fields,
            add_labels=dedupe_labels(add_labels),
            remove_labels=dedupe_labels(data.remove_labels),
            repo_path=repo_path,
        )
        return ok() if result.ok else result

    async def delete(self, beat_id, repo_path=None):
        result = await self._call(bd.delete_issue, beat_id, repo_path=repo_path)
        return ok() if result.ok else result

    async def close(self, beat_id, reason=None, repo_path=None):
        result = await self._call(bd.close_issue, beat_id, reason, repo_path=repo_path)
        return ok() if result.ok else result

    async def list_dependencies(self, beat_id, dep_type=None, repo_path=None):
        result = await self._call(bd.list_deps, beat_id, dep_type, repo_path=repo_path)
        if not result.ok:
            return result
        return ok([_normalize_dependency(raw, beat_id) for raw in result.data or []])

    async def add_dependency(self, blocker_id, blocked_id, repo_path=None):
        result = await self._call(bd.add_dep, blocker_id, blocked_id, repo_path=repo_path)
        return ok() if result.ok else result

    async def remove_dependency(self, blocker_id, blocked_id, repo_path=None):
        result = await self._call(bd.remove_dep, blocker_id, blocked_id, repo_path=repo_path)
        return ok() if result.ok else result

    async def build_take_prompt(self, beat_id, options=None, repo_path=None):
        show_cmd = f"bd show {json.dumps(beat_id)}"
        if options and options.is_parent and options.child_ids:
            lines = [
                f"Parent beat ID: {beat_id}",
                f'Use `{show_cmd}` and `bd show "<child-id>"` to inspect full details before starting.',
                "",
                "Open child beat IDs:",
                *[f"- {child}" for child in options.child_ids],
            ]
        else:
            lines = [
                f"Beat ID: {beat_id}",
                f"Use `{show_cmd}` to inspect full details before starting.",
            ]
        return ok(TakePromptResult(prompt="\n".join(lines), claimed=False))

    async def build_poll_prompt(self, options=None, repo_path=None):
        ready = await self.list_ready(repo_path=repo_path)
        if not ready.ok:
            return ready
        claimable = [b for b in ready.data if b.is_agent_claimable]
        if not claimable:
            return fail(ErrorCode.NOT_FOUND, "No agent-claimable beats are ready")
        claimable.sort(key=lambda b: (b.priority, b.created))
        chosen = claimable[0]
        prompt = "\n".join([
            f"Beat ID: {chosen.id}",
            f"Use `bd show {json.dumps(chosen.id)}` to inspect full details before starting.",
            f"Claim it with `bd update {json.dumps(chosen.id)} --status in_progress` and begin work.",
        ])
        return ok(PollPromptResult(prompt=prompt, claimed_id=chosen.id))
