"""
Service-backed store — adapter over the ``knots`` service CLI.

Records and relationship edges are fetched separately and joined here.
Edge lookups are cached per ``(repo, id)`` for two seconds and workflow
profiles per repo for ten seconds; every write that touches an edge
invalidates the affected entries.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import subprocess
import time
from typing import Any, Callable

import config
from features.backends import knots
from features.backends.capabilities import SERVICE_CAPABILITIES
from features.backends.errors import (
    BackendError,
    BackendResult,
    ErrorCode,
    backend_error_from_exception,
    classify_error_message,
    fail,
    fail_with,
    invalid_input,
    ok,
)
from features.backends.query import apply_filters, match_expression, match_text, sort_beats
from features.backends.workflows import (
    WorkflowDescriptor,
    apply_workflow_view,
    builtin_profile_descriptor,
    builtin_workflow_descriptors,
    find_builtin_profile,
    map_status_to_default_workflow_state,
    map_workflow_state_to_compat_status,
    normalize_profile_id,
    normalize_state_for_workflow,
)
from models.schemas import (
    BEAT_TYPES,
    DEFAULT_PRIORITY,
    Beat,
    Dependency,
    DependencyType,
    PollPromptResult,
    TakePromptResult,
)

log = logging.getLogger(__name__)

_INVALID_HINTS = ("unsupported", "requires at least one field change", "priority must be")


def classify_knots_error(message: str) -> BackendError:
    lower = message.lower()
    if "local cache" in lower:
        code = ErrorCode.NOT_FOUND
    elif any(hint in lower for hint in _INVALID_HINTS) and classify_error_message(lower) not in (
        ErrorCode.NOT_FOUND, ErrorCode.ALREADY_EXISTS,
    ):
        code = ErrorCode.INVALID_INPUT
    else:
        code = classify_error_message(lower)
    return BackendError.of(code, message)


def render_notes(raw: Any) -> str | None:
    """Flatten structured note entries into ``[datetime] user: content`` blocks."""
    if not isinstance(raw, list):
        return None
    parts = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        content = str(entry.get("content") or "").strip()
        if not content:
            continue
        username = entry.get("username") or "unknown"
        stamp = entry.get("datetime") or ""
        prefix = f"[{stamp}] {username}" if stamp else username
        parts.append(f"{prefix}: {content}")
    return "\n\n".join(parts) or None


def _parent_from_edges(knot_id: str, edges: list[dict]) -> str | None:
    for edge in edges:
        if edge.get("kind") == knots.EDGE_PARENT_OF and edge.get("dst") == knot_id:
            return edge.get("src")
    return None


def _is_blocked(knot_id: str, edges: list[dict], closed_ids: set[str]) -> bool:
    return any(
        edge.get("kind") == knots.EDGE_BLOCKED_BY and edge.get("src") == knot_id
        and edge.get("dst") not in closed_ids
        for edge in edges
    )


def _dotted_parent(knot_id: str) -> str | None:
    head, dot, _ = knot_id.rpartition(".")
    return head if dot and head else None


def descriptor_from_profile(raw: dict[str, Any]) -> WorkflowDescriptor | None:
    profile_id = normalize_profile_id(raw.get("id"))
    if not profile_id:
        return None
    builtin = find_builtin_profile(profile_id)
    if builtin is not None:
        return builtin
    states = [str(s) for s in raw.get("states") or []]
    if not states:
        return None
    initial = raw.get("initial_state") or states[0]
    retake = "ready_for_implementation" if "ready_for_implementation" in states else initial
    return WorkflowDescriptor(
        id=profile_id,
        label=f"Workflow ({profile_id})",
        description=str(raw.get("description") or ""),
        initial_state=initial,
        states=states,
        terminal_states=[str(s) for s in raw.get("terminal_states") or ["shipped", "abandoned"]],
        retake_state=retake,
        owners={str(k): str(v) for k, v in (raw.get("owners") or {}).items()},
        queue_states=[s for s in states if s.startswith("ready_for_")],
    )


class ServiceBackend:
    capabilities = SERVICE_CAPABILITIES

    def __init__(self, repo_path: str | None = None,
                 edge_ttl: float = config.KNOTS_EDGE_CACHE_TTL_SEC,
                 profile_ttl: float = config.KNOTS_PROFILE_CACHE_TTL_SEC):
        self.default_repo_path = repo_path or os.getcwd()
        self.edge_ttl = edge_ttl
        self.profile_ttl = profile_ttl
        self._edge_cache: dict[str, tuple[list[dict], float]] = {}
        self._profile_cache: dict[str, tuple[list[WorkflowDescriptor], float]] = {}

    def _resolve_path(self, repo_path: str | None) -> str:
        return repo_path or self.default_repo_path

    async def _call(self, fn: Callable, *args, **kwargs) -> BackendResult:
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except knots.KnotsCommandError as e:
            return fail_with(classify_knots_error(str(e)))
        except (subprocess.SubprocessError, OSError) as e:
            log.warning("[BACKEND] knots call %s failed: %s", fn.__name__, e)
            return fail_with(backend_error_from_exception(e))
        return ok(data)

    # ── Caches ────────────────────────────────────────────────────────

    @staticmethod
    def _edge_key(repo_path: str, knot_id: str) -> str:
        return f"{repo_path}::{knot_id}"

    def invalidate_edges(self, repo_path: str, knot_id: str | None = None) -> None:
        if knot_id is not None:
            self._edge_cache.pop(self._edge_key(repo_path, knot_id), None)
            return
        prefix = f"{repo_path}::"
        for key in [k for k in self._edge_cache if k.startswith(prefix)]:
            del self._edge_cache[key]

    async def _edges_for(self, knot_id: str, repo_path: str) -> BackendResult[list[dict]]:
        key = self._edge_key(repo_path, knot_id)
        cached = self._edge_cache.get(key)
        if cached and cached[1] > time.monotonic():
            return ok(cached[0])
        result = await self._call(knots.list_edges, knot_id, "both", repo_path=repo_path)
        if not result.ok:
            return result
        edges = result.data or []
        self._edge_cache[key] = (edges, time.monotonic() + self.edge_ttl)
        return ok(edges)

    async def _profiles_for(self, repo_path: str) -> BackendResult[list[WorkflowDescriptor]]:
        cached = self._profile_cache.get(repo_path)
        if cached and cached[1] > time.monotonic():
            return ok(cached[0])
        result = await self._call(knots.list_profiles, repo_path)
        if not result.ok:
            return result
        descriptors = [d for d in (descriptor_from_profile(r) for r in result.data or []) if d]
        if not descriptors:
            descriptors = builtin_workflow_descriptors()
        self._profile_cache[repo_path] = (descriptors, time.monotonic() + self.profile_ttl)
        return ok(descriptors)

    async def _workflow_for(self, profile_id: str | None, repo_path: str) -> WorkflowDescriptor:
        profiles = await self._profiles_for(repo_path)
        normalized = normalize_profile_id(profile_id)
        if profiles.ok:
            for descriptor in profiles.data:
                if descriptor.id == normalized:
                    return descriptor
        else:
            log.debug("[BACKEND] profile list unavailable for %s: %s", repo_path, profiles.error.message)
        return builtin_profile_descriptor(normalized)

    # ── Record joining ────────────────────────────────────────────────

    async def _to_beat(self, record: dict, edges: list[dict], repo_path: str,
                       known_ids: set[str] | None = None) -> Beat:
        knot_id = str(record["id"])
        profile_id = record.get("profile_id") or record.get("workflow_id")
        workflow = await self._workflow_for(profile_id, repo_path)
        raw_state = str(record.get("state") or "")
        state = normalize_state_for_workflow(raw_state, workflow)
        parent = _parent_from_edges(knot_id, edges)
        if parent is None:
            candidate = _dotted_parent(knot_id)
            if candidate and known_ids is not None and candidate in known_ids:
                parent = candidate
        knot_type = str(record.get("type") or "task").lower()
        priority = record.get("priority")
        description = record.get("description")
        if not isinstance(description, str):
            description = record.get("body") if isinstance(record.get("body"), str) else None
        status = map_workflow_state_to_compat_status(raw_state or state)
        beat = Beat(
            id=knot_id,
            title=str(record.get("title") or ""),
            type=knot_type if knot_type in BEAT_TYPES else "task",
            status=status,
            priority=priority if priority in (0, 1, 2, 3, 4) else DEFAULT_PRIORITY,
            labels=[t for t in record.get("tags") or [] if isinstance(t, str) and t.strip()],
            description=description,
            notes=render_notes(record.get("notes")),
            parent=parent,
            created=record.get("created_at") or record.get("updated_at") or "",
            updated=record.get("updated_at") or "",
            closed=record.get("updated_at") if status == "closed" else None,
            metadata={
                "knotsState": raw_state,
                "knotsProfileId": workflow.id,
                "knotsWorkflowEtag": record.get("workflow_etag"),
                "knotsHandoffCapsules": record.get("handoff_capsules") or [],
                "knotsNotes": record.get("notes") or [],
            },
        )
        apply_workflow_view(beat, workflow, state)
        return beat

    async def _build_beats(self, repo_path: str, ready_only: bool = False) -> BackendResult[list[Beat]]:
        listed = await self._call(knots.list_knots, repo_path)
        if not listed.ok:
            return listed
        records = [r for r in listed.data or [] if r.get("id")]
        edge_results = await asyncio.gather(*(self._edges_for(str(r["id"]), repo_path) for r in records))
        edges_by_id: dict[str, list[dict]] = {}
        for record, edge_result in zip(records, edge_results):
            if not edge_result.ok:
                return edge_result
            edges_by_id[str(record["id"])] = edge_result.data or []
        known_ids = set(edges_by_id)
        beats = [await self._to_beat(r, edges_by_id[str(r["id"])], repo_path, known_ids) for r in records]
        if ready_only:
            closed_ids = {b.id for b in beats if b.status == "closed"}
            beats = [
                b for b in beats
                if b.status == "open" and not _is_blocked(b.id, edges_by_id[b.id], closed_ids)
            ]
        return ok(beats)

    # ── Read operations ───────────────────────────────────────────────

    async def list_workflows(self, repo_path=None):
        return await self._profiles_for(self._resolve_path(repo_path))

    async def list(self, filters=None, repo_path=None):
        result = await self._build_beats(self._resolve_path(repo_path))
        return ok(apply_filters(result.data, filters)) if result.ok else result

    async def list_ready(self, filters=None, repo_path=None):
        result = await self._build_beats(self._resolve_path(repo_path), ready_only=True)
        return ok(apply_filters(result.data, filters)) if result.ok else result

    async def search(self, query, filters=None, repo_path=None):
        result = await self._build_beats(self._resolve_path(repo_path))
        if not result.ok:
            return result
        return ok(apply_filters([b for b in result.data if match_text(b, query)], filters))

    async def query(self, expression, options=None, repo_path=None):
        result = await self._build_beats(self._resolve_path(repo_path))
        if not result.ok:
            return result
        items = [b for b in result.data if match_expression(b, expression)]
        if options is not None:
            items = sort_beats(items, options.sort)
            if options.limit:
                items = items[: options.limit]
        return ok(items)

    async def get(self, beat_id, repo_path=None):
        rp = self._resolve_path(repo_path)
        shown = await self._call(knots.show_knot, beat_id, rp)
        if not shown.ok:
            return shown
        edges = await self._edges_for(beat_id, rp)
        if not edges.ok:
            return edges
        known: set[str] = set()
        candidate = _dotted_parent(beat_id)
        if candidate and _parent_from_edges(beat_id, edges.data) is None:
            if (await self._call(knots.show_knot, candidate, rp)).ok:
                known.add(candidate)
        return ok(await self._to_beat(shown.data, edges.data, rp, known))

    # ── Write operations ──────────────────────────────────────────────

    async def create(self, data, repo_path=None):
        rp = self._resolve_path(repo_path)
        profile_id = None
        if data.profile_id:
            workflow = find_builtin_profile(data.profile_id)
            profiles = await self._profiles_for(rp)
            if profiles.ok:
                workflow = next((d for d in profiles.data if d.id == normalize_profile_id(data.profile_id)), workflow)
            if workflow is None:
                return invalid_input(f"Unknown workflow profile: {data.profile_id}")
            profile_id = workflow.id
        workflow = await self._workflow_for(profile_id, rp)
        created = await self._call(
            knots.new_knot, data.title, data.description, workflow.initial_state, profile_id, repo_path=rp,
        )
        if not created.ok:
            return created
        knot_id = created.data

        patch: dict[str, Any] = {}
        if data.priority is not None:
            patch["priority"] = data.priority
        if data.type:
            patch["type"] = data.type
        if data.labels:
            patch["add_tags"] = list(data.labels)
        if data.notes:
            patch["add_note"] = data.notes
        if patch:
            result = await self._call(knots.update_knot, knot_id, patch, rp)
            if not result.ok:
                return result
        if data.acceptance:
            result = await self._call(
                knots.update_knot, knot_id, {"add_note": f"Acceptance Criteria:\n{data.acceptance}"}, rp,
            )
            if not result.ok:
                return result
        if data.parent:
            result = await self._call(knots.add_edge, data.parent, knots.EDGE_PARENT_OF, knot_id, rp)
            if not result.ok:
                return result
            self.invalidate_edges(rp, data.parent)
            self.invalidate_edges(rp, knot_id)
        return ok({"id": knot_id})

    async def update(self, beat_id, data, repo_path=None):
        rp = self._resolve_path(repo_path)
        workflow: WorkflowDescriptor | None = None
        if data.profile_id is not None or data.status is not None or data.state is not None:
            current = await self.get(beat_id, rp)
            if not current.ok:
                return current
            workflow = await self._workflow_for(current.data.profile_id, rp)
            if data.profile_id is not None and normalize_profile_id(data.profile_id) != current.data.profile_id:
                return invalid_input(
                    f"Cannot change workflow profile of {beat_id} from "
                    f"{current.data.profile_id} to {data.profile_id}"
                )

        patch: dict[str, Any] = {}
        for key in ("title", "description", "priority", "type"):
            value = getattr(data, key)
            if value is not None:
                patch[key] = value
        if data.state is not None and workflow is not None:
            patch["status"] = normalize_state_for_workflow(data.state, workflow)
        elif data.status is not None and workflow is not None:
            patch["status"] = map_status_to_default_workflow_state(data.status, workflow)
            if data.status == "closed":
                patch["force"] = True
        if data.labels:
            patch["add_tags"] = list(data.labels)
        if data.remove_labels:
            patch["remove_tags"] = list(data.remove_labels)
        if data.notes is not None:
            patch["add_note"] = data.notes
        if patch:
            result = await self._call(knots.update_knot, beat_id, patch, rp)
            if not result.ok:
                return result
        if data.acceptance is not None:
            result = await self._call(
                knots.update_knot, beat_id, {"add_note": f"Acceptance Criteria:\n{data.acceptance}"}, rp,
            )
            if not result.ok:
                return result
        if data.parent is not None:
            return await self._reparent(beat_id, data.parent, rp)
        return ok()

    async def _reparent(self, child_id: str, parent_id: str, repo_path: str) -> BackendResult:
        incoming = await self._call(knots.list_edges, child_id, "incoming", repo_path=repo_path)
        if not incoming.ok:
            return incoming
        existing = [
            e["src"] for e in incoming.data or []
            if e.get("kind") == knots.EDGE_PARENT_OF and e.get("dst") == child_id
        ]
        next_parent = parent_id.strip()
        for old_parent in existing:
            if next_parent and old_parent == next_parent:
                continue
            result = await self._call(knots.remove_edge, old_parent, knots.EDGE_PARENT_OF, child_id, repo_path)
            if not result.ok:
                return result
            self.invalidate_edges(repo_path, old_parent)
        if next_parent and next_parent not in existing:
            result = await self._call(knots.add_edge, next_parent, knots.EDGE_PARENT_OF, child_id, repo_path)
            if not result.ok:
                return result
            self.invalidate_edges(repo_path, next_parent)
        self.invalidate_edges(repo_path, child_id)
        return ok()

    async def delete(self, beat_id, repo_path=None):
        return invalid_input("Service backend does not support deleting beats")

    async def close(self, beat_id, reason=None, repo_path=None):
        rp = self._resolve_path(repo_path)
        patch: dict[str, Any] = {"status": "shipped", "force": True}
        if reason:
            patch["add_note"] = f"Close reason: {reason}"
        result = await self._call(knots.update_knot, beat_id, patch, rp)
        return ok() if result.ok else result

    # ── Dependency operations ─────────────────────────────────────────

    async def list_dependencies(self, beat_id, dep_type=None, repo_path=None):
        rp = self._resolve_path(repo_path)
        shown = await self._call(knots.show_knot, beat_id, rp)
        if not shown.ok:
            return shown
        edges = await self._edges_for(beat_id, rp)
        if not edges.ok:
            return edges
        deps = []
        for edge in edges.data:
            kind, src, dst = edge.get("kind"), edge.get("src"), edge.get("dst")
            if beat_id not in (src, dst):
                continue
            if kind == knots.EDGE_BLOCKED_BY:
                mapped, source, target = DependencyType.BLOCKS.value, dst, src
            elif kind == knots.EDGE_PARENT_OF:
                mapped, source, target = DependencyType.PARENT_CHILD.value, src, dst
            else:
                continue
            if dep_type and dep_type != mapped:
                continue
            deps.append(Dependency(
                id=target if beat_id == source else source,
                type=mapped,
                source=source,
                target=target,
            ))
        return ok(deps)

    async def add_dependency(self, blocker_id, blocked_id, repo_path=None):
        rp = self._resolve_path(repo_path)
        edges = await self._edges_for(blocked_id, rp)
        if edges.ok and any(
            e.get("kind") == knots.EDGE_BLOCKED_BY and e.get("src") == blocked_id and e.get("dst") == blocker_id
            for e in edges.data
        ):
            return fail(ErrorCode.ALREADY_EXISTS, f"Dependency {blocker_id} -> {blocked_id} already exists")
        result = await self._call(knots.add_edge, blocked_id, knots.EDGE_BLOCKED_BY, blocker_id, rp)
        if not result.ok:
            return result
        self.invalidate_edges(rp, blocker_id)
        self.invalidate_edges(rp, blocked_id)
        return ok()

    async def remove_dependency(self, blocker_id, blocked_id, repo_path=None):
        rp = self._resolve_path(repo_path)
        result = await self._call(knots.remove_edge, blocked_id, knots.EDGE_BLOCKED_BY, blocker_id, rp)
        if not result.ok:
            return result
        self.invalidate_edges(rp, blocker_id)
        self.invalidate_edges(rp, blocked_id)
        return ok()

    # ── Prompts ───────────────────────────────────────────────────────

    async def build_take_prompt(self, beat_id, options=None, repo_path=None):
        show_cmd = f'{config.KNOTS_BIN} show "{beat_id}"'
        if options and options.is_parent and options.child_ids:
            lines = [
                f"Parent beat ID: {beat_id}",
                f'Use `{show_cmd}` and `{config.KNOTS_BIN} show "<child-id>"` to inspect full details before starting.',
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
        claimable = sorted((b for b in ready.data if b.is_agent_claimable), key=lambda b: (b.priority, b.created))
        if not claimable:
            return fail(ErrorCode.NOT_FOUND, "No agent-claimable beats are ready")
        take = await self.build_take_prompt(claimable[0].id, repo_path=repo_path)
        return ok(PollPromptResult(prompt=take.data.prompt, claimed_id=claimable[0].id))
