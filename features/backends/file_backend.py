"""
File-backed store — owns ``.beads/issues.jsonl`` directly, no external process.

The record file is loaded lazily into memory on first access per repository
and every read is served from that map. Each mutation updates the map and
then rewrites the backing files in full before returning. Dependencies are
a flat edge list kept in ``.beads/deps.jsonl`` next to the records.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path

from features.backends import jsonl_store
from features.backends.capabilities import FILE_CAPABILITIES
from features.backends.errors import ErrorCode, fail, invalid_input, not_found, ok
from features.backends.query import apply_filters, match_expression, match_text, sort_beats
from features.backends.workflows import (
    apply_workflow_view,
    builtin_profile_descriptor,
    builtin_workflow_descriptors,
    find_builtin_profile,
    map_status_to_default_workflow_state,
    map_workflow_state_to_compat_status,
    normalize_profile_id,
    normalize_state_for_workflow,
)
from models.schemas import Beat, Dependency, DependencyType, PollPromptResult, TakePromptResult, dedupe_labels

log = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
        if n == 0:
            return out


def generate_id() -> str:
    ts = _base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"beads-{ts}-{rand}"


@dataclass
class _Edge:
    blocker: str
    blocked: str


@dataclass
class _RepoStore:
    beats: dict[str, Beat] = field(default_factory=dict)
    edges: list[_Edge] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def resolve_parents(beats: dict[str, Beat]) -> dict[str, str | None]:
    """Map each id to its effective parent.

    A nominal parent that is missing from the store, or whose ancestor chain
    loops back, is dropped so the beat is treated as top-level.
    """
    resolved: dict[str, str | None] = {}
    for beat_id, beat in beats.items():
        parent = beat.parent if beat.parent in beats else None
        seen = {beat_id}
        cursor = parent
        while cursor is not None:
            if cursor in seen:
                parent = None
                break
            seen.add(cursor)
            nxt = beats[cursor].parent
            cursor = nxt if nxt in beats else None
        resolved[beat_id] = parent
    return resolved


class FileBackend:
    capabilities = FILE_CAPABILITIES

    def __init__(self, repo_path: str | None = None):
        self.default_repo_path = repo_path or os.getcwd()
        self._stores: dict[str, _RepoStore] = {}

    # ── Internal: cache management ────────────────────────────────────

    def _resolve_path(self, repo_path: str | None) -> str:
        return repo_path or self.default_repo_path

    def _ensure_loaded(self, repo_path: str) -> _RepoStore:
        store = self._stores.get(repo_path)
        if store is not None:
            return store
        store = _RepoStore()
        for raw in jsonl_store.read_jsonl(jsonl_store.issues_path(repo_path)):
            if not raw.get("id"):
                continue
            beat = jsonl_store.normalize_record(raw)
            store.beats[beat.id] = beat
        for raw in jsonl_store.read_jsonl(jsonl_store.deps_path(repo_path)):
            if raw.get("blocker") and raw.get("blocked"):
                store.edges.append(_Edge(str(raw["blocker"]), str(raw["blocked"])))
        log.info("[BACKEND] Loaded %d beats from %s", len(store.beats), jsonl_store.issues_path(repo_path))
        self._stores[repo_path] = store
        return store

    def _flush(self, repo_path: str, store: _RepoStore) -> None:
        jsonl_store.write_jsonl(
            jsonl_store.issues_path(repo_path),
            [jsonl_store.denormalize_beat(b) for b in store.beats.values()],
        )
        jsonl_store.write_jsonl(
            jsonl_store.deps_path(repo_path),
            [{"blocker": e.blocker, "blocked": e.blocked, "type": DependencyType.BLOCKS.value}
             for e in store.edges],
        )

    def _snapshot(self, store: _RepoStore) -> list[Beat]:
        parents = resolve_parents(store.beats)
        out = []
        for beat in store.beats.values():
            view = copy.deepcopy(beat)
            view.parent = parents[beat.id]
            out.append(view)
        return out

    def reset(self) -> None:
        """Drop every in-memory store; the next access reloads from disk."""
        self._stores.clear()

    # ── Read operations ───────────────────────────────────────────────

    async def list_workflows(self, repo_path=None):
        return ok(builtin_workflow_descriptors())

    async def list(self, filters=None, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        return ok(apply_filters(self._snapshot(store), filters))

    async def list_ready(self, filters=None, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        blocked = {
            e.blocked for e in store.edges
            if e.blocker in store.beats and store.beats[e.blocker].status != "closed"
        }
        items = [b for b in self._snapshot(store) if b.status == "open" and b.id not in blocked]
        return ok(apply_filters(items, filters))

    async def search(self, query, filters=None, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        items = [b for b in self._snapshot(store) if match_text(b, query)]
        return ok(apply_filters(items, filters))

    async def query(self, expression, options=None, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        items = [b for b in self._snapshot(store) if match_expression(b, expression)]
        if options is not None:
            items = sort_beats(items, options.sort)
            if options.limit:
                items = items[: options.limit]
        return ok(items)

    async def get(self, beat_id, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        if beat_id not in store.beats:
            return not_found(beat_id)
        view = copy.deepcopy(store.beats[beat_id])
        view.parent = resolve_parents(store.beats)[beat_id]
        return ok(view)

    # ── Write operations ──────────────────────────────────────────────

    async def create(self, data, repo_path=None):
        rp = self._resolve_path(repo_path)
        if data.profile_id and find_builtin_profile(data.profile_id) is None:
            return invalid_input(f"Unknown workflow profile: {data.profile_id}")
        store = self._ensure_loaded(rp)
        async with store.lock:
            beat_id = generate_id()
            while beat_id in store.beats:
                beat_id = generate_id()
            now = jsonl_store.iso_now()
            beat = Beat(
                id=beat_id,
                title=data.title,
                type=data.type,
                priority=data.priority,
                labels=dedupe_labels(data.labels),
                description=data.description,
                notes=data.notes,
                acceptance=data.acceptance,
                parent=data.parent,
                assignee=data.assignee,
                owner=data.owner,
                due=data.due,
                estimate=data.estimate,
                created=now,
                updated=now,
            )
            workflow = builtin_profile_descriptor(data.profile_id)
            if data.profile_id:
                beat.metadata["profileId"] = workflow.id
            apply_workflow_view(beat, workflow, workflow.initial_state)
            beat.status = map_workflow_state_to_compat_status(beat.state)
            store.beats[beat_id] = beat
            self._flush(rp, store)
        log.info("[BACKEND] Created beat %s: %s", beat_id, data.title)
        return ok({"id": beat_id})

    async def update(self, beat_id, data, repo_path=None):
        rp = self._resolve_path(repo_path)
        store = self._ensure_loaded(rp)
        async with store.lock:
            beat = store.beats.get(beat_id)
            if beat is None:
                return not_found(beat_id)
            workflow = builtin_profile_descriptor(beat.profile_id)
            if data.profile_id is not None:
                target = find_builtin_profile(data.profile_id)
                if target is None:
                    return invalid_input(f"Unknown workflow profile: {data.profile_id}")
                if target.id != normalize_profile_id(beat.profile_id):
                    workflow = target
                    beat.metadata["profileId"] = target.id

            for name in ("title", "type", "priority", "description", "notes",
                         "acceptance", "assignee", "owner", "due", "estimate"):
                value = getattr(data, name)
                if value is not None:
                    setattr(beat, name, value)
            if data.parent is not None:
                jsonl_store.set_explicit_parent(beat, data.parent)
            if data.labels:
                beat.labels = dedupe_labels(beat.labels + data.labels)
            if data.remove_labels:
                removed = set(data.remove_labels)
                beat.labels = [label for label in beat.labels if label not in removed]

            if data.state is not None:
                apply_workflow_view(beat, workflow, normalize_state_for_workflow(data.state, workflow))
                beat.status = data.status or map_workflow_state_to_compat_status(beat.state)
            elif data.status is not None:
                apply_workflow_view(beat, workflow, map_status_to_default_workflow_state(data.status, workflow))
                beat.status = data.status
            else:
                apply_workflow_view(beat, workflow, normalize_state_for_workflow(beat.state, workflow))
            if beat.status == "closed" and not beat.closed:
                beat.closed = jsonl_store.iso_now()
            beat.updated = jsonl_store.iso_now()
            self._refresh(store, beat_id)
            self._flush(rp, store)
        return ok()

    async def delete(self, beat_id, repo_path=None):
        rp = self._resolve_path(repo_path)
        store = self._ensure_loaded(rp)
        async with store.lock:
            if beat_id not in store.beats:
                return not_found(beat_id)
            del store.beats[beat_id]
            store.edges = [e for e in store.edges if beat_id not in (e.blocker, e.blocked)]
            self._flush(rp, store)
        return ok()

    async def close(self, beat_id, reason=None, repo_path=None):
        rp = self._resolve_path(repo_path)
        store = self._ensure_loaded(rp)
        async with store.lock:
            beat = store.beats.get(beat_id)
            if beat is None:
                return not_found(beat_id)
            workflow = builtin_profile_descriptor(beat.profile_id)
            apply_workflow_view(beat, workflow, map_status_to_default_workflow_state("closed", workflow))
            beat.status = "closed"
            now = jsonl_store.iso_now()
            beat.closed = now
            beat.updated = now
            jsonl_store.set_close_reason(beat, reason)
            self._refresh(store, beat_id)
            self._flush(rp, store)
        return ok()

    def _refresh(self, store: _RepoStore, beat_id: str) -> None:
        # Re-derive labels and runtime fields exactly as a reload would.
        store.beats[beat_id] = jsonl_store.normalize_record(
            jsonl_store.denormalize_beat(store.beats[beat_id])
        )

    # ── Dependency operations ─────────────────────────────────────────

    async def list_dependencies(self, beat_id, dep_type=None, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        if beat_id not in store.beats:
            return not_found(beat_id)
        if dep_type and dep_type != DependencyType.BLOCKS.value:
            return ok([])
        deps = [
            Dependency(
                id=e.blocked if e.blocker == beat_id else e.blocker,
                type=DependencyType.BLOCKS.value,
                source=e.blocker,
                target=e.blocked,
            )
            for e in store.edges if beat_id in (e.blocker, e.blocked)
        ]
        return ok(deps)

    async def add_dependency(self, blocker_id, blocked_id, repo_path=None):
        rp = self._resolve_path(repo_path)
        store = self._ensure_loaded(rp)
        async with store.lock:
            for beat_id in (blocker_id, blocked_id):
                if beat_id not in store.beats:
                    return not_found(beat_id)
            if any(e.blocker == blocker_id and e.blocked == blocked_id for e in store.edges):
                return fail(ErrorCode.ALREADY_EXISTS, f"Dependency {blocker_id} -> {blocked_id} already exists")
            store.edges.append(_Edge(blocker_id, blocked_id))
            self._flush(rp, store)
        return ok()

    async def remove_dependency(self, blocker_id, blocked_id, repo_path=None):
        rp = self._resolve_path(repo_path)
        store = self._ensure_loaded(rp)
        async with store.lock:
            before = len(store.edges)
            store.edges = [e for e in store.edges if not (e.blocker == blocker_id and e.blocked == blocked_id)]
            if len(store.edges) == before:
                return fail(ErrorCode.NOT_FOUND, f"Dependency {blocker_id} -> {blocked_id} not found")
            self._flush(rp, store)
        return ok()

    # ── Prompts ───────────────────────────────────────────────────────

    async def build_take_prompt(self, beat_id, options=None, repo_path=None):
        store = self._ensure_loaded(self._resolve_path(repo_path))
        beat = store.beats.get(beat_id)
        if beat is None:
            return not_found(beat_id)
        issues_file = jsonl_store.issues_path(self._resolve_path(repo_path))
        lines = [
            f"Beat ID: {beat.id}",
            f"Title: {beat.title}",
        ]
        if beat.description:
            lines += ["", "Description:", beat.description]
        if beat.acceptance:
            lines += ["", "Acceptance criteria:", beat.acceptance]
        if options and options.is_parent and options.child_ids:
            lines += ["", "Open child beat IDs:", *[f"- {child}" for child in options.child_ids]]
        lines += ["", f"Beats are stored in `{Path(issues_file)}` (one JSON record per line)."]
        return ok(TakePromptResult(prompt="\n".join(lines), claimed=False))

    async def build_poll_prompt(self, options=None, repo_path=None):
        ready = await self.list_ready(repo_path=repo_path)
        claimable = sorted(
            (b for b in ready.data if b.is_agent_claimable),
            key=lambda b: (b.priority, b.created),
        )
        if not claimable:
            return fail(ErrorCode.NOT_FOUND, "No agent-claimable beats are ready")
        take = await self.build_take_prompt(claimable[0].id, repo_path=repo_path)
        return ok(PollPromptResult(prompt=take.data.prompt, claimed_id=claimable[0].id))
