"""
Plan apply — materializes a finalized wave plan into the work-item store.

Waves are applied one at a time in ascending index order: create the epic
container, reparent and link each child, then chain it behind the previous
wave's container. Re-applying a plan is safe: "already exists" on a new
link and "not found" on removing a stale link are treated as no-ops.
"""

from __future__ import annotations

import logging
import re

from features.backends import BackendPort, ErrorCode
from features.backends.errors import BackendResult
from features.orchestration.models import (
    AgentSpec,
    ApplyOverrides,
    AppliedWave,
    ApplyResult,
    OrchestrationError,
    OrchestrationPlan,
    OrchestrationWave,
    WaveBeat,
)
from features.orchestration.wave_slugs import (
    ORCHESTRATION_WAVE_LABEL,
    allocate_wave_slug,
    build_wave_slug_label,
    build_wave_title,
    extract_wave_slug,
    is_legacy_numeric_slug,
    is_wave_container,
)
from models.schemas import DEFAULT_PRIORITY, Beat, CreateBeatInput, UpdateBeatInput

log = logging.getLogger(__name__)

_MISSING_DEP = re.compile(r"not found|no dependency|does not exist|doesn't exist|no such", re.IGNORECASE)
_EXISTING_DEP = re.compile(r"already exists|duplicate|exists", re.IGNORECASE)


def _is_missing_dependency(result: BackendResult) -> bool:
    return result.error.code == ErrorCode.NOT_FOUND or bool(_MISSING_DEP.search(result.error.message))


def _is_existing_dependency(result: BackendResult) -> bool:
    return result.error.code == ErrorCode.ALREADY_EXISTS or bool(_EXISTING_DEP.search(result.error.message))


def format_agent_plan(agents: list[AgentSpec]) -> str:
    if not agents:
        return "- 1 x generalist"
    return "\n".join(
        f"- {a.count} x {a.role}" + (f" ({a.specialty})" if a.specialty else "") for a in agents
    )


def build_wave_description(session_id: str, wave: OrchestrationWave, children: list[WaveBeat],
                           assumptions: list[str]) -> str:
    lines = [
        f"Generated by orchestration session {session_id}.",
        "",
        f"Objective: {wave.objective}",
        "",
        "Agent plan:",
        format_agent_plan(wave.agents),
        "",
        "Assigned beats:",
        *[f"- {child.id}: {child.title}" for child in children],
    ]
    if wave.notes:
        lines += ["", f"Notes: {wave.notes}"]
    if assumptions:
        lines += ["", "Assumptions:", *[f"- {a}" for a in assumptions]]
    return "\n".join(lines)


def wave_priority(children: list[WaveBeat], known: dict[str, Beat]) -> int:
    priorities = [known[c.id].priority for c in children if c.id in known and known[c.id].priority is not None]
    return min(priorities) if priorities else DEFAULT_PRIORITY


def _used_slugs(beats: list[Beat]) -> set[str]:
    used = set()
    for beat in beats:
        if not is_wave_container(beat.labels):
            continue
        slug = extract_wave_slug(beat.labels)
        if slug and not is_legacy_numeric_slug(slug):
            used.add(slug)
    return used


async def _reparent_child(backend: BackendPort, child: WaveBeat, wave_id: str,
                          known: dict[str, Beat], repo_path: str) -> str | None:
    """Move ``child`` under ``wave_id``; returns the parent it had before."""
    previous = known[child.id].parent if child.id in known else None

    updated = await backend.update(child.id, UpdateBeatInput(parent=wave_id), repo_path)
    if not updated.ok:
        raise OrchestrationError(updated.error.message or f"Failed to reparent {child.id}")

    refreshed = await backend.get(child.id, repo_path)
    if not refreshed.ok or refreshed.data.parent != wave_id:
        raise OrchestrationError(f"Failed to confirm {child.id} parent relationship to {wave_id}")
    if child.id in known:
        known[child.id].parent = wave_id

    if previous and previous != wave_id:
        removed = await backend.remove_dependency(previous, child.id, repo_path)
        if not removed.ok and not _is_missing_dependency(removed):
            raise OrchestrationError(
                removed.error.message or f"Failed to remove dependency {previous} -> {child.id}"
            )

    linked = await backend.add_dependency(wave_id, child.id, repo_path)
    if not linked.ok and not _is_existing_dependency(linked):
        raise OrchestrationError(linked.error.message or f"Failed to link scene {wave_id} to {child.id}")
    return previous


async def _close_emptied_sources(backend: BackendPort, session_id: str, source_ids: set[str],
                                 created_ids: set[str], repo_path: str) -> None:
    refreshed = await backend.list(None, repo_path)
    if not refreshed.ok:
        raise OrchestrationError(
            refreshed.error.message or "Failed to refresh beats before closing rewritten source scenes"
        )
    by_id = {b.id: b for b in refreshed.data}
    active_children: dict[str, int] = {}
    for beat in refreshed.data:
        if beat.parent and beat.status != "closed":
            active_children[beat.parent] = active_children.get(beat.parent, 0) + 1

    for parent_id in sorted(source_ids - created_ids):
        parent = by_id.get(parent_id)
        if parent is None or parent.status == "closed" or not is_wave_container(parent.labels):
            continue
        if active_children.get(parent_id, 0) > 0:
            continue
        closed = await backend.close(parent_id, f"Rewritten by orchestration session {session_id}", repo_path)
        if not closed.ok:
            raise OrchestrationError(closed.error.message or f"Failed to close emptied source scene {parent_id}")
        log.info("[ORCH] Closed emptied wave container %s", parent_id)


async def apply_plan(backend: BackendPort, session_id: str, plan: OrchestrationPlan,
                     known: dict[str, Beat], repo_path: str,
                     overrides: ApplyOverrides | None = None) -> ApplyResult:
    overrides = overrides or ApplyOverrides()
    result = ApplyResult()
    source_parent_ids: set[str] = set()
    created_ids: set[str] = set()
    previous_wave_id: str | None = None

    existing = await backend.list(None, repo_path)
    if not existing.ok:
        raise OrchestrationError(existing.error.message or "Failed to load existing scenes")
    used_slugs = _used_slugs(existing.data)

    for wave in sorted(plan.waves, key=lambda w: w.wave_index):
        children = [b for b in wave.beats if b.id in known]
        if not children:
            result.skipped.append(f"wave:{wave.wave_index}")
            continue

        key = str(wave.wave_index)
        name = (overrides.wave_names.get(key) or "").strip() or wave.name
        slug = allocate_wave_slug(used_slugs, overrides.wave_slugs.get(key))
        title = build_wave_title(slug, name)

        created = await backend.create(CreateBeatInput(
            title=title,
            type="epic",
            priority=wave_priority(children, known),
            labels=[ORCHESTRATION_WAVE_LABEL, build_wave_slug_label(slug)],
            description=build_wave_description(session_id, wave, children, plan.assumptions),
        ), repo_path)
        if not created.ok or not (created.data or {}).get("id"):
            message = created.error.message if created.error else ""
            raise OrchestrationError(message or f"Failed to create scene {wave.wave_index}")
        wave_id = created.data["id"]
        created_ids.add(wave_id)
        log.info("[ORCH] Created wave %d container %s (%s)", wave.wave_index, wave_id, slug)

        for child in children:
            previous = await _reparent_child(backend, child, wave_id, known, repo_path)
            if previous:
                source_parent_ids.add(previous)

        if previous_wave_id:
            chained = await backend.add_dependency(previous_wave_id, wave_id, repo_path)
            if not chained.ok:
                raise OrchestrationError(
                    chained.error.message or f"Failed to link scenes {previous_wave_id} -> {wave_id}"
                )
        previous_wave_id = wave_id

        result.applied.append(AppliedWave(
            wave_index=wave.wave_index,
            wave_id=wave_id,
            wave_slug=slug,
            wave_title=title,
            child_count=len(children),
            children=[WaveBeat(c.id, c.title) for c in children],
        ))

    if source_parent_ids:
        await _close_emptied_sources(backend, session_id, source_parent_ids, created_ids, repo_path)
    return result
