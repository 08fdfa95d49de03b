"""
Planner prompt — scope resolution and the wave-planning instructions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from models.schemas import Beat

PLAN_JSON_TAG = "orchestration_plan_json"

_BEAT_ID_PATTERN = re.compile(r"\b[a-z0-9]+-[a-z0-9]+(?:\.[0-9]+)*\b", re.IGNORECASE)


@dataclass
class ScopedBeat:
    id: str
    title: str
    type: str
    status: str
    priority: int


@dataclass
class PromptScope:
    scoped: list[ScopedBeat]
    unresolved_ids: list[str]

    @property
    def has_explicit_scope(self) -> bool:
        return bool(self.scoped or self.unresolved_ids)


def extract_objective_ids(objective: str | None) -> list[str]:
    """Lower-cased, de-duplicated beat-id mentions in order of appearance."""
    if not objective or not objective.strip():
        return []
    seen: dict[str, None] = {}
    for match in _BEAT_ID_PATTERN.findall(objective):
        seen.setdefault(match.strip().lower(), None)
    return list(seen)


def derive_prompt_scope(beats: list[Beat], objective: str | None) -> PromptScope:
    by_id = {beat.id.lower(): beat for beat in beats}
    scoped: list[ScopedBeat] = []
    unresolved: list[str] = []
    for beat_id in extract_objective_ids(objective):
        beat = by_id.get(beat_id)
        if beat is None:
            unresolved.append(beat_id)
            continue
        scoped.append(ScopedBeat(beat.id, beat.title, beat.type, beat.status, beat.priority))
    scoped.sort(key=lambda s: s.id)
    unresolved.sort()
    return PromptScope(scoped, unresolved)


def build_prompt(repo_path: str, scope: PromptScope, objective: str | None = None) -> str:
    objective = (objective or "").strip()
    lines = [
        "You are an orchestration planner for engineering work tracked as issues/work items.",
        "Create execution waves that respect dependencies while maximizing useful parallelism.",
        f"Repository: {repo_path}",
        f"Planning objective: {objective}" if objective
        else "Planning objective: Minimize lead time while keeping waves coherent.",
        "",
        "Scope guidance:",
        "Use the explicit work-item IDs below as the in-scope planning set." if scope.has_explicit_scope
        else "No explicit beat IDs were provided. Infer scope from the objective and inspect beats as needed.",
    ]
    lines += [f"- {b.id} [{b.type}, {b.status}, P{b.priority}]: {b.title}" for b in scope.scoped]
    if scope.unresolved_ids:
        lines.append("Objective mentioned IDs not present in open/in_progress/blocked work items:")
        lines += [f"- {beat_id}" for beat_id in scope.unresolved_ids]
    lines += [
        "",
        "Use your tracker CLI commands to inspect missing context instead of guessing.",
        "",
        "Hard rules:",
        "- Every in-scope beat ID must appear in exactly one wave or in unassigned_bead_ids.",
        "- If blocker -> blocked, blocker must be in an earlier wave than blocked when both are in-scope.",
        "- For each wave, propose agent roles and count. Specialty is optional but useful.",
        "- Keep wave names short and concrete.",
        "- Do not hide execution structure only in notes: emit separate waves whenever possible.",
        "- If planning a single in-scope beat, put it in wave 1 and use later waves with empty beat lists for downstream phases.",
        "",
        "Output protocol (strict):",
        "1) Emit NDJSON progress lines while thinking:",
        '   {"event":"thinking","text":"..."}',
        "2) Emit one draft line per wave:",
        '   {"event":"wave_draft","wave":{"wave_index":1,"name":"...","objective":"...","bead_ids":["..."],'
        '"agents":[{"role":"backend","count":2,"specialty":"api"}],"notes":"..."}}',
        "3) Emit one final line:",
        '   {"event":"plan_final","plan":{"summary":"...","waves":[{"wave_index":1,"name":"...","objective":"...",'
        '"beads":[{"id":"...","title":"..."}],"agents":[{"role":"...","count":1,"specialty":"..."}],"notes":"..."}],'
        '"unassigned_bead_ids":["..."],"assumptions":["..."]}}',
        "4) Immediately repeat only the final plan JSON between tags:",
        f"<{PLAN_JSON_TAG}>",
        "{...}",
        f"</{PLAN_JSON_TAG}>",
        "",
        "Do not wrap output in Markdown code fences.",
    ]
    return "\n".join(lines)


def build_prompt_log(scope: PromptScope, objective: str | None) -> str:
    summary = ", ".join(b.id for b in scope.scoped) if scope.scoped else "inferred from objective"
    lines = ["prompt_initial | Orchestration prompt sent", f"scope | {summary}"]
    if scope.unresolved_ids:
        lines.append(f"scope_unresolved | {', '.join(scope.unresolved_ids)}")
    if objective and objective.strip():
        lines.append(f"objective | {objective.strip()}")
    return "\n".join(lines) + "\n"
