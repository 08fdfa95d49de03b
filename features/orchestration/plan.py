"""
Plan normalization — turns the planner's loosely-shaped JSON into plan models.

Wave beat lists may hold bare ids or ``{id, title}`` objects; both are
accepted and de-duplicated by id. Titles fall back to the caller-known
title, then to the id itself. An id is claimed by the first wave (in index
order) that lists it, and ``unassigned_beat_ids`` never repeats a claimed id.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from features.orchestration.models import (
    AgentSpec,
    OrchestrationError,
    OrchestrationPlan,
    OrchestrationWave,
    WaveBeat,
)
from features.orchestration.prompt import PLAN_JSON_TAG

log = logging.getLogger(__name__)

_TAGGED_PLAN = re.compile(
    rf"<{PLAN_JSON_TAG}>\s*(.*?)\s*</{PLAN_JSON_TAG}>", re.IGNORECASE | re.DOTALL,
)
DEFAULT_WAVE_OBJECTIVE = "Execute assigned beats for this scene."


def _to_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(1, math.floor(number))


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def normalize_agents(raw: Any) -> list[AgentSpec]:
    if not isinstance(raw, list):
        return []
    agents = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = _clean_str(item.get("role"))
        if not role:
            continue
        agents.append(AgentSpec(role=role, count=_to_int(item.get("count"), 1),
                                specialty=_clean_str(item.get("specialty"))))
    return agents


def _raw_wave_beats(obj: dict[str, Any]) -> tuple[list[str], dict[str, str]]:
    ids: dict[str, None] = {}
    titles: dict[str, str] = {}
    for key in ("bead_ids", "beat_ids"):
        for value in obj.get(key) or []:
            beat_id = _clean_str(value)
            if beat_id:
                ids.setdefault(beat_id, None)
    for key in ("beads", "beats"):
        for value in obj.get(key) or []:
            if isinstance(value, dict):
                beat_id = _clean_str(value.get("id"))
                if not beat_id:
                    continue
                ids.setdefault(beat_id, None)
                title = _clean_str(value.get("title"))
                if title:
                    titles[beat_id] = title
            else:
                beat_id = _clean_str(value)
                if beat_id:
                    ids.setdefault(beat_id, None)
    return list(ids), titles


def normalize_wave(raw: Any, fallback_index: int, known_titles: dict[str, str]) -> OrchestrationWave | None:
    if not isinstance(raw, dict):
        return None
    index = _to_int(raw.get("wave_index", raw.get("waveIndex", raw.get("index"))), fallback_index)
    ids, explicit_titles = _raw_wave_beats(raw)
    beats = [WaveBeat(id=i, title=explicit_titles.get(i) or known_titles.get(i) or i) for i in ids]
    known = [b for b in beats if b.id in known_titles]
    return OrchestrationWave(
        wave_index=index,
        name=_clean_str(raw.get("name")) or f"Scene {index}",
        objective=_clean_str(raw.get("objective")) or DEFAULT_WAVE_OBJECTIVE,
        agents=normalize_agents(raw.get("agents")),
        # Layout-only plans (no known ids at all) keep their raw ids.
        beats=known or beats,
        notes=_clean_str(raw.get("notes")),
    )


def _claim(waves: list[OrchestrationWave]) -> set[str]:
    claimed: set[str] = set()
    for wave in waves:
        kept = []
        for beat in wave.beats:
            if beat.id in claimed:
                continue
            claimed.add(beat.id)
            kept.append(beat)
        wave.beats = kept
    return claimed


def _unassigned(listed: list[str], known_ids: list[str], claimed: set[str]) -> list[str]:
    result: dict[str, None] = {}
    for beat_id in [*listed, *known_ids]:
        if beat_id not in claimed:
            result.setdefault(beat_id, None)
    return list(result)


def normalize_plan(raw: Any, known_titles: dict[str, str]) -> OrchestrationPlan | None:
    if not isinstance(raw, dict):
        return None
    waves = []
    next_index = 1
    for item in raw.get("waves") or []:
        wave = normalize_wave(item, next_index, known_titles)
        if wave is None:
            continue
        waves.append(wave)
        next_index = max(next_index, wave.wave_index) + 1
    if not waves:
        return None
    waves.sort(key=lambda w: w.wave_index)
    claimed = _claim(waves)

    listed_raw = raw.get("unassigned_bead_ids", raw.get("unassigned_beat_ids")) or []
    listed = [i.strip() for i in listed_raw if isinstance(i, str) and i.strip()]
    assumptions = [a.strip() for a in raw.get("assumptions") or [] if isinstance(a, str) and a.strip()]
    return OrchestrationPlan(
        summary=_clean_str(raw.get("summary")) or f"Generated {len(waves)} scene{_plural(len(waves))}.",
        waves=waves,
        unassigned_beat_ids=_unassigned(listed, list(known_titles), claimed),
        assumptions=assumptions,
    )


def build_draft_plan(draft_waves: dict[int, OrchestrationWave], known_ids: list[str]) -> OrchestrationPlan:
    waves = [draft_waves[i] for i in sorted(draft_waves)]
    claimed = {beat.id for wave in waves for beat in wave.beats}
    return OrchestrationPlan(
        summary=f"Drafting {len(waves)} scene{_plural(len(waves))}...",
        waves=waves,
        unassigned_beat_ids=[i for i in known_ids if i not in claimed],
    )


def extract_plan_from_tagged_json(text: str, known_titles: dict[str, str]) -> OrchestrationPlan | None:
    """Parse the ``<orchestration_plan_json>`` block, if any, as a final plan."""
    match = _TAGGED_PLAN.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(1))
    except json.JSONDecodeError:
        log.warning("[ORCH] Tagged plan block is not valid JSON")
        return None
    return normalize_plan(parsed, known_titles)


def normalize_restaged_plan(raw: dict[str, Any], known_titles: dict[str, str]) -> OrchestrationPlan:
    """Keep only waves whose beats are currently eligible; raises if none survive."""
    waves = []
    for position, item in enumerate(sorted(
        (w for w in raw.get("waves") or [] if isinstance(w, dict)),
        key=lambda w: _to_int(w.get("wave_index", w.get("waveIndex")), 0),
    ), start=1):
        wave = normalize_wave(item, position, known_titles)
        if wave is None:
            continue
        wave.beats = [WaveBeat(b.id, known_titles[b.id]) for b in wave.beats if b.id in known_titles]
        waves.append(wave)
    claimed = _claim(waves)
    waves = [w for w in waves if w.beats]
    if not waves:
        raise OrchestrationError("Restaged plan has no beats currently eligible (open/in_progress/blocked).")

    listed_raw = raw.get("unassigned_beat_ids", raw.get("unassigned_bead_ids")) or []
    assumptions = [a.strip() for a in raw.get("assumptions") or [] if isinstance(a, str) and a.strip()]
    return OrchestrationPlan(
        summary=_clean_str(raw.get("summary")) or f"Restaged {len(waves)} scene{_plural(len(waves))}.",
        waves=waves,
        unassigned_beat_ids=[
            i for i in dict.fromkeys(listed_raw)
            if isinstance(i, str) and i in known_titles and i not in claimed
        ],
        assumptions=assumptions,
    )
