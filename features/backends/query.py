"""
In-memory filtering for backends that hold beats client-side.

The query mini-language is a whitespace-separated list of ``field:value``
terms that must all match. Unrecognized fields always match.
"""

from __future__ import annotations

from typing import Callable

from models.schemas import Beat, BeatFilters

_MATCHERS: dict[str, Callable[[Beat, str], bool]] = {
    "status": lambda b, v: b.status == v,
    "state": lambda b, v: b.state == v,
    "workflow": lambda b, v: b.workflow_id == v,
    "profile": lambda b, v: b.profile_id == v,
    "type": lambda b, v: b.type == v,
    "priority": lambda b, v: str(b.priority) == v,
    "assignee": lambda b, v: b.assignee == v,
    "label": lambda b, v: v in b.labels,
    "owner": lambda b, v: b.owner == v,
    "parent": lambda b, v: b.parent == v,
    "id": lambda b, v: b.id == v,
}


def parse_terms(expression: str) -> list[tuple[str, str]]:
    terms = []
    for raw in (expression or "").split():
        name, sep, value = raw.partition(":")
        if not sep or not name or not value:
            continue
        terms.append((name.lower(), value))
    return terms


def match_expression(beat: Beat, expression: str) -> bool:
    for name, value in parse_terms(expression):
        matcher = _MATCHERS.get(name)
        if matcher is not None and not matcher(beat, value):
            return False
    return True


def apply_filters(beats: list[Beat], filters: BeatFilters | None) -> list[Beat]:
    if filters is None:
        return list(beats)
    out = []
    for beat in beats:
        if filters.type and beat.type != filters.type:
            continue
        if filters.status and beat.status != filters.status:
            continue
        if filters.state and beat.state != filters.state:
            continue
        if filters.priority is not None and beat.priority != filters.priority:
            continue
        if filters.label and filters.label not in beat.labels:
            continue
        if filters.assignee and beat.assignee != filters.assignee:
            continue
        if filters.owner and beat.owner != filters.owner:
            continue
        if filters.parent and beat.parent != filters.parent:
            continue
        out.append(beat)
    return out


def match_text(beat: Beat, query: str) -> bool:
    needle = (query or "").strip().lower()
    if not needle:
        return True
    haystack = " ".join(filter(None, [beat.id, beat.title, beat.description, beat.notes]))
    return needle in haystack.lower()


def sort_beats(beats: list[Beat], sort: str | None) -> list[Beat]:
    """Sort by ``field`` or ``-field`` / ``field:desc``; unknown fields keep order.

    Beats without a value for the field go last in either direction.
    """
    if not sort:
        return beats
    key = sort.strip()
    descending = False
    if key.startswith("-"):
        key, descending = key[1:], True
    elif key.endswith(":desc"):
        key, descending = key[: -len(":desc")], True
    elif key.endswith(":asc"):
        key = key[: -len(":asc")]
    if key not in ("priority", "created", "updated", "title", "id"):
        return beats
    present = [b for b in beats if getattr(b, key) is not None]
    missing = [b for b in beats if getattr(b, key) is None]
    return sorted(present, key=lambda b: getattr(b, key), reverse=descending) + missing
