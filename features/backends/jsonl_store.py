"""
JSONL record format for the file-backed store.

One JSON object per line under ``.beads/issues.jsonl`` (snake_case,
tracker-native field names), plus a sibling ``deps.jsonl`` edge list.
``normalize_record`` / ``denormalize_beat`` translate between the on-disk
record and the shared ``Beat`` model; the pair round-trips every field
the store persists.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from features.backends.workflows import (
    apply_workflow_view,
    builtin_profile_descriptor,
    derive_profile_id,
    derive_workflow_state,
    map_workflow_state_to_compat_status,
    with_workflow_profile_label,
    with_workflow_state_label,
)
from models.schemas import BEAT_STATUSES, BEAT_TYPES, DEFAULT_PRIORITY, Beat

log = logging.getLogger(__name__)

ISSUES_FILE = Path(".beads") / "issues.jsonl"
DEPS_FILE = Path(".beads") / "deps.jsonl"

_KNOWN_FIELDS = {
    "id", "title", "description", "notes", "acceptance_criteria", "issue_type",
    "status", "priority", "labels", "assignee", "owner", "parent", "due",
    "estimated_minutes", "created_at", "updated_at", "closed_at", "close_reason",
    "metadata",
}
# Metadata keys used to carry record details that have no Beat field.
_META_CLOSE_REASON = "close_reason"
_META_EXTRA = "_jsonl_extra"
_META_PARENT_INFERRED = "_parent_inferred"


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def issues_path(repo_path: str | Path) -> Path:
    return Path(repo_path) / ISSUES_FILE


def deps_path(repo_path: str | Path) -> Path:
    return Path(repo_path) / DEPS_FILE


# ── Read / write ─────────────────────────────────────────────────────

def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Parse every well-formed object line; missing files read as empty."""
    if not path.exists():
        return []
    records = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            log.warning("Skipping malformed line %d in %s", lineno, path)
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def write_jsonl(path: Path, records: list[dict[str, Any]]) -> None:
    """Rewrite the whole file, creating its directory if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    body = "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in records)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(body, encoding="utf-8")
    tmp.replace(path)


# ── Record <-> Beat ──────────────────────────────────────────────────

def infer_parent(beat_id: str, explicit: Any = None) -> str | None:
    if isinstance(explicit, str) and explicit:
        return explicit
    head, dot, _ = beat_id.rpartition(".")
    return head if dot and head else None


def normalize_record(raw: dict[str, Any]) -> Beat:
    beat_id = str(raw["id"])
    raw_type = raw.get("issue_type") or raw.get("type") or "task"
    status = raw.get("status") or "open"
    if status not in BEAT_STATUSES:
        status = "open"
    priority = raw.get("priority", DEFAULT_PRIORITY)
    if not isinstance(priority, int) or not 0 <= priority <= 4:
        priority = DEFAULT_PRIORITY
    labels = [label for label in raw.get("labels") or [] if str(label).strip()]

    metadata = dict(raw.get("metadata") or {})
    if raw.get("close_reason") is not None:
        metadata[_META_CLOSE_REASON] = raw["close_reason"]
    extra = {k: v for k, v in raw.items() if k not in _KNOWN_FIELDS and k != "type"}
    if extra:
        metadata[_META_EXTRA] = extra
    parent = infer_parent(beat_id, raw.get("parent"))
    if parent and not raw.get("parent"):
        metadata[_META_PARENT_INFERRED] = True

    now = iso_now()
    beat = Beat(
        id=beat_id,
        title=str(raw.get("title", "")),
        type=raw_type if raw_type in BEAT_TYPES else "task",
        status=status,
        priority=priority,
        labels=labels,
        description=raw.get("description"),
        notes=raw.get("notes"),
        acceptance=raw.get("acceptance_criteria"),
        parent=parent,
        assignee=raw.get("assignee"),
        owner=raw.get("owner"),
        due=raw.get("due"),
        estimate=raw.get("estimated_minutes"),
        created=raw.get("created_at") or now,
        updated=raw.get("updated_at") or now,
        closed=raw.get("closed_at"),
        metadata=metadata,
    )
    workflow = builtin_profile_descriptor(derive_profile_id(labels, raw.get("metadata")))
    apply_workflow_view(beat, workflow, derive_workflow_state(status, labels, workflow))
    return beat


def denormalize_beat(beat: Beat) -> dict[str, Any]:
    workflow = builtin_profile_descriptor(beat.profile_id or beat.workflow_id)
    state = beat.state or workflow.initial_state
    labels = with_workflow_profile_label(with_workflow_state_label(beat.labels, state), workflow.id)

    metadata = dict(beat.metadata)
    close_reason = metadata.pop(_META_CLOSE_REASON, None)
    extra = metadata.pop(_META_EXTRA, None) or {}
    parent_inferred = metadata.pop(_META_PARENT_INFERRED, False)

    raw: dict[str, Any] = {
        "id": beat.id,
        "title": beat.title,
        "status": beat.status if beat.status in BEAT_STATUSES else map_workflow_state_to_compat_status(state),
        "priority": beat.priority,
        "issue_type": beat.type,
        "labels": labels,
        "created_at": beat.created,
        "updated_at": beat.updated,
    }
    optional = {
        "description": beat.description,
        "notes": beat.notes,
        "acceptance_criteria": beat.acceptance,
        "assignee": beat.assignee,
        "owner": beat.owner,
        "parent": None if parent_inferred else beat.parent,
        "due": beat.due,
        "estimated_minutes": beat.estimate,
        "closed_at": beat.closed,
        "close_reason": close_reason,
    }
    raw.update({k: v for k, v in optional.items() if v is not None})
    if metadata:
        raw["metadata"] = metadata
    raw.update(extra)
    return raw


def set_explicit_parent(beat: Beat, parent: str | None) -> None:
    """Record a caller-chosen parent so it is persisted on the next flush."""
    beat.metadata.pop(_META_PARENT_INFERRED, None)
    beat.parent = parent or None


def set_close_reason(beat: Beat, reason: str | None) -> None:
    if reason:
        beat.metadata[_META_CLOSE_REASON] = reason
