"""
Shared data model for beats (work items) and their dependencies.

Every backend normalizes its store-native records into these dataclasses
before handing them to the orchestration and verification layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BeatType(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"
    MERGE_REQUEST = "merge-request"
    MOLECULE = "molecule"
    GATE = "gate"


class BeatStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"


class OwnerKind(str, Enum):
    HUMAN = "human"
    AGENT = "agent"
    NONE = "none"


class DependencyType(str, Enum):
    BLOCKS = "blocks"
    PARENT_CHILD = "parent-child"


BEAT_TYPES = {t.value for t in BeatType}
BEAT_STATUSES = {s.value for s in BeatStatus}
DEFAULT_PRIORITY = 2


@dataclass
class Beat:
    """A single trackable unit of engineering work."""
    id: str
    title: str
    type: str = BeatType.TASK.value
    status: str = BeatStatus.OPEN.value
    priority: int = DEFAULT_PRIORITY
    labels: list[str] = field(default_factory=list)
    description: str | None = None
    notes: str | None = None
    acceptance: str | None = None
    parent: str | None = None
    assignee: str | None = None
    owner: str | None = None
    due: str | None = None
    estimate: int | None = None
    created: str = ""
    updated: str = ""
    closed: str | None = None
    # Workflow runtime view
    state: str = ""
    profile_id: str = ""
    workflow_id: str = ""
    next_action_state: str | None = None
    next_action_owner_kind: str = OwnerKind.NONE.value
    requires_human_action: bool = False
    is_agent_claimable: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Dependency:
    """A directed edge between two beats.

    For ``blocks`` edges ``source`` is the blocker and ``target`` the blocked
    beat; for ``parent-child`` edges ``source`` is the parent.
    """
    id: str
    type: str = DependencyType.BLOCKS.value
    source: str = ""
    target: str = ""


@dataclass
class BeatFilters:
    type: str | None = None
    status: str | None = None
    state: str | None = None
    priority: int | None = None
    label: str | None = None
    assignee: str | None = None
    owner: str | None = None
    parent: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class QueryOptions:
    limit: int = 50
    sort: str | None = None


@dataclass
class CreateBeatInput:
    title: str
    type: str = BeatType.TASK.value
    priority: int = DEFAULT_PRIORITY
    labels: list[str] = field(default_factory=list)
    description: str | None = None
    notes: str | None = None
    acceptance: str | None = None
    parent: str | None = None
    assignee: str | None = None
    owner: str | None = None
    due: str | None = None
    estimate: int | None = None
    profile_id: str | None = None


@dataclass
class UpdateBeatInput:
    """Partial update; ``None`` means "leave unchanged"."""
    title: str | None = None
    type: str | None = None
    status: str | None = None
    state: str | None = None
    priority: int | None = None
    parent: str | None = None
    labels: list[str] | None = None
    remove_labels: list[str] | None = None
    description: str | None = None
    notes: str | None = None
    acceptance: str | None = None
    assignee: str | None = None
    owner: str | None = None
    due: str | None = None
    estimate: int | None = None
    profile_id: str | None = None


@dataclass
class TakePromptOptions:
    is_parent: bool = False
    child_ids: list[str] = field(default_factory=list)


@dataclass
class TakePromptResult:
    prompt: str
    claimed: bool = False


@dataclass
class PollPromptOptions:
    agent_name: str | None = None
    agent_model: str | None = None


@dataclass
class PollPromptResult:
    prompt: str
    claimed_id: str | None = None


def dedupe_labels(labels: list[str] | None) -> list[str]:
    """Trim, drop empties and deduplicate labels preserving first occurrence."""
    seen: set[str] = set()
    out: list[str] = []
    for label in labels or []:
        value = str(label).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
