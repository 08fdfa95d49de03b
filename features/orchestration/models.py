"""
Data models for the orchestration feature.

A session asks a reasoning agent for a wave plan; waves group beats into
dependency-ordered batches that ``apply`` materializes as epic containers.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class OrchestrationError(Exception):
    """A fatal failure starting, running or applying a session."""


class SessionNotFoundError(OrchestrationError):
    def __init__(self, session_id: str):
        super().__init__(f"Orchestration session not found: {session_id}")
        self.session_id = session_id


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self != SessionStatus.RUNNING


class EventType(str, Enum):
    LOG = "log"
    PLAN = "plan"
    STATUS = "status"
    ERROR = "error"
    EXIT = "exit"


@dataclass
class AgentSpec:
    role: str
    count: int = 1
    specialty: str | None = None


@dataclass
class WaveBeat:
    id: str
    title: str


@dataclass
class OrchestrationWave:
    wave_index: int
    name: str
    objective: str
    agents: list[AgentSpec] = field(default_factory=list)
    beats: list[WaveBeat] = field(default_factory=list)
    notes: str | None = None


@dataclass
class OrchestrationPlan:
    summary: str
    waves: list[OrchestrationWave] = field(default_factory=list)
    unassigned_beat_ids: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OrchestrationSession:
    id: str
    repo_path: str
    status: SessionStatus = SessionStatus.RUNNING
    started_at: str = ""
    completed_at: str | None = None
    objective: str | None = None
    plan: OrchestrationPlan | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class OrchestrationEvent:
    type: EventType
    data: Any
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        data = self.data.to_dict() if isinstance(self.data, OrchestrationPlan) else self.data
        return {"type": self.type.value, "data": data, "timestamp": self.timestamp}


@dataclass
class ApplyOverrides:
    """Per-wave overrides keyed by the wave index as a string."""
    wave_names: dict[str, str] = field(default_factory=dict)
    wave_slugs: dict[str, str] = field(default_factory=dict)


@dataclass
class AppliedWave:
    wave_index: int
    wave_id: str
    wave_slug: str
    wave_title: str
    child_count: int
    children: list[WaveBeat] = field(default_factory=list)


@dataclass
class ApplyResult:
    applied: list[AppliedWave] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
