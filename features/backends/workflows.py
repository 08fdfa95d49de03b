"""
Workflow descriptors — builtin profiles and runtime state derivation.

A profile describes the six canonical steps (planning, plan review,
implementation, implementation review, shipment, shipment review), who
owns each one, and the queue/action states a beat moves through. A beat's
next action and whether an agent may claim it are derived from the
descriptor, never hardcoded per backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from models.schemas import OwnerKind

WF_STATE_LABEL_PREFIX = "wf:state:"
WF_PROFILE_LABEL_PREFIX = "wf:profile:"
DEFAULT_PROFILE_ID = "autopilot"

STEPS = (
    "planning",
    "plan_review",
    "implementation",
    "implementation_review",
    "shipment",
    "shipment_review",
)
_STEP_SET = set(STEPS)
_REVIEW_STEPS = {"plan_review", "implementation_review", "shipment_review"}
_PLANNING_STATES = {"ready_for_planning", "planning", "ready_for_plan_review", "plan_review"}

_TERMINAL_STATES = {"shipped", "abandoned", "closed"}
_LEGACY_TERMINAL = {"closed", "done", "approved"}
_LEGACY_RETAKE = {"retake", "retry", "rejected", "refining", "rework"}
_LEGACY_IN_PROGRESS = {"in_progress", "implementing", "implemented", "reviewing"}

_ALL_STATES = [
    "ready_for_planning",
    "planning",
    "ready_for_plan_review",
    "plan_review",
    "ready_for_implementation",
    "implementation",
    "ready_for_implementation_review",
    "implementation_review",
    "ready_for_shipment",
    "shipment",
    "ready_for_shipment_review",
    "shipment_review",
    "shipped",
    "deferred",
    "abandoned",
]

_CANONICAL_TRANSITIONS = [
    ("ready_for_planning", "planning"),
    ("planning", "ready_for_plan_review"),
    ("ready_for_plan_review", "plan_review"),
    ("plan_review", "ready_for_implementation"),
    ("plan_review", "ready_for_planning"),
    ("ready_for_implementation", "implementation"),
    ("implementation", "ready_for_implementation_review"),
    ("ready_for_implementation_review", "implementation_review"),
    ("implementation_review", "ready_for_shipment"),
    ("implementation_review", "ready_for_implementation"),
    ("ready_for_shipment", "shipment"),
    ("shipment", "ready_for_shipment_review"),
    ("ready_for_shipment_review", "shipment_review"),
    ("shipment_review", "shipped"),
    ("shipment_review", "ready_for_implementation"),
    ("shipment_review", "ready_for_shipment"),
    ("*", "deferred"),
    ("*", "abandoned"),
]

_PROFILE_ALIASES = {
    "beads-coarse": "autopilot",
    "beads-coarse-human-gated": "semiauto",
    "knots-granular": "autopilot",
    "knots-granular-autonomous": "autopilot",
    "knots-coarse": "semiauto",
    "knots-coarse-human-gated": "semiauto",
}


@dataclass
class WorkflowDescriptor:
    id: str
    label: str
    description: str
    initial_state: str
    states: list[str]
    terminal_states: list[str]
    retake_state: str
    owners: dict[str, str]
    transitions: list[tuple[str, str]] = field(default_factory=list)
    mode: str = "granular_autonomous"
    queue_states: list[str] = field(default_factory=list)
    action_states: list[str] = field(default_factory=list)
    review_queue_states: list[str] = field(default_factory=list)
    human_queue_states: list[str] = field(default_factory=list)

    @property
    def profile_id(self) -> str:
        return self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "profileId": self.id,
            "label": self.label,
            "description": self.description,
            "mode": self.mode,
            "initialState": self.initial_state,
            "states": list(self.states),
            "terminalStates": list(self.terminal_states),
            "retakeState": self.retake_state,
            "transitions": [{"from": a, "to": b} for a, b in self.transitions],
            "owners": dict(self.owners),
            "queueStates": list(self.queue_states),
            "actionStates": list(self.action_states),
            "reviewQueueStates": list(self.review_queue_states),
            "humanQueueStates": list(self.human_queue_states),
        }


@dataclass
class WorkflowRuntimeState:
    state: str
    compat_status: str
    next_action_state: str | None
    next_action_owner_kind: str
    requires_human_action: bool
    is_agent_claimable: bool


# ── Builtin profiles ─────────────────────────────────────────────────

_AGENT_OWNERS = {step: OwnerKind.AGENT.value for step in STEPS}
_SEMIAUTO_OWNERS = dict(
    _AGENT_OWNERS,
    plan_review=OwnerKind.HUMAN.value,
    implementation_review=OwnerKind.HUMAN.value,
)

# (id, description, planning skipped, owners)
_BUILTIN_PROFILES = [
    ("autopilot", "Agent-owned full flow with remote main output", False, _AGENT_OWNERS),
    ("autopilot_with_pr", "Agent-owned full flow with PR output", False, _AGENT_OWNERS),
    ("semiauto", "Human-gated plan and implementation reviews", False, _SEMIAUTO_OWNERS),
    ("autopilot_no_planning", "Agent-owned flow starting at implementation", True, _AGENT_OWNERS),
    ("autopilot_with_pr_no_planning", "Agent-owned flow with PR output and no planning", True, _AGENT_OWNERS),
    ("semiauto_no_planning", "Human-gated implementation review with skipped planning", True, _SEMIAUTO_OWNERS),
]


def _queue_to_step(state: str) -> str | None:
    if not state.startswith("ready_for_"):
        return None
    step = state[len("ready_for_"):]
    return step if step in _STEP_SET else None


def _build_descriptor(profile_id: str, description: str, skip_planning: bool,
                      owners: dict[str, str]) -> WorkflowDescriptor:
    states = [s for s in _ALL_STATES if not (skip_planning and s in _PLANNING_STATES)]
    state_set = set(states)
    transitions = {
        (a, b) for a, b in _CANONICAL_TRANSITIONS
        if (a == "*" or a in state_set) and b in state_set
    }
    if skip_planning:
        transitions.add(("ready_for_planning", "ready_for_implementation"))
    queue_states = [s for s in states if s.startswith("ready_for_")]
    human_queue = [s for s in queue_states if owners.get(_queue_to_step(s) or "") == OwnerKind.HUMAN.value]
    initial = "ready_for_implementation" if skip_planning else "ready_for_planning"
    return WorkflowDescriptor(
        id=profile_id,
        label=f"Workflow ({profile_id})",
        description=description,
        initial_state=initial,
        states=states,
        terminal_states=["shipped", "abandoned"],
        retake_state="ready_for_implementation",
        owners=dict(owners),
        transitions=sorted(transitions),
        mode="coarse_human_gated" if human_queue else "granular_autonomous",
        queue_states=queue_states,
        action_states=[s for s in states if s in _STEP_SET],
        review_queue_states=[s for s in queue_states if _queue_to_step(s) in _REVIEW_STEPS],
        human_queue_states=human_queue,
    )


_BUILTIN_BY_ID = {
    pid: _build_descriptor(pid, desc, skip, owners)
    for pid, desc, skip, owners in _BUILTIN_PROFILES
}


def builtin_workflow_descriptors() -> list[WorkflowDescriptor]:
    """Fresh copies of every builtin descriptor, in catalog order."""
    return [
        replace(d, states=list(d.states), transitions=list(d.transitions), owners=dict(d.owners))
        for d in _BUILTIN_BY_ID.values()
    ]


def normalize_profile_id(value: str | None) -> str | None:
    normalized = (value or "").strip().lower()
    if not normalized:
        return None
    return _PROFILE_ALIASES.get(normalized, normalized)


def find_builtin_profile(profile_id: str | None) -> WorkflowDescriptor | None:
    normalized = normalize_profile_id(profile_id)
    if normalized is None:
        return None
    return _BUILTIN_BY_ID.get(normalized)


def builtin_profile_descriptor(profile_id: str | None = None) -> WorkflowDescriptor:
    """Descriptor for ``profile_id``, falling back to the default profile."""
    return find_builtin_profile(profile_id) or _BUILTIN_BY_ID[DEFAULT_PROFILE_ID]


# ── Label helpers ────────────────────────────────────────────────────

def _normalize_state(value: str | None) -> str | None:
    normalized = (value or "").strip().lower()
    return normalized or None


def is_workflow_state_label(label: str) -> bool:
    return label.startswith(WF_STATE_LABEL_PREFIX)


def is_workflow_profile_label(label: str) -> bool:
    return label.startswith(WF_PROFILE_LABEL_PREFIX)


def extract_workflow_state_label(labels: list[str]) -> str | None:
    for label in labels:
        if is_workflow_state_label(label):
            state = _normalize_state(label[len(WF_STATE_LABEL_PREFIX):])
            if state:
                return state
    return None


def extract_workflow_profile_label(labels: list[str]) -> str | None:
    for label in labels:
        if is_workflow_profile_label(label):
            profile_id = normalize_profile_id(label[len(WF_PROFILE_LABEL_PREFIX):])
            if profile_id:
                return profile_id
    return None


def with_workflow_state_label(labels: list[str], state: str) -> list[str]:
    out = [label for label in labels if not is_workflow_state_label(label)]
    out.append(f"{WF_STATE_LABEL_PREFIX}{_normalize_state(state) or 'open'}")
    return list(dict.fromkeys(out))


def with_workflow_profile_label(labels: list[str], profile_id: str) -> list[str]:
    out = [label for label in labels if not is_workflow_profile_label(label)]
    out.append(f"{WF_PROFILE_LABEL_PREFIX}{normalize_profile_id(profile_id) or DEFAULT_PROFILE_ID}")
    return list(dict.fromkeys(out))


# ── State derivation ─────────────────────────────────────────────────

def _first_action_state(workflow: WorkflowDescriptor) -> str:
    if workflow.action_states:
        return workflow.action_states[0]
    return "implementation" if "implementation" in workflow.states else "in_progress"


def _terminal_state_for_status(status: str, workflow: WorkflowDescriptor) -> str:
    if status == "deferred":
        return "deferred"
    if "shipped" in workflow.states:
        return "shipped"
    return workflow.terminal_states[0] if workflow.terminal_states else "closed"


def map_workflow_state_to_compat_status(state: str | None) -> str:
    """Collapse a workflow state onto the five-value compat status."""
    normalized = _normalize_state(state)
    if not normalized:
        return "open"
    if normalized == "deferred":
        return "deferred"
    if normalized in ("blocked", "rejected"):
        return "blocked"
    if normalized in _TERMINAL_STATES or normalized in _LEGACY_TERMINAL:
        return "closed"
    if normalized.startswith("ready_for_"):
        return "open"
    if normalized in _STEP_SET or normalized in _LEGACY_IN_PROGRESS:
        return "in_progress"
    return "open"


def map_status_to_default_workflow_state(status: str | None, workflow: WorkflowDescriptor) -> str:
    if status in ("closed", "deferred"):
        return _terminal_state_for_status(status, workflow)
    if status == "blocked":
        return workflow.retake_state
    if status == "in_progress":
        return _first_action_state(workflow)
    return workflow.initial_state


def normalize_state_for_workflow(state: str | None, workflow: WorkflowDescriptor) -> str:
    normalized = _normalize_state(state)
    if not normalized:
        return workflow.initial_state
    if normalized in workflow.states:
        return normalized
    if normalized in ("open", "idea", "work_item"):
        return workflow.initial_state
    if normalized in _LEGACY_IN_PROGRESS:
        return _first_action_state(workflow)
    if normalized in ("verification", "ready_for_review"):
        if "ready_for_implementation_review" in workflow.states:
            return "ready_for_implementation_review"
        return _first_action_state(workflow)
    if normalized in _LEGACY_RETAKE:
        return workflow.retake_state if workflow.retake_state in workflow.states else workflow.initial_state
    if normalized in _LEGACY_TERMINAL:
        return _terminal_state_for_status("closed", workflow)
    return workflow.initial_state


def derive_profile_id(labels: list[str] | None, metadata: dict[str, Any] | None = None) -> str:
    """Metadata wins, then a ``wf:profile:`` label, then the default profile."""
    for key in ("profileId", "workflowProfileId", "knotsProfileId"):
        value = (metadata or {}).get(key)
        if isinstance(value, str) and value.strip():
            normalized = normalize_profile_id(value)
            if normalized:
                return normalized
    return extract_workflow_profile_label(labels or []) or DEFAULT_PROFILE_ID


def derive_workflow_state(status: str | None, labels: list[str] | None,
                          workflow: WorkflowDescriptor | None = None) -> str:
    descriptor = workflow or builtin_profile_descriptor(DEFAULT_PROFILE_ID)
    labels = labels or []
    explicit = extract_workflow_state_label(labels)
    if explicit:
        return normalize_state_for_workflow(explicit, descriptor)
    if "stage:verification" in labels:
        return normalize_state_for_workflow("ready_for_implementation_review", descriptor)
    if "stage:retry" in labels:
        return normalize_state_for_workflow(descriptor.retake_state, descriptor)
    if status:
        return map_status_to_default_workflow_state(status, descriptor)
    return descriptor.initial_state


def _owner_kind(workflow: WorkflowDescriptor, step: str) -> str:
    if step not in _STEP_SET:
        return OwnerKind.NONE.value
    return workflow.owners.get(step, OwnerKind.AGENT.value)


def derive_workflow_runtime_state(workflow: WorkflowDescriptor, state: str | None) -> WorkflowRuntimeState:
    normalized = normalize_state_for_workflow(state, workflow)
    next_step = _queue_to_step(normalized) or (normalized if normalized in _STEP_SET else None)
    owner = _owner_kind(workflow, next_step) if next_step else OwnerKind.NONE.value
    return WorkflowRuntimeState(
        state=normalized,
        compat_status=map_workflow_state_to_compat_status(normalized),
        next_action_state=next_step,
        next_action_owner_kind=owner,
        requires_human_action=owner == OwnerKind.HUMAN.value,
        is_agent_claimable=normalized.startswith("ready_for_") and owner == OwnerKind.AGENT.value,
    )


def apply_workflow_view(beat, workflow: WorkflowDescriptor, state: str | None) -> None:
    """Populate a beat's profile and derived next-action fields in place."""
    runtime = derive_workflow_runtime_state(workflow, state)
    beat.profile_id = workflow.id
    beat.workflow_id = workflow.id
    beat.state = runtime.state
    beat.next_action_state = runtime.next_action_state
    beat.next_action_owner_kind = runtime.next_action_owner_kind
    beat.requires_human_action = runtime.requires_human_action
    beat.is_agent_claimable = runtime.is_agent_claimable
