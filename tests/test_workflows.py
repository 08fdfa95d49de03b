"""Unit tests for workflow descriptors and runtime state derivation."""

from features.backends.workflows import (
    builtin_profile_descriptor,
    builtin_workflow_descriptors,
    derive_profile_id,
    derive_workflow_runtime_state,
    derive_workflow_state,
    map_status_to_default_workflow_state,
    map_workflow_state_to_compat_status,
    normalize_profile_id,
    normalize_state_for_workflow,
    with_workflow_state_label,
)


def test_builtin_catalog_order_and_copies():
    descriptors = builtin_workflow_descriptors()
    assert [d.id for d in descriptors] == [
        "autopilot",
        "autopilot_with_pr",
        "semiauto",
        "autopilot_no_planning",
        "autopilot_with_pr_no_planning",
        "semiauto_no_planning",
    ]
    descriptors[0].states.clear()
    assert builtin_workflow_descriptors()[0].states


def test_no_planning_profiles_start_at_implementation():
    workflow = builtin_profile_descriptor("autopilot_no_planning")
    assert workflow.initial_state == "ready_for_implementation"
    assert "planning" not in workflow.states
    assert ("ready_for_planning", "ready_for_implementation") in workflow.transitions


def test_semiauto_reviews_are_human_owned():
    workflow = builtin_profile_descriptor("semiauto")
    assert workflow.mode == "coarse_human_gated"
    runtime = derive_workflow_runtime_state(workflow, "ready_for_plan_review")
    assert runtime.requires_human_action is True
    assert runtime.is_agent_claimable is False


def test_autopilot_queue_state_is_agent_claimable():
    runtime = derive_workflow_runtime_state(builtin_profile_descriptor(), "ready_for_implementation")
    assert runtime.next_action_state == "implementation"
    assert runtime.next_action_owner_kind == "agent"
    assert runtime.is_agent_claimable is True
    assert runtime.compat_status == "open"


def test_action_state_is_in_progress_and_not_claimable():
    runtime = derive_workflow_runtime_state(builtin_profile_descriptor(), "implementation")
    assert runtime.compat_status == "in_progress"
    assert runtime.is_agent_claimable is False


def test_profile_aliases():
    assert normalize_profile_id("Beads-Coarse") == "autopilot"
    assert normalize_profile_id("knots-coarse-human-gated") == "semiauto"
    assert normalize_profile_id("  ") is None


def test_compat_status_mapping():
    assert map_workflow_state_to_compat_status("shipped") == "closed"
    assert map_workflow_state_to_compat_status("deferred") == "deferred"
    assert map_workflow_state_to_compat_status("rejected") == "blocked"
    assert map_workflow_state_to_compat_status("ready_for_shipment") == "open"
    assert map_workflow_state_to_compat_status(None) == "open"


def test_status_to_default_state():
    workflow = builtin_profile_descriptor()
    assert map_status_to_default_workflow_state("closed", workflow) == "shipped"
    assert map_status_to_default_workflow_state("blocked", workflow) == "ready_for_implementation"
    assert map_status_to_default_workflow_state("in_progress", workflow) == "planning"
    assert map_status_to_default_workflow_state("open", workflow) == "ready_for_planning"


def test_legacy_states_normalize():
    workflow = builtin_profile_descriptor()
    assert normalize_state_for_workflow("implementing", workflow) == "planning"
    assert normalize_state_for_workflow("retry", workflow) == "ready_for_implementation"
    assert normalize_state_for_workflow("verification", workflow) == "ready_for_implementation_review"
    assert normalize_state_for_workflow("done", workflow) == "shipped"
    assert normalize_state_for_workflow("bogus", workflow) == workflow.initial_state


def test_derive_state_prefers_explicit_label_then_stage_labels():
    workflow = builtin_profile_descriptor()
    assert derive_workflow_state("open", ["wf:state:shipment"], workflow) == "shipment"
    assert derive_workflow_state("open", ["stage:verification"], workflow) == "ready_for_implementation_review"
    assert derive_workflow_state("open", ["stage:retry"], workflow) == "ready_for_implementation"
    assert derive_workflow_state("closed", [], workflow) == "shipped"


def test_derive_profile_id_precedence():
    assert derive_profile_id(["wf:profile:semiauto"], {"profileId": "autopilot_with_pr"}) == "autopilot_with_pr"
    assert derive_profile_id(["wf:profile:semiauto"]) == "semiauto"
    assert derive_profile_id([]) == "autopilot"


def test_state_label_replaced_not_duplicated():
    labels = with_workflow_state_label(["wf:state:planning", "area:api"], "implementation")
    assert labels == ["area:api", "wf:state:implementation"]
