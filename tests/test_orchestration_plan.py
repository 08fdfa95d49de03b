"""Unit tests for plan normalization, prompt scope and wave slugs."""

import pytest

from features.orchestration.models import OrchestrationError
from features.orchestration.plan import (
    build_draft_plan,
    extract_plan_from_tagged_json,
    normalize_plan,
    normalize_restaged_plan,
    normalize_wave,
)
from features.orchestration.prompt import (
    PLAN_JSON_TAG,
    build_prompt,
    build_prompt_log,
    derive_prompt_scope,
    extract_objective_ids,
)
from features.orchestration.wave_slugs import (
    allocate_wave_slug,
    build_wave_slug_label,
    build_wave_title,
    extract_wave_slug,
    is_wave_container,
    normalize_slug,
)
from models.schemas import Beat

KNOWN = {"bd-1": "Schema", "bd-2": "API", "bd-3": "UI"}


# ── Plan normalization ───────────────────────────────────────────────

def test_wave_accepts_ids_and_objects_and_defaults():
    wave = normalize_wave(
        {"bead_ids": ["bd-1", "bd-1"], "beads": [{"id": "bd-2", "title": "Custom"}, "bd-3"],
         "agents": [{"role": "backend", "count": "2.7"}, {"count": 3}]},
        fallback_index=4, known_titles=KNOWN,
    )
    assert wave.wave_index == 4
    assert wave.name == "Scene 4"
    assert [(b.id, b.title) for b in wave.beats] == [("bd-1", "Schema"), ("bd-2", "Custom"), ("bd-3", "UI")]
    assert [(a.role, a.count) for a in wave.agents] == [("backend", 2)]


def test_wave_drops_unknown_ids_unless_none_are_known():
    mixed = normalize_wave({"bead_ids": ["bd-1", "zz-9"]}, 1, KNOWN)
    assert [b.id for b in mixed.beats] == ["bd-1"]
    layout = normalize_wave({"bead_ids": ["zz-9"]}, 1, KNOWN)
    assert [(b.id, b.title) for b in layout.beats] == [("zz-9", "zz-9")]


@pytest.mark.parametrize("raw", [0, -3, "abc", None, True, float("inf")])
def test_invalid_wave_index_falls_back(raw):
    assert normalize_wave({"wave_index": raw}, 7, KNOWN).wave_index == (1 if raw in (0, -3) else 7)


def test_plan_first_wave_claims_duplicates():
    plan = normalize_plan({
        "waves": [
            {"wave_index": 2, "bead_ids": ["bd-1", "bd-2"]},
            {"wave_index": 1, "bead_ids": ["bd-2"]},
        ],
    }, KNOWN)
    assert [w.wave_index for w in plan.waves] == [1, 2]
    assert [b.id for b in plan.waves[0].beats] == ["bd-2"]
    assert [b.id for b in plan.waves[1].beats] == ["bd-1"]
    assert plan.unassigned_beat_ids == ["bd-3"]
    assert plan.summary == "Generated 2 scenes."


def test_plan_unassigned_includes_listed_ids_once():
    plan = normalize_plan({
        "summary": "s",
        "waves": [{"bead_ids": ["bd-1"]}],
        "unassigned_bead_ids": ["bd-3", "bd-1", "ext-1"],
        "assumptions": ["  a  ", ""],
    }, KNOWN)
    assert plan.unassigned_beat_ids == ["bd-3", "ext-1", "bd-2"]
    assert plan.assumptions == ["a"]


def test_plan_without_waves_is_rejected():
    assert normalize_plan({"waves": []}, KNOWN) is None
    assert normalize_plan("nope", KNOWN) is None


def test_draft_plan_tracks_unclaimed():
    wave = normalize_wave({"wave_index": 1, "bead_ids": ["bd-1"]}, 1, KNOWN)
    draft = build_draft_plan({1: wave}, list(KNOWN))
    assert draft.summary == "Drafting 1 scene..."
    assert draft.unassigned_beat_ids == ["bd-2", "bd-3"]


def test_tagged_plan_extraction():
    text = f'thinking...\n<{PLAN_JSON_TAG}>\n{{"waves": [{{"bead_ids": ["bd-3"]}}]}}\n</{PLAN_JSON_TAG}>'
    plan = extract_plan_from_tagged_json(text, KNOWN)
    assert [b.id for b in plan.waves[0].beats] == ["bd-3"]
    assert extract_plan_from_tagged_json(f"<{PLAN_JSON_TAG}>not json</{PLAN_JSON_TAG}>", KNOWN) is None
    assert extract_plan_from_tagged_json("no tags here", KNOWN) is None


def test_restaged_plan_keeps_only_eligible_beats():
    plan = normalize_restaged_plan({
        "waves": [
            {"waveIndex": 2, "name": "Later", "beats": [{"id": "bd-2"}, {"id": "gone-1"}]},
            {"waveIndex": 1, "name": "Gone", "beats": [{"id": "gone-2"}]},
        ],
        "unassigned_beat_ids": ["bd-3", "gone-3"],
    }, KNOWN)
    assert [w.name for w in plan.waves] == ["Later"]
    assert [(b.id, b.title) for b in plan.waves[0].beats] == [("bd-2", "API")]
    assert plan.unassigned_beat_ids == ["bd-3"]


def test_restaged_plan_with_nothing_eligible_raises():
    with pytest.raises(OrchestrationError):
        normalize_restaged_plan({"waves": [{"beats": [{"id": "gone-1"}]}]}, KNOWN)


# ── Prompt scope ─────────────────────────────────────────────────────

def test_objective_ids_are_lowercased_and_deduped():
    assert extract_objective_ids("Finish BD-1, then bd-1.2 and bd-1") == ["bd-1", "bd-1.2"]
    assert extract_objective_ids("   ") == []


def test_prompt_scope_splits_resolved_and_unresolved():
    beats = [Beat(id="bd-2", title="API", priority=1), Beat(id="bd-1", title="Schema")]
    scope = derive_prompt_scope(beats, "do bd-2 bd-1 and bd-404")
    assert [s.id for s in scope.scoped] == ["bd-1", "bd-2"]
    assert scope.unresolved_ids == ["bd-404"]
    assert scope.has_explicit_scope

    prompt = build_prompt("/repo", scope, "do bd-2 bd-1 and bd-404")
    assert "- bd-2 [task, open, P1]: API" in prompt
    assert "- bd-404" in prompt
    assert f"<{PLAN_JSON_TAG}>" in prompt

    log_text = build_prompt_log(scope, "do it")
    assert log_text.startswith("prompt_initial | Orchestration prompt sent\nscope | bd-1, bd-2\n")
    assert "scope_unresolved | bd-404" in log_text


def test_prompt_without_scope_infers_from_objective():
    scope = derive_prompt_scope([Beat(id="bd-1", title="x")], None)
    assert not scope.has_explicit_scope
    assert "No explicit beat IDs were provided" in build_prompt("/repo", scope)
    assert "scope | inferred from objective" in build_prompt_log(scope, None)


# ── Wave slugs ───────────────────────────────────────────────────────

def test_slug_labels():
    assert normalize_slug("  Hanks -- Arrival!! ") == "hanks-arrival"
    assert build_wave_slug_label("Hanks Arrival") == "orchestration:wave:hanks-arrival"
    labels = ["orchestration:wave", "orchestration:wave:Pacino-Heat"]
    assert is_wave_container(labels)
    assert extract_wave_slug(labels) == "pacino-heat"
    assert not is_wave_container(["orchestration:wave:x"])


def test_allocate_prefers_free_preferred_slug():
    used = {"taken"}
    assert allocate_wave_slug(used, "Fresh Slug") == "fresh-slug"
    assert "fresh-slug" in used


def test_allocate_never_reuses_a_slug():
    used: set[str] = {"taken"}
    picked = [allocate_wave_slug(used, "taken", seed=42) for _ in range(50)]
    assert "taken" not in picked
    assert len(set(picked)) == 50


def test_wave_title():
    assert build_wave_title("hanks-arrival", " Foundations ") == "Scene hanks-arrival: Foundations"
    assert build_wave_title("hanks-arrival", "") == "Scene hanks-arrival"
