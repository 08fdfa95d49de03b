"""Unit tests for the verification workflow and orchestrator."""

import asyncio

import pytest

from features.verification import ActionRelauncher, VerificationOrchestrator
from features.verification.orchestrator import PASS_CLOSE_REASON, VerificationEventType
from features.verification.workflow import (
    LABEL_STAGE_RETRY,
    LABEL_STAGE_VERIFICATION,
    LABEL_TRANSITION_VERIFICATION,
    VerificationLocks,
    VerificationOutcome,
    VerificationStage,
    current_stage,
    entry_delta,
    extract_attempts,
    extract_rejection_summary,
    parse_verifier_result,
    pass_delta,
    retry_delta,
)
from tests.fakes import FakeBackend, FakeSpawner, claude_result, claude_text
from utils.agent_adapter import AgentDescriptor


class RecordingRelauncher:
    def __init__(self):
        self.calls = []

    async def __call__(self, beat_ids, action, repo_path):
        self.calls.append((beat_ids, action, repo_path))


def _verifier(*texts: str, returncode: int = 0) -> dict:
    return {"lines": [*(claude_text(t) for t in texts), claude_result("")], "returncode": returncode}


def _orchestrator(backend, spawner, **kwargs) -> VerificationOrchestrator:
    kwargs.setdefault("max_retries", 3)
    return VerificationOrchestrator(
        backend_factory=lambda: backend,
        spawner=spawner,
        agent_factory=lambda: AgentDescriptor(command="claude"),
        enabled=True,
        **kwargs,
    )


def _types(orchestrator: VerificationOrchestrator) -> list[VerificationEventType]:
    return [e.type for e in orchestrator.events()]


# ── Label state machine ──────────────────────────────────────────────

def test_stage_detection():
    assert current_stage([]) == VerificationStage.IDLE
    assert current_stage([LABEL_STAGE_VERIFICATION]) == VerificationStage.VERIFYING
    assert current_stage([LABEL_STAGE_RETRY, "commit:abc"]) == VerificationStage.RETRY


def test_entry_is_idempotent_under_edit_lock():
    delta = entry_delta([LABEL_STAGE_RETRY])
    assert delta.add == [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION]
    assert delta.remove == [LABEL_STAGE_RETRY]
    assert entry_delta([LABEL_TRANSITION_VERIFICATION]).empty


def test_retry_delta_drops_commit_and_bumps_attempts():
    labels = [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION, "commit:abc", "attempt:2", "keep"]
    delta = retry_delta(labels)
    assert delta.add == [LABEL_STAGE_RETRY, "attempts:3"]
    assert set(delta.remove) == {LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION, "commit:abc", "attempt:2"}


def test_pass_delta_clears_only_stage_labels():
    delta = pass_delta([LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION, "commit:abc"])
    assert delta.add == []
    assert delta.remove == [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION]


def test_attempt_parsing():
    assert extract_attempts(["attempts:4"]) == 4
    assert extract_attempts(["attempts:x"]) == 0
    assert extract_attempts([]) == 0


def test_result_parsing_and_summary():
    output = "Looked around.\nREJECTION_SUMMARY: first\nREJECTION_SUMMARY: Missing tests.\nVERIFICATION_RESULT:fail-bugs"
    assert parse_verifier_result(output) == VerificationOutcome.FAIL_BUGS
    assert parse_verifier_result("no marker") is None
    assert extract_rejection_summary(output) == "Missing tests."
    assert extract_rejection_summary("Broken build\nVERIFICATION_RESULT:fail-requirements") == "Broken build"
    assert extract_rejection_summary("x" * 50, max_chars=10) == "...(truncated)\n" + "x" * 10


def test_dedup_lock_expires():
    locks = VerificationLocks(timeout=60)
    assert locks.acquire("bd-1")
    assert not locks.acquire("bd-1")
    assert locks.is_locked("bd-1")
    locks.release("bd-1")
    assert not locks.is_locked("bd-1")

    stale = VerificationLocks(timeout=0)
    assert stale.acquire("bd-1")
    assert stale.acquire("bd-1")


# ── Orchestrator ─────────────────────────────────────────────────────

@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.add("bd-1", "Login form", labels=["commit:abc123"], description="Add a login form")
    return fake


async def test_pass_closes_beat_and_clears_stage(backend, repo):
    spawner = FakeSpawner(_verifier("Everything checks out.\nVERIFICATION_RESULT:pass"))
    orchestrator = _orchestrator(backend, spawner)

    assert await orchestrator.run_workflow("bd-1", "take", repo) is True

    beat = backend.beats["bd-1"]
    assert beat.status == "closed"
    assert backend.closed_reasons["bd-1"] == PASS_CLOSE_REASON
    assert beat.labels == ["commit:abc123"]
    entry_update = backend.calls_of("update")[0][2]
    assert entry_update.status == "in_progress"
    assert entry_update.labels == [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION]

    argv, cwd = spawner.calls[0]
    assert cwd == repo
    assert "Commit: abc123" in argv[argv.index("-p") + 1]
    assert _types(orchestrator) == [
        VerificationEventType.QUEUED,
        VerificationEventType.VERIFIER_STARTED,
        VerificationEventType.VERIFIER_COMPLETED,
        VerificationEventType.CLOSED,
    ]
    assert not orchestrator.locks.is_locked("bd-1")


async def test_failure_moves_to_retry_and_relaunches(backend, repo):
    backend.beats["bd-1"].labels.append("attempts:1")
    backend.beats["bd-1"].notes = "Earlier note"
    relauncher = RecordingRelauncher()
    spawner = FakeSpawner(_verifier("REJECTION_SUMMARY: Missing tests.\nVERIFICATION_RESULT:fail-requirements"))
    orchestrator = _orchestrator(backend, spawner, relauncher=relauncher)

    await orchestrator.run_workflow("bd-1", "take", repo)

    beat = backend.beats["bd-1"]
    assert sorted(beat.labels) == ["attempts:2", LABEL_STAGE_RETRY]
    assert beat.status == "open"
    assert beat.notes.startswith("Earlier note\n---\n**Verification attempt 2 failed (")
    assert "reason: fail-requirements" in beat.notes
    assert beat.notes.endswith("\n\nMissing tests.")
    assert relauncher.calls == [(["bd-1"], "take", repo)]
    assert _types(orchestrator)[-3:] == [
        VerificationEventType.RETRY,
        VerificationEventType.NOTES_UPDATED,
        VerificationEventType.RETRY_SESSION_STARTED,
    ]


async def test_retry_budget_exhausted_skips_relaunch(backend, repo):
    backend.beats["bd-1"].labels.append("attempts:2")
    relauncher = RecordingRelauncher()
    spawner = FakeSpawner(_verifier("VERIFICATION_RESULT:fail-bugs"))
    orchestrator = _orchestrator(backend, spawner, relauncher=relauncher, max_retries=2)

    await orchestrator.run_workflow("bd-1", "take", repo)

    assert "attempts:3" in backend.beats["bd-1"].labels
    assert relauncher.calls == []


async def test_missing_commit_goes_straight_to_retry(backend, repo):
    backend.beats["bd-1"].labels = []
    spawner = FakeSpawner()
    orchestrator = _orchestrator(backend, spawner)

    await orchestrator.run_workflow("bd-1", "take", repo)

    assert spawner.calls == []
    assert sorted(backend.beats["bd-1"].labels) == ["attempts:1", LABEL_STAGE_RETRY]
    assert VerificationEventType.MISSING_COMMIT in _types(orchestrator)


async def test_no_marker_with_clean_exit_is_implicit_pass(backend, repo):
    spawner = FakeSpawner(_verifier("Looks fine to me."))
    orchestrator = _orchestrator(backend, spawner)
    await orchestrator.run_workflow("bd-1", "take", repo)
    assert backend.beats["bd-1"].status == "closed"
    assert orchestrator.events()[-2].detail == "outcome=pass (implicit)"


async def test_verifier_crash_moves_to_retry(backend, repo):
    spawner = FakeSpawner(_verifier("partial output", returncode=1))
    orchestrator = _orchestrator(backend, spawner)
    await orchestrator.run_workflow("bd-1", "take", repo)

    labels = backend.beats["bd-1"].labels
    assert LABEL_STAGE_RETRY in labels
    assert LABEL_TRANSITION_VERIFICATION not in labels
    errors = [e for e in orchestrator.events() if e.type == VerificationEventType.ERROR]
    assert "no result marker" in errors[0].detail


async def test_spawn_failure_moves_to_retry(backend, repo):
    spawner = FakeSpawner({"raise": FileNotFoundError(2, "No such file", "claude")})
    orchestrator = _orchestrator(backend, spawner)
    await orchestrator.run_workflow("bd-1", "take", repo)
    assert LABEL_STAGE_RETRY in backend.beats["bd-1"].labels
    assert not orchestrator.locks.is_locked("bd-1")


async def test_missing_beat_is_logged_and_released(repo):
    orchestrator = _orchestrator(FakeBackend(), FakeSpawner())
    assert await orchestrator.run_workflow("bd-404", "take", repo) is True
    assert _types(orchestrator) == [VerificationEventType.QUEUED, VerificationEventType.ERROR]
    assert not orchestrator.locks.is_locked("bd-404")


async def test_concurrent_triggers_are_deduped(backend, repo):
    spawner = FakeSpawner(_verifier("VERIFICATION_RESULT:pass"), _verifier("VERIFICATION_RESULT:pass"))
    orchestrator = _orchestrator(backend, spawner)

    results = await asyncio.gather(
        orchestrator.run_workflow("bd-1", "take", repo),
        orchestrator.run_workflow("bd-1", "take", repo),
    )

    assert sorted(results) == [False, True]
    assert len(spawner.calls) == 1
    assert backend.beats["bd-1"].status == "closed"


async def test_late_trigger_leaves_closed_beat_alone(backend, repo):
    backend.beats["bd-1"].status = "closed"
    spawner = FakeSpawner(_verifier("VERIFICATION_RESULT:pass"))
    orchestrator = _orchestrator(backend, spawner)

    assert await orchestrator.run_workflow("bd-1", "take", repo) is True
    assert spawner.calls == []
    assert backend.calls_of("update") == []
    assert backend.beats["bd-1"].status == "closed"


async def test_existing_edit_lock_skips_entry_update(backend, repo):
    backend.beats["bd-1"].labels += [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION]
    backend.beats["bd-1"].status = "in_progress"
    orchestrator = _orchestrator(backend, FakeSpawner(_verifier("VERIFICATION_RESULT:pass")))
    await orchestrator.run_workflow("bd-1", "take", repo)
    first_update = backend.calls_of("update")[0][2]
    assert first_update.labels is None
    assert first_update.remove_labels == [LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION]


@pytest.mark.parametrize("action, exit_code, enabled", [
    ("poll", 0, True),
    ("take", 1, True),
    ("take", None, True),
    ("take", 0, False),
])
async def test_agent_complete_ignores_ineligible_runs(backend, repo, action, exit_code, enabled):
    spawner = FakeSpawner()
    orchestrator = _orchestrator(backend, spawner)
    orchestrator.enabled = enabled
    await orchestrator.on_agent_complete(["bd-1"], action, repo, exit_code)
    assert backend.calls == []
    assert orchestrator.events() == []


async def test_agent_complete_verifies_each_beat(backend, repo):
    backend.add("bd-2", "Signup", labels=["commit:def456"])
    spawner = FakeSpawner(_verifier("VERIFICATION_RESULT:pass"), _verifier("VERIFICATION_RESULT:pass"))
    orchestrator = _orchestrator(backend, spawner)
    await orchestrator.on_agent_complete(["bd-1", "bd-2"], "scene", repo, 0)
    assert sorted(backend.closed_reasons) == ["bd-1", "bd-2"]


def test_event_log_limit(backend):
    orchestrator = _orchestrator(backend, FakeSpawner())
    for i in range(5):
        orchestrator._log_event(VerificationEventType.QUEUED, f"bd-{i}")
    assert [e.beat_id for e in orchestrator.events(limit=2)] == ["bd-3", "bd-4"]
    assert orchestrator.events(limit=0) == []
    assert orchestrator.events()[0].to_dict()["type"] == "queued"


# ── Relauncher ───────────────────────────────────────────────────────

async def test_relauncher_reports_completion(backend, repo):
    completions = []

    async def on_complete(beat_ids, action, repo_path, exit_code):
        completions.append((beat_ids, action, repo_path, exit_code))

    spawner = FakeSpawner({"lines": [], "returncode": 0})
    relauncher = ActionRelauncher(
        on_complete, backend_factory=lambda: backend, spawner=spawner,
        agent_factory=lambda: AgentDescriptor(command="claude"),
    )
    await relauncher(["bd-1"], "take", repo)
    await relauncher.wait_idle()

    argv, _ = spawner.calls[0]
    assert argv[argv.index("-p") + 1] == "Beat ID: bd-1"
    assert completions == [(["bd-1"], "take", repo, 0)]


async def test_scene_relaunch_prompt_covers_every_beat(backend, repo):
    backend.add("bd-2", "Signup")
    relauncher = ActionRelauncher(None, backend_factory=lambda: backend)
    prompt = await relauncher.build_prompt(["bd-1", "bd-2"], "scene", repo)
    assert prompt.startswith("Scene with 2 beats.")
    assert "Beat ID: bd-1" in prompt and "Beat ID: bd-2" in prompt
