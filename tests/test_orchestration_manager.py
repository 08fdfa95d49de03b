"""Unit tests for the orchestration session manager."""

import asyncio
import json

import pytest

from features.orchestration import OrchestrationError, OrchestrationManager, SessionNotFoundError, SessionStateError
from features.orchestration.manager import format_structured_log_line, summarize_result
from features.orchestration.models import ApplyOverrides, EventType, SessionStatus
from features.orchestration.prompt import PLAN_JSON_TAG
from tests.fakes import FakeBackend, FakeSpawner, claude_result, claude_text
from utils.agent_adapter import AgentDescriptor


def _plan_final(*waves: list[str]) -> str:
    return json.dumps({"event": "plan_final", "plan": {
        "summary": "Two steps",
        "waves": [{"wave_index": i, "name": f"W{i}", "bead_ids": ids} for i, ids in enumerate(waves, start=1)],
    }})


def _wave_draft(index: int, ids: list[str]) -> str:
    return json.dumps({"event": "wave_draft", "wave": {"wave_index": index, "bead_ids": ids}})


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.add("bd-1", "Schema")
    fake.add("bd-2", "API", status="in_progress")
    fake.add("bd-3", "Docs", status="closed")
    return fake


def _manager(backend, spawner, command: str = "claude") -> OrchestrationManager:
    return OrchestrationManager(
        backend_factory=lambda: backend,
        spawner=spawner,
        agent_factory=lambda: AgentDescriptor(command=command),
        drain_delay=0,
        cleanup_delay=60,
        abort_grace=0,
    )


async def _run(manager: OrchestrationManager, repo: str, objective: str | None = None):
    session = await manager.start(repo, objective)
    consumer = manager.get(session.id).consumer
    if consumer is not None:
        await consumer
    return session


async def _events(manager: OrchestrationManager, session_id: str):
    return [event async for event in manager.subscribe(session_id)]


# ── Helpers ──────────────────────────────────────────────────────────

def test_structured_log_line_rendering():
    rendered = format_structured_log_line('{"event":"thinking","text":"hmm","step":2}')
    assert rendered == "thinking | hmm\n  step: 2\n"
    assert format_structured_log_line("plain text") == "plain text\n"


def test_summarize_result():
    assert summarize_result("claude", "ok", False) == "claude orchestration complete"
    assert summarize_result("claude", "\n  boom\nmore", True) == "claude orchestration failed: boom"
    assert summarize_result("codex", None, True) == "codex orchestration failed"


# ── Sessions ─────────────────────────────────────────────────────────

async def test_plan_final_completes_session(backend, repo):
    spawner = FakeSpawner({"lines": [
        claude_text(f"{_wave_draft(1, ['bd-1'])}\n{_plan_final(['bd-1'], ['bd-2'])}"),
        claude_result("done"),
    ]})
    manager = _manager(backend, spawner)
    session = await _run(manager, repo)

    assert session.status == SessionStatus.COMPLETED
    assert [[b.id for b in w.beats] for w in session.plan.waves] == [["bd-1"], ["bd-2"]]
    assert session.plan.summary == "Two steps"
    assert spawner.calls[0][0][0] == "claude"
    assert spawner.calls[0][1] == repo

    events = await _events(manager, session.id)
    types = [e.type for e in events]
    assert types.count(EventType.PLAN) == 2
    assert types[-1] == EventType.EXIT
    assert types.count(EventType.EXIT) == 1
    assert events[0].data.startswith("prompt_initial")


async def test_closed_and_wave_container_beats_are_not_eligible(backend, repo):
    backend.add("wave-x", "Scene x", labels=["orchestration:wave"])
    manager = _manager(backend, FakeSpawner())
    session = await _run(manager, repo)
    assert set(manager.get(session.id).all_beats) == {"bd-1", "bd-2"}


async def test_tagged_result_is_fallback_plan(backend, repo):
    tagged = f'<{PLAN_JSON_TAG}>{{"waves": [{{"bead_ids": ["bd-2"]}}]}}</{PLAN_JSON_TAG}>'
    spawner = FakeSpawner({"lines": [
        claude_text(_wave_draft(1, ["bd-1"])),
        claude_result(f"Here is the plan\n{tagged}"),
    ]})
    session = await _run(_manager(backend, spawner), repo)
    assert session.status == SessionStatus.COMPLETED
    assert [b.id for b in session.plan.waves[0].beats] == ["bd-2"]


async def test_streamed_deltas_are_line_buffered(backend, repo):
    line = _plan_final(["bd-2", "bd-1"])
    head, tail = line[:20], line[20:]
    deltas = [
        json.dumps({"type": "stream_event", "event": {
            "type": "content_block_delta", "delta": {"type": "text_delta", "text": chunk},
        }})
        for chunk in (head, tail + "\n")
    ]
    spawner = FakeSpawner({"lines": [*deltas, claude_text(line), claude_result("ok")]})
    session = await _run(_manager(backend, spawner), repo)
    assert [b.id for b in session.plan.waves[0].beats] == ["bd-2", "bd-1"]


async def test_codex_dialect_messages_are_parsed(backend, repo):
    spawner = FakeSpawner({"lines": [
        json.dumps({"type": "thread.started"}),
        json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": _plan_final(["bd-1"])}}),
        json.dumps({"type": "turn.completed"}),
    ]})
    session = await _run(_manager(backend, spawner, command="/usr/bin/codex"), repo)
    assert session.status == SessionStatus.COMPLETED
    assert [b.id for b in session.plan.waves[0].beats] == ["bd-1"]
    assert spawner.calls[0][0][1] == "exec"


async def test_error_result_fails_session(backend, repo):
    spawner = FakeSpawner({"lines": [claude_result("rate limited\nretry later", is_error=True)], "returncode": 1})
    session = await _run(_manager(backend, spawner), repo)
    assert session.status == SessionStatus.ERROR
    assert session.error == "claude orchestration failed: rate limited"


async def test_nonzero_exit_without_result(backend, repo):
    spawner = FakeSpawner({"lines": ["not json"], "returncode": 2, "stderr": "boom\n"})
    manager = _manager(backend, spawner)
    session = await _run(manager, repo)
    assert session.status == SessionStatus.ERROR
    assert session.error == "claude exited (code=2, signal=null)"
    logs = [e.data for e in await _events(manager, session.id) if e.type == EventType.LOG]
    assert "boom\n" in logs


async def test_clean_exit_without_result_completes(backend, repo):
    session = await _run(_manager(backend, FakeSpawner({"lines": [], "returncode": 0})), repo)
    assert session.status == SessionStatus.COMPLETED
    assert session.plan is None


async def test_spawn_failure_finalizes_with_error(backend, repo):
    spawner = FakeSpawner({"raise": FileNotFoundError(2, "No such file", "claude")})
    manager = _manager(backend, spawner)
    session = await manager.start(repo)
    assert session.status == SessionStatus.ERROR
    assert session.error.startswith("Failed to start claude")
    events = await _events(manager, session.id)
    assert events[-1].type == EventType.EXIT


async def test_start_without_eligible_beats_raises(repo):
    with pytest.raises(OrchestrationError):
        await _manager(FakeBackend(), FakeSpawner()).start(repo)


async def test_abort_terminates_and_emits_single_exit(backend, repo):
    spawner = FakeSpawner({"lines": [], "returncode": None})
    manager = _manager(backend, spawner)
    session = await manager.start(repo)
    await asyncio.sleep(0.01)
    assert session.status == SessionStatus.RUNNING

    assert manager.abort(session.id) is True
    await manager.get(session.id).consumer
    assert spawner.handles[0].terminated
    assert session.status == SessionStatus.ABORTED
    assert manager.abort(session.id) is False

    events = await _events(manager, session.id)
    assert [e.type for e in events].count(EventType.EXIT) == 1
    assert events[-2].type == EventType.ERROR


async def test_live_subscriber_receives_events_until_exit(backend, repo):
    spawner = FakeSpawner({"lines": [], "returncode": None})
    manager = _manager(backend, spawner)
    session = await manager.start(repo)
    collected = asyncio.create_task(_events(manager, session.id))
    await asyncio.sleep(0.01)
    manager.abort(session.id)
    events = await asyncio.wait_for(collected, timeout=1)
    assert events[-1].type == EventType.EXIT


async def test_unknown_session(backend):
    manager = _manager(backend, FakeSpawner())
    with pytest.raises(SessionNotFoundError):
        manager.get("orch-missing")


async def test_apply_refuses_running_or_planless_sessions(backend, repo):
    spawner = FakeSpawner({"lines": [claude_text(_plan_final(["bd-1"]))], "returncode": None})
    manager = _manager(backend, spawner)
    session = await manager.start(repo)
    await asyncio.sleep(0.01)
    assert session.plan is not None
    with pytest.raises(SessionStateError, match="still running"):
        await manager.apply(session.id, repo)
    manager.abort(session.id)

    planless = await _run(manager, repo)
    assert planless.status == SessionStatus.COMPLETED
    with pytest.raises(SessionStateError, match="No orchestration plan"):
        await manager.apply(planless.id, repo)


async def test_restage_then_apply(backend, repo):
    manager = _manager(backend, FakeSpawner())
    session = await manager.restage(repo, {
        "waves": [{"wave_index": 1, "name": "Only", "beats": [{"id": "bd-2"}]}],
    }, objective="  ")
    assert session.status == SessionStatus.COMPLETED
    assert session.objective is None

    result = await manager.apply(session.id, repo)
    assert [w.child_count for w in result.applied] == [1]
    assert backend.beats["bd-2"].parent == result.applied[0].wave_id


# ── Apply ────────────────────────────────────────────────────────────

async def test_apply_creates_links_and_chains_waves(backend, repo):
    backend.add("old-wave", "Scene old", type="epic", labels=["orchestration:wave", "orchestration:wave:old"])
    backend.beats["bd-1"].parent = "old-wave"
    backend.beats["bd-1"].priority = 1
    manager = _manager(backend, FakeSpawner())
    session = await manager.restage(repo, {"waves": [
        {"wave_index": 1, "name": "First", "beats": [{"id": "bd-1"}]},
        {"wave_index": 2, "name": "Second", "beats": [{"id": "bd-2"}]},
    ]})

    result = await manager.apply(session.id, repo, ApplyOverrides(
        wave_names={"2": "Renamed"}, wave_slugs={"1": "Fresh Start"},
    ))

    first, second = result.applied
    assert (first.wave_id, first.wave_slug) == ("wave-1", "fresh-start")
    assert first.wave_title == "Scene fresh-start: First"
    assert second.wave_title.endswith(": Renamed")
    assert backend.beats["wave-1"].priority == 1
    assert "orchestration:wave:fresh-start" in backend.beats["wave-1"].labels

    assert backend.calls_of("add_dependency") == [
        ("add_dependency", "wave-1", "bd-1"),
        ("add_dependency", "wave-2", "bd-2"),
        ("add_dependency", "wave-1", "wave-2"),
    ]
    assert backend.calls_of("remove_dependency") == [("remove_dependency", "old-wave", "bd-1")]
    assert backend.calls_of("close") == [
        ("close", "old-wave", f"Rewritten by orchestration session {session.id}"),
    ]
    assert backend.beats["bd-1"].parent == "wave-1"


async def test_apply_tolerates_existing_links(backend, repo):
    backend.edges.append(("wave-1", "bd-1"))
    manager = _manager(backend, FakeSpawner())
    session = await manager.restage(repo, {"waves": [{"beats": [{"id": "bd-1"}]}]})
    result = await manager.apply(session.id, repo)
    assert [w.child_count for w in result.applied] == [1]
    assert backend.edges.count(("wave-1", "bd-1")) == 1
