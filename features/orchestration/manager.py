"""
Orchestration Session Manager — runs planning agents and tracks their sessions.

Each session owns one agent process. A reader task (``utils.agent_process``)
pushes raw output onto a queue; ``_consume`` is the single consumer that
normalizes it, extracts ``wave_draft`` / ``plan_final`` lines from the
assistant text, and drives the session through
``running -> completed | error | aborted``.

Every path to a terminal state goes through ``_finalize``, so subscribers
see exactly one ``exit`` event per session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

import config
from features.backends import BackendPort, get_backend
from features.orchestration.apply import apply_plan
from features.orchestration.models import (
    ApplyOverrides,
    ApplyResult,
    EventType,
    OrchestrationError,
    OrchestrationEvent,
    OrchestrationPlan,
    OrchestrationSession,
    OrchestrationWave,
    SessionNotFoundError,
    SessionStatus,
)
from features.orchestration.plan import (
    build_draft_plan,
    extract_plan_from_tagged_json,
    normalize_plan,
    normalize_restaged_plan,
    normalize_wave,
)
from features.orchestration.prompt import build_prompt, build_prompt_log, derive_prompt_scope
from features.orchestration.wave_slugs import is_wave_container
from models.schemas import Beat, BeatFilters
from utils.agent_adapter import (
    AgentDescriptor,
    assistant_text,
    build_prompt_mode_args,
    create_line_normalizer,
    default_agent,
    delta_text,
    normalize_line,
    resolve_dialect,
)
from utils.agent_process import AgentHandle, AgentSpawner, StreamItem, spawn_agent

log = logging.getLogger(__name__)

ELIGIBLE_STATUSES = ("open", "in_progress", "blocked")


class SessionStateError(OrchestrationError):
    """The session exists but is not in a state that allows the request."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _generate_id() -> str:
    return f"orch-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def _truncate(value: Any, limit: int = 220) -> str:
    raw = value if isinstance(value, str) else json.dumps(value)
    return f"{raw[:limit]}..." if len(raw) > limit else raw


def format_structured_log_line(line: str) -> str:
    """Render a protocol line as ``event | text`` plus indented extras."""
    trimmed = line.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return f"{line}\n"
    try:
        obj = json.loads(trimmed)
    except json.JSONDecodeError:
        return f"{line}\n"
    if not isinstance(obj, dict) or not isinstance(obj.get("event"), str):
        return f"{line}\n"
    text = next((obj[k] for k in ("text", "message", "result") if isinstance(obj.get(k), str)), "")
    out = [f"{obj['event']} | {text or '(no text)'}\n"]
    for key, value in obj.items():
        if key in ("event", "text", "message", "result"):
            continue
        rendered = _truncate(value)
        if rendered:
            out.append(f"  {key}: {rendered}\n")
    return "".join(out)


def summarize_result(agent_label: str, result: Any, is_error: bool) -> str:
    if not is_error:
        return f"{agent_label} orchestration complete"
    first = ""
    if isinstance(result, str):
        first = next((ln.strip() for ln in result.splitlines() if ln.strip()), "")
    if not first:
        return f"{agent_label} orchestration failed"
    if len(first) > 180:
        first = f"{first[:180]}..."
    return f"{agent_label} orchestration failed: {first}"


@dataclass
class SessionEntry:
    session: OrchestrationSession
    all_beats: dict[str, Beat]
    handle: AgentHandle | None = None
    buffer: deque = field(default_factory=lambda: deque(maxlen=config.ORCHESTRATION_MAX_BUFFER))
    subscribers: list[asyncio.Queue] = field(default_factory=list)
    draft_waves: dict[int, OrchestrationWave] = field(default_factory=dict)
    assistant_text: str = ""
    line_buffer: str = ""
    saw_delta: bool = False
    has_final_plan: bool = False
    exited: bool = False
    detached: bool = False
    consumer: asyncio.Task | None = None

    @property
    def known_titles(self) -> dict[str, str]:
        return {beat_id: beat.title for beat_id, beat in self.all_beats.items()}


class OrchestrationManager:
    """Process-wide registry of orchestration sessions."""

    def __init__(self, backend_factory: Callable[[], BackendPort] = get_backend,
                 spawner: AgentSpawner = spawn_agent,
                 agent_factory: Callable[[], AgentDescriptor] = default_agent,
                 drain_delay: float = config.ORCHESTRATION_LISTENER_DRAIN_SEC,
                 cleanup_delay: float = config.ORCHESTRATION_CLEANUP_DELAY_SEC,
                 abort_grace: float = config.ORCHESTRATION_ABORT_GRACE_SEC):
        self._backend_factory = backend_factory
        self._spawner = spawner
        self._agent_factory = agent_factory
        self.drain_delay = drain_delay
        self.cleanup_delay = cleanup_delay
        self.abort_grace = abort_grace
        self._sessions: dict[str, SessionEntry] = {}

    @property
    def backend(self) -> BackendPort:
        return self._backend_factory()

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, session_id: str) -> SessionEntry:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def list_sessions(self) -> list[OrchestrationSession]:
        return [entry.session for entry in self._sessions.values()]

    # ── Events ───────────────────────────────────────────────────────

    def _push(self, entry: SessionEntry, event_type: EventType, data: Any) -> None:
        event = OrchestrationEvent(type=event_type, data=data)
        entry.buffer.append(event)
        for queue in entry.subscribers:
            queue.put_nowait(event)

    def _detach(self, entry: SessionEntry) -> None:
        entry.detached = True
        for queue in entry.subscribers:
            queue.put_nowait(None)
        entry.subscribers.clear()

    def _purge(self, session_id: str) -> None:
        entry = self._sessions.pop(session_id, None)
        if entry is not None:
            entry.buffer.clear()
            entry.all_beats.clear()
            log.info("[ORCH] Purged session %s", session_id)

    async def subscribe(self, session_id: str) -> AsyncIterator[OrchestrationEvent]:
        """Replay buffered events, then follow live ones until ``exit``."""
        entry = self.get(session_id)
        backlog = list(entry.buffer)
        queue: asyncio.Queue = asyncio.Queue()
        if not entry.detached:
            entry.subscribers.append(queue)
        try:
            for event in backlog:
                yield event
                if event.type == EventType.EXIT:
                    return
            if entry.detached:
                return
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
                if event.type == EventType.EXIT:
                    return
        finally:
            if queue in entry.subscribers:
                entry.subscribers.remove(queue)

    # ── Line protocol ────────────────────────────────────────────────

    def _apply_line(self, entry: SessionEntry, line: str) -> None:
        trimmed = line.strip()
        if not trimmed.startswith("{"):
            return
        try:
            obj = json.loads(trimmed)
        except json.JSONDecodeError:
            return
        if not isinstance(obj, dict) or not isinstance(obj.get("event"), str):
            return

        if obj["event"] == "wave_draft":
            wave = normalize_wave(obj.get("wave", obj), len(entry.draft_waves) + 1, entry.known_titles)
            if wave is None:
                return
            entry.draft_waves[wave.wave_index] = wave
            draft = build_draft_plan(entry.draft_waves, list(entry.all_beats))
            entry.session.plan = draft
            self._push(entry, EventType.PLAN, draft)
        elif obj["event"] == "plan_final":
            plan = normalize_plan(obj.get("plan", obj), entry.known_titles)
            if plan is None:
                return
            entry.has_final_plan = True
            entry.session.plan = plan
            self._push(entry, EventType.PLAN, plan)

    def _consume_text(self, entry: SessionEntry, text: str) -> None:
        entry.assistant_text += text
        entry.line_buffer += text
        while "\n" in entry.line_buffer:
            line, entry.line_buffer = entry.line_buffer.split("\n", 1)
            self._apply_line(entry, line)
            self._push(entry, EventType.LOG, format_structured_log_line(line))

    def _flush_tail(self, entry: SessionEntry) -> None:
        tail, entry.line_buffer = entry.line_buffer, ""
        if tail.strip():
            self._apply_line(entry, tail)
            self._push(entry, EventType.LOG, format_structured_log_line(tail))

    def _capture_tagged_plan(self, entry: SessionEntry, text: str) -> None:
        """Fallback when no ``plan_final`` line arrived; draft plans do not count."""
        if entry.has_final_plan:
            return
        fallback = extract_plan_from_tagged_json(text, entry.known_titles)
        if fallback is not None:
            entry.has_final_plan = True
            entry.session.plan = fallback
            self._push(entry, EventType.PLAN, fallback)

    # ── Lifecycle ────────────────────────────────────────────────────

    def _finalize(self, entry: SessionEntry, status: SessionStatus, message: str) -> None:
        if entry.exited:
            return
        entry.exited = True
        self._flush_tail(entry)
        self._capture_tagged_plan(entry, entry.assistant_text)

        session = entry.session
        session.status = status
        session.completed_at = _now_iso()
        if status in (SessionStatus.ERROR, SessionStatus.ABORTED):
            session.error = message
            self._push(entry, EventType.ERROR, message)
        else:
            self._push(entry, EventType.STATUS, message)
        self._push(entry, EventType.EXIT, message)
        log.info("[ORCH] Session %s finished: %s (%s)", session.id, status.value, message)

        entry.assistant_text = ""
        entry.line_buffer = ""
        entry.draft_waves.clear()

        loop = asyncio.get_running_loop()
        loop.call_later(self.drain_delay, self._detach, entry)
        loop.call_later(self.cleanup_delay, self._purge, session.id)

    def _handle_event(self, entry: SessionEntry, event: dict[str, Any], agent_label: str) -> None:
        kind = event.get("type")
        if kind == "stream_event":
            text = delta_text(event)
            if text:
                entry.saw_delta = True
                self._consume_text(entry, text)
        elif kind == "assistant":
            text = assistant_text(event)
            if not text:
                return
            if entry.saw_delta:
                # Deltas already carried this message; release any held partial line.
                pending, entry.line_buffer = entry.line_buffer, ""
                for line in pending.split("\n"):
                    self._apply_line(entry, line)
            else:
                self._consume_text(entry, text if text.endswith("\n") else f"{text}\n")
            entry.saw_delta = False
        elif kind == "result":
            is_error = bool(event.get("is_error"))
            result = event.get("result")
            if isinstance(result, str):
                self._capture_tagged_plan(entry, result)
            status = SessionStatus.ERROR if is_error else SessionStatus.COMPLETED
            self._finalize(entry, status, summarize_result(agent_label, result, is_error))

    def _handle_exit(self, entry: SessionEntry, item: StreamItem, agent_label: str) -> None:
        if item.returncode == 0:
            self._finalize(entry, SessionStatus.COMPLETED, f"{agent_label} orchestration complete")
            return
        if item.returncode is not None and item.returncode < 0:
            detail = f"code=null, signal={item.signal_name}"
        else:
            detail = f"code={item.returncode}, signal=null"
        self._finalize(entry, SessionStatus.ERROR, f"{agent_label} exited ({detail})")

    async def _consume(self, entry: SessionEntry, handle: AgentHandle, dialect, agent_label: str) -> None:
        normalizer = create_line_normalizer(dialect)
        try:
            while True:
                item: StreamItem = await handle.items.get()
                if item.kind == "exit":
                    self._handle_exit(entry, item, agent_label)
                    return
                if entry.exited:
                    continue
                if item.kind == "stderr":
                    self._push(entry, EventType.LOG, item.text)
                    continue
                event = normalize_line(normalizer, item.text)
                if event is not None:
                    self._handle_event(entry, event, agent_label)
        except Exception as e:
            log.exception("[ORCH] Session %s stream consumer failed", entry.session.id)
            self._finalize(entry, SessionStatus.ERROR, f"Orchestration stream failed: {e}")

    # ── Operations ───────────────────────────────────────────────────

    async def collect_eligible_beats(self, repo_path: str, exclude_waves: bool = False) -> list[Beat]:
        backend = self.backend
        results = await asyncio.gather(*(
            backend.list(BeatFilters(status=status), repo_path) for status in ELIGIBLE_STATUSES
        ))
        beats: dict[str, Beat] = {}
        for result in results:
            if not result.ok:
                raise OrchestrationError(result.error.message or "Failed to load beats for orchestration")
            for beat in result.data or []:
                beats.setdefault(beat.id, beat)
        if exclude_waves:
            return [b for b in beats.values() if not is_wave_container(b.labels)]
        return list(beats.values())

    def _register(self, session: OrchestrationSession, beats: list[Beat]) -> SessionEntry:
        entry = SessionEntry(session=session, all_beats={b.id: b for b in beats})
        self._sessions[session.id] = entry
        return entry

    async def start(self, repo_path: str, objective: str | None = None) -> OrchestrationSession:
        beats = await self.collect_eligible_beats(repo_path, exclude_waves=True)
        if not beats:
            raise OrchestrationError("No open/in_progress/blocked beats available for orchestration")

        objective = (objective or "").strip() or None
        session = OrchestrationSession(
            id=_generate_id(), repo_path=repo_path, started_at=_now_iso(), objective=objective,
        )
        entry = self._register(session, beats)
        log.info("[ORCH] Starting session %s for %s (%d beats)", session.id, repo_path, len(beats))

        scope = derive_prompt_scope(beats, objective)
        prompt = build_prompt(repo_path, scope, objective)
        self._push(entry, EventType.LOG, build_prompt_log(scope, objective))

        agent = self._agent_factory()
        agent_label = agent.label or agent.command
        argv = build_prompt_mode_args(agent, prompt)
        try:
            handle = await self._spawner(argv, repo_path)
        except OSError as e:
            log.error("[ORCH] Failed to start %s: %s", agent_label, e)
            self._finalize(entry, SessionStatus.ERROR, f"Failed to start {agent_label}: {e}")
            return session

        entry.handle = handle
        self._push(entry, EventType.STATUS, f"Waiting on {agent_label}...")
        entry.consumer = asyncio.create_task(
            self._consume(entry, handle, resolve_dialect(agent.command), agent_label)
        )
        return session

    async def restage(self, repo_path: str, plan: dict[str, Any],
                      objective: str | None = None) -> OrchestrationSession:
        """Register a completed session around an existing plan so it can be applied."""
        beats = await self.collect_eligible_beats(repo_path)
        if not beats:
            raise OrchestrationError("No open/in_progress/blocked beats available for orchestration")
        known = {b.id: b.title for b in beats}
        normalized = normalize_restaged_plan(plan, known)

        session = OrchestrationSession(
            id=_generate_id(), repo_path=repo_path, started_at=_now_iso(),
            objective=(objective or "").strip() or None, plan=normalized,
        )
        entry = self._register(session, beats)
        entry.has_final_plan = True
        self._finalize(entry, SessionStatus.COMPLETED, "Restaged existing groups into Scene view")
        return session

    def abort(self, session_id: str) -> bool:
        entry = self._sessions.get(session_id)
        if entry is None or entry.handle is None or entry.exited:
            return False
        handle = entry.handle
        entry.session.status = SessionStatus.ABORTED
        handle.terminate()

        def _escalate() -> None:
            if not handle.finished:
                log.warning("[ORCH] Session %s did not exit after SIGTERM; killing", session_id)
                handle.kill()

        asyncio.get_running_loop().call_later(self.abort_grace, _escalate)
        self._finalize(entry, SessionStatus.ABORTED, "Orchestration aborted")
        return True

    async def apply(self, session_id: str, repo_path: str,
                    overrides: ApplyOverrides | None = None) -> ApplyResult:
        entry = self.get(session_id)
        plan: OrchestrationPlan | None = entry.session.plan
        if plan is None:
            raise SessionStateError("No orchestration plan available to apply")
        if not entry.session.status.is_terminal:
            raise SessionStateError("Orchestration session is still running")
        return await apply_plan(
            self.backend, session_id, plan, entry.all_beats, repo_path, overrides,
        )


_manager: OrchestrationManager | None = None


def get_manager() -> OrchestrationManager:
    global _manager
    if _manager is None:
        _manager = OrchestrationManager()
    return _manager
