"""
Verification Orchestrator — drives post-completion verification of beats.

Triggered when an agent finishes a code-producing action. For each beat:

  1. take the in-memory dedup lock (a concurrent trigger for the same beat
     returns immediately)
  2. enter VERIFYING (edit lock + stage label), idempotently; a beat that
     is already closed is left untouched
  3. no ``commit:`` marker -> straight to RETRY, no verifier
  4. otherwise run the verifier agent and scan its output for the result token
  5. pass -> clear stage labels and close; fail -> RETRY, append a rejection
     note, relaunch the original action while within the retry budget
  6. release the lock on every path

Any failure after entry moves the beat to RETRY rather than leaving the edit
lock in place. A process crash mid-verification still leaves the lock label
behind; clearing those is left to an external doctor routine.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

import config
from features.backends import BackendPort, get_backend
from features.backends.errors import BackendOperationError, unwrap
from features.verification.launcher import ActionRelauncher
from features.verification.workflow import (
    LabelDelta,
    VerificationError,
    VerificationLocks,
    VerificationOutcome,
    build_verifier_prompt,
    entry_delta,
    extract_attempts,
    extract_commit_sha,
    extract_rejection_summary,
    is_verification_eligible_action,
    parse_verifier_result,
    pass_delta,
    retry_delta,
)
from models.schemas import Beat, UpdateBeatInput
from utils.agent_adapter import (
    AgentDescriptor,
    assistant_text,
    build_prompt_mode_args,
    create_line_normalizer,
    normalize_line,
    resolve_dialect,
    verification_agent,
)
from utils.agent_process import AgentSpawner, collect_output, spawn_agent

log = logging.getLogger(__name__)

PASS_CLOSE_REASON = "Auto-verification passed"

Relauncher = Callable[[list[str], str, str], Awaitable[None]]


class VerificationEventType(str, Enum):
    QUEUED = "queued"
    MISSING_COMMIT = "missing-commit"
    VERIFIER_STARTED = "verifier-started"
    VERIFIER_COMPLETED = "verifier-completed"
    RETRY = "retry"
    CLOSED = "closed"
    NOTES_UPDATED = "notes-updated"
    RETRY_SESSION_STARTED = "retry-session-started"
    ERROR = "error"


@dataclass
class VerificationEvent:
    type: VerificationEventType
    beat_id: str
    timestamp: str
    detail: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class VerifierRun:
    outcome: VerificationOutcome
    output: str


class VerificationOrchestrator:
    def __init__(self, backend_factory: Callable[[], BackendPort] = get_backend,
                 spawner: AgentSpawner = spawn_agent,
                 agent_factory: Callable[[], AgentDescriptor] = verification_agent,
                 relauncher: Relauncher | None = None,
                 enabled: bool | None = None,
                 max_retries: int | None = None,
                 locks: VerificationLocks | None = None):
        self._backend_factory = backend_factory
        self._spawner = spawner
        self._agent_factory = agent_factory
        self.relauncher = relauncher
        self.enabled = config.VERIFICATION_ENABLED if enabled is None else enabled
        self.max_retries = config.VERIFICATION_MAX_RETRIES if max_retries is None else max_retries
        self.locks = locks or VerificationLocks()
        self._events: deque[VerificationEvent] = deque(maxlen=config.VERIFICATION_MAX_EVENT_LOG)

    @property
    def backend(self) -> BackendPort:
        return self._backend_factory()

    # ── Event log ────────────────────────────────────────────────────

    def _log_event(self, event_type: VerificationEventType, beat_id: str, detail: str | None = None) -> None:
        self._events.append(VerificationEvent(
            type=event_type,
            beat_id=beat_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            detail=detail,
        ))
        log.info("[VERIFY] %s beat=%s%s", event_type.value, beat_id, f" {detail}" if detail else "")

    def events(self, limit: int = 50) -> list[VerificationEvent]:
        return list(self._events)[-limit:] if limit > 0 else []

    # ── Entry point ──────────────────────────────────────────────────

    async def on_agent_complete(self, beat_ids: list[str], action: str, repo_path: str,
                                exit_code: int | None) -> None:
        if not self.enabled:
            return
        if not is_verification_eligible_action(action):
            return
        if exit_code != 0:
            return
        await asyncio.gather(*(self.run_workflow(beat_id, action, repo_path) for beat_id in beat_ids))

    async def run_workflow(self, beat_id: str, action: str, repo_path: str) -> bool:
        """Verify one beat. Returns False when another verification already holds the lock."""
        if not self.locks.acquire(beat_id):
            log.info("[VERIFY] Deduped: %s already has active verification", beat_id)
            return False
        try:
            if not await self._enter(beat_id, repo_path):
                return True
            beat = await self._get(beat_id, repo_path)
            commit_sha = extract_commit_sha(beat.labels)
            if not commit_sha:
                self._log_event(VerificationEventType.MISSING_COMMIT, beat_id)
                await self._transition_to_retry(beat_id, repo_path)
                return True
            run = await self._launch_verifier(beat, commit_sha, repo_path)
            await self._apply_outcome(beat_id, action, repo_path, run)
        except (BackendOperationError, VerificationError, OSError) as e:
            self._log_event(VerificationEventType.ERROR, beat_id, str(e))
            try:
                await self._transition_to_retry(beat_id, repo_path)
            except BackendOperationError as retry_error:
                log.error("[VERIFY] Could not move %s to retry: %s", beat_id, retry_error)
        finally:
            self.locks.release(beat_id)
        return True

    # ── Steps ────────────────────────────────────────────────────────

    async def _get(self, beat_id: str, repo_path: str) -> Beat:
        return unwrap(await self.backend.get(beat_id, repo_path), f"load beat {beat_id}")

    async def _update_labels(self, beat_id: str, delta: LabelDelta, repo_path: str,
                             status: str | None = None) -> None:
        data = UpdateBeatInput(
            labels=delta.add or None,
            remove_labels=delta.remove or None,
            status=status,
        )
        unwrap(await self.backend.update(beat_id, data, repo_path), f"update labels of {beat_id}")

    async def _enter(self, beat_id: str, repo_path: str) -> bool:
        """Apply entry labels; False when the beat is already closed."""
        self._log_event(VerificationEventType.QUEUED, beat_id)
        beat = await self._get(beat_id, repo_path)
        if beat.status == "closed":
            log.info("[VERIFY] %s is already closed; skipping verification", beat_id)
            return False
        delta = entry_delta(beat.labels)
        if delta.empty:
            return True
        status = "in_progress" if beat.status != "in_progress" else None
        await self._update_labels(beat_id, delta, repo_path, status=status)
        return True

    async def _transition_to_retry(self, beat_id: str, repo_path: str) -> int:
        beat = await self._get(beat_id, repo_path)
        attempts = extract_attempts(beat.labels) + 1
        await self._update_labels(beat_id, retry_delta(beat.labels), repo_path, status="open")
        return attempts

    async def _launch_verifier(self, beat: Beat, commit_sha: str, repo_path: str) -> VerifierRun:
        self._log_event(VerificationEventType.VERIFIER_STARTED, beat.id, f"commit={commit_sha}")
        prompt = build_verifier_prompt(
            beat.id, beat.title, commit_sha,
            description=beat.description, acceptance=beat.acceptance, notes=beat.notes,
        )
        agent = self._agent_factory()
        handle = await self._spawner(build_prompt_mode_args(agent, prompt), repo_path)
        result = await collect_output(handle)
        if result.stderr.strip():
            log.info("[VERIFY] [%s] stderr: %s", beat.id, result.stderr[:200])

        normalizer = create_line_normalizer(resolve_dialect(agent.command))
        parts: list[str] = []
        for line in result.stdout_lines:
            if not line.strip():
                continue
            event = normalize_line(normalizer, line)
            if event is None:
                if not line.lstrip().startswith("{"):
                    parts.append(line)
                continue
            if event.get("type") == "assistant":
                parts.append(assistant_text(event))
            elif event.get("type") == "result" and isinstance(event.get("result"), str):
                parts.append(event["result"])
        output = "\n".join(p for p in parts if p)

        outcome = parse_verifier_result(output)
        if outcome is not None:
            self._log_event(VerificationEventType.VERIFIER_COMPLETED, beat.id, f"outcome={outcome.value}")
            return VerifierRun(outcome, output)
        if result.returncode == 0:
            self._log_event(VerificationEventType.VERIFIER_COMPLETED, beat.id, "outcome=pass (implicit)")
            return VerifierRun(VerificationOutcome.PASS, output)
        raise VerificationError(f"Verifier exited with code {result.returncode}, no result marker found")

    async def _apply_outcome(self, beat_id: str, action: str, repo_path: str, run: VerifierRun) -> None:
        beat = await self._get(beat_id, repo_path)
        if run.outcome == VerificationOutcome.PASS:
            delta = pass_delta(beat.labels)
            if not delta.empty:
                await self._update_labels(beat_id, delta, repo_path)
            unwrap(await self.backend.close(beat_id, PASS_CLOSE_REASON, repo_path), f"close {beat_id}")
            self._log_event(VerificationEventType.CLOSED, beat_id)
            return

        self._log_event(VerificationEventType.RETRY, beat_id, f"reason={run.outcome.value}")
        attempt = extract_attempts(beat.labels) + 1
        await self._append_rejection_note(beat, run, attempt, repo_path)
        await self._transition_to_retry(beat_id, repo_path)
        await self._maybe_relaunch(beat_id, action, repo_path, attempt)

    async def _append_rejection_note(self, beat: Beat, run: VerifierRun, attempt: int, repo_path: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M")
        section = "\n".join([
            "",
            "---",
            f"**Verification attempt {attempt} failed ({stamp})** - reason: {run.outcome.value}",
            "",
            extract_rejection_summary(run.output),
        ])
        notes = (beat.notes or "") + section
        unwrap(await self.backend.update(beat.id, UpdateBeatInput(notes=notes), repo_path),
               f"update notes of {beat.id}")
        self._log_event(VerificationEventType.NOTES_UPDATED, beat.id, f"attempt={attempt}")

    async def _maybe_relaunch(self, beat_id: str, action: str, repo_path: str, attempt: int) -> None:
        if self.max_retries <= 0 or attempt > self.max_retries:
            log.info("[VERIFY] Skipping auto-retry for %s: attempt %d exceeds max retries %d",
                     beat_id, attempt, self.max_retries)
            return
        if self.relauncher is None:
            log.info("[VERIFY] No relauncher configured; %s stays in retry", beat_id)
            return
        try:
            await self.relauncher([beat_id], action, repo_path)
        except (BackendOperationError, OSError) as e:
            self._log_event(VerificationEventType.ERROR, beat_id, f"relaunch failed: {e}")
            return
        self._log_event(VerificationEventType.RETRY_SESSION_STARTED, beat_id,
                        f"attempt={attempt} action={action}")


_orchestrator: VerificationOrchestrator | None = None


def get_orchestrator() -> VerificationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = VerificationOrchestrator()
        _orchestrator.relauncher = ActionRelauncher(_orchestrator.on_agent_complete)
    return _orchestrator
