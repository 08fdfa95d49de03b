"""
Verification workflow — label state machine, verifier prompt and dedup lock.

The verification stage of a beat is serialized as labels on the beat:

    IDLE        (no stage labels)
    VERIFYING   transition:verification + stage:verification
    RETRY       stage:retry

``transition:verification`` is the edit lock: present only while a
verifier is running for the beat. ``commit:<sha>`` records the implementing
commit and ``attempts:<n>`` counts failed verifications. Every transition is
computed as a ``LabelDelta`` so callers never edit stage labels by hand.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

import config


class VerificationError(Exception):
    """The verifier could not produce an outcome."""


# ── Labels ───────────────────────────────────────────────────────────

LABEL_TRANSITION_VERIFICATION = "transition:verification"
LABEL_STAGE_VERIFICATION = "stage:verification"
LABEL_STAGE_RETRY = "stage:retry"
LABEL_PREFIX_COMMIT = "commit:"
LABEL_PREFIX_ATTEMPTS = "attempts:"
_LEGACY_PREFIX_ATTEMPT = "attempt:"


class VerificationStage(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    RETRY = "retry"

    @property
    def labels(self) -> tuple[str, ...]:
        return _STAGE_LABELS[self]


_STAGE_LABELS = {
    VerificationStage.IDLE: (),
    VerificationStage.VERIFYING: (LABEL_TRANSITION_VERIFICATION, LABEL_STAGE_VERIFICATION),
    VerificationStage.RETRY: (LABEL_STAGE_RETRY,),
}
_ALL_STAGE_LABELS = {label for labels in _STAGE_LABELS.values() for label in labels}


@dataclass
class LabelDelta:
    add: list[str] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.add and not self.remove


def current_stage(labels: list[str]) -> VerificationStage:
    if LABEL_TRANSITION_VERIFICATION in labels or LABEL_STAGE_VERIFICATION in labels:
        return VerificationStage.VERIFYING
    if LABEL_STAGE_RETRY in labels:
        return VerificationStage.RETRY
    return VerificationStage.IDLE


def has_edit_lock(labels: list[str]) -> bool:
    return LABEL_TRANSITION_VERIFICATION in labels


def stage_delta(labels: list[str], target: VerificationStage) -> LabelDelta:
    """Labels to add/remove so that ``labels`` serialize ``target``."""
    wanted = set(target.labels)
    return LabelDelta(
        add=[label for label in target.labels if label not in labels],
        remove=[label for label in labels if label in _ALL_STAGE_LABELS and label not in wanted],
    )


def extract_commit_sha(labels: list[str]) -> str | None:
    for label in labels:
        if label.startswith(LABEL_PREFIX_COMMIT):
            sha = label[len(LABEL_PREFIX_COMMIT):].strip()
            if sha:
                return sha
    return None


def _attempt_labels(labels: list[str]) -> list[str]:
    return [l for l in labels if l.startswith((LABEL_PREFIX_ATTEMPTS, _LEGACY_PREFIX_ATTEMPT))]


def extract_attempts(labels: list[str]) -> int:
    for label in _attempt_labels(labels):
        raw = label.split(":", 1)[1].strip()
        if raw.isdigit():
            return int(raw)
    return 0


def build_attempts_label(attempts: int) -> str:
    return f"{LABEL_PREFIX_ATTEMPTS}{attempts}"


def entry_delta(labels: list[str]) -> LabelDelta:
    """Enter VERIFYING; a no-op when the edit lock is already held."""
    if has_edit_lock(labels):
        return LabelDelta()
    return stage_delta(labels, VerificationStage.VERIFYING)


def pass_delta(labels: list[str]) -> LabelDelta:
    return stage_delta(labels, VerificationStage.IDLE)


def retry_delta(labels: list[str]) -> LabelDelta:
    """Enter RETRY, drop the stale commit marker and bump the attempt counter."""
    delta = stage_delta(labels, VerificationStage.RETRY)
    delta.remove += [l for l in labels if l.startswith(LABEL_PREFIX_COMMIT)]
    delta.remove += _attempt_labels(labels)
    delta.add.append(build_attempts_label(extract_attempts(labels) + 1))
    return delta


# ── Eligible actions ─────────────────────────────────────────────────

VERIFICATION_ELIGIBLE_ACTIONS = frozenset({"take", "scene"})


def is_verification_eligible_action(action: str) -> bool:
    return action in VERIFICATION_ELIGIBLE_ACTIONS


# ── Verifier prompt / result ─────────────────────────────────────────

class VerificationOutcome(str, Enum):
    PASS = "pass"
    FAIL_REQUIREMENTS = "fail-requirements"
    FAIL_BUGS = "fail-bugs"


_RESULT_RE = re.compile(r"VERIFICATION_RESULT:(pass|fail-requirements|fail-bugs)")
_SUMMARY_RE = re.compile(r"REJECTION_SUMMARY:\s*(.+)")


def build_verifier_prompt(beat_id: str, title: str, commit_sha: str, description: str | None = None,
                          acceptance: str | None = None, notes: str | None = None) -> str:
    lines = [
        f"Beat {beat_id} has just been queued for verification. "
        "You are going to verify it with the following steps:",
        "",
        "## Reference",
        f"- Beat ID: {beat_id}",
        f"- Title: {title}",
        f"- Commit: {commit_sha}",
    ]
    if description:
        lines += ["", "## Description", description]
    if acceptance:
        lines += ["", "## Acceptance Criteria", acceptance]
    if notes:
        lines += ["", "## Notes", notes]
    lines += [
        "",
        "## Verification Steps",
        "",
        f"1. Use commit {commit_sha} as a basis for reference.",
        "2. Check: Does the code on main satisfy the requirements of the beat?",
        "   - If NO: output a brief rejection summary (2-4 sentences) explaining what is wrong and "
        "what needs to change, prefixed with REJECTION_SUMMARY:",
        "     Then output: VERIFICATION_RESULT:fail-requirements",
        "3. Check: Does the commit introduce bugs that require correction?",
        "   - If YES: output a brief rejection summary explaining the bugs found, prefixed with REJECTION_SUMMARY:",
        "     Then output: VERIFICATION_RESULT:fail-bugs",
        "4. If both checks pass (code satisfies requirements, no bugs):",
        "     output: VERIFICATION_RESULT:pass",
        "",
        "Do not change the beat's labels or status yourself; the result line drives the workflow.",
        "IMPORTANT: On failure, you MUST output a REJECTION_SUMMARY line followed by a VERIFICATION_RESULT line.",
        "Use the format: REJECTION_SUMMARY: <2-4 sentence explanation of what failed and what to fix>",
        "Then: VERIFICATION_RESULT:<pass|fail-requirements|fail-bugs>",
        "On pass, output only: VERIFICATION_RESULT:pass",
    ]
    return "\n".join(lines)


def parse_verifier_result(output: str) -> VerificationOutcome | None:
    match = _RESULT_RE.search(output or "")
    return VerificationOutcome(match.group(1)) if match else None


def extract_rejection_summary(output: str, max_chars: int = config.VERIFICATION_MAX_OUTPUT_CHARS) -> str:
    """Prefer the last ``REJECTION_SUMMARY:`` line, else the text preceding the result token."""
    summaries = _SUMMARY_RE.findall(output or "")
    if summaries:
        return summaries[-1].strip()
    match = _RESULT_RE.search(output or "")
    preceding = (output[: match.start()] if match else output or "").strip()
    if len(preceding) > max_chars:
        return "...(truncated)\n" + preceding[-max_chars:]
    return preceding


# ── Dedup lock ───────────────────────────────────────────────────────

class VerificationLocks:
    """In-memory per-beat locks; a lock older than ``timeout`` may be re-acquired."""

    def __init__(self, timeout: float = config.VERIFICATION_LOCK_TIMEOUT_SEC):
        self.timeout = timeout
        self._held: dict[str, float] = {}
        self._mutex = threading.Lock()

    def acquire(self, beat_id: str) -> bool:
        now = time.monotonic()
        with self._mutex:
            started = self._held.get(beat_id)
            if started is not None and now - started < self.timeout:
                return False
            self._held[beat_id] = now
            return True

    def release(self, beat_id: str) -> None:
        with self._mutex:
            self._held.pop(beat_id, None)

    def is_locked(self, beat_id: str) -> bool:
        with self._mutex:
            started = self._held.get(beat_id)
            if started is None:
                return False
            if time.monotonic() - started >= self.timeout:
                del self._held[beat_id]
                return False
            return True
