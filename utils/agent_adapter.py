"""
Agent adapter — CLI dialect differences between claude-style and codex-style agents.

Three concerns:
  1. Dialect resolution  — detect the agent CLI type from its command name
  2. Arg building        — construct one-shot prompt args per dialect
  3. Event normalization — map each dialect's JSONL events onto the common
                           shapes the session parsers consume
                           (``stream_event`` delta, ``assistant`` message, ``result``)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import config

log = logging.getLogger(__name__)


class AgentDialect(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"


@dataclass
class AgentDescriptor:
    command: str
    model: str | None = None
    label: str | None = None


def default_agent() -> AgentDescriptor:
    return AgentDescriptor(command=config.AGENT_COMMAND, model=config.AGENT_MODEL or None)


def verification_agent() -> AgentDescriptor:
    return AgentDescriptor(
        command=config.VERIFICATION_AGENT_COMMAND,
        model=config.VERIFICATION_AGENT_MODEL or None,
    )


# ── Dialect resolution ───────────────────────────────────────────────

def resolve_dialect(command: str) -> AgentDialect:
    """Any command whose basename mentions ``codex`` is codex; everything else is claude."""
    base = command.rsplit("/", 1)[-1]
    return AgentDialect.CODEX if "codex" in base.lower() else AgentDialect.CLAUDE


# ── Arg building ─────────────────────────────────────────────────────

def build_prompt_mode_args(agent: AgentDescriptor, prompt: str) -> list[str]:
    """Full argv (command first) for a one-shot prompt run."""
    if resolve_dialect(agent.command) == AgentDialect.CODEX:
        args = ["exec", prompt, "--json", "--dangerously-bypass-approvals-and-sandbox"]
        if agent.model:
            args += ["-m", agent.model]
        return [agent.command, *args]

    args = [
        "-p", prompt,
        "--input-format", "text",
        "--output-format", "stream-json",
        "--include-partial-messages",
        "--verbose",
        "--dangerously-skip-permissions",
    ]
    if agent.model:
        args += ["--model", agent.model]
    return [agent.command, *args]


# ── Event normalization ──────────────────────────────────────────────

def _text_delta(text: str) -> dict[str, Any]:
    return {
        "type": "stream_event",
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
    }


class ClaudeNormalizer:
    """Native shapes already match; only non-objects are dropped."""

    def normalize(self, parsed: Any) -> dict[str, Any] | None:
        return parsed if isinstance(parsed, dict) else None


class CodexNormalizer:
    """Maps codex ``item.*`` / ``turn.*`` events; accumulates agent text for the final result."""

    def __init__(self):
        self.accumulated_text = ""

    def normalize(self, parsed: Any) -> dict[str, Any] | None:
        if not isinstance(parsed, dict):
            return None
        kind = parsed.get("type")
        item = parsed.get("item") if isinstance(parsed.get("item"), dict) else None

        if kind in ("thread.started", "turn.started"):
            return None

        if kind == "item.completed" and item is not None:
            item_type = item.get("type")
            if item_type == "agent_message":
                text = item.get("text") if isinstance(item.get("text"), str) else ""
                self.accumulated_text += ("\n" if self.accumulated_text else "") + text
                return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
            if item_type == "reasoning":
                text = item.get("text") if isinstance(item.get("text"), str) else ""
                return _text_delta(text)
            if item_type == "command_execution":
                output = item.get("aggregated_output")
                return {
                    "type": "user",
                    "message": {"content": [{"type": "tool_result", "content": output if isinstance(output, str) else ""}]},
                }
            return None

        if kind == "item.started" and item is not None and item.get("type") == "command_execution":
            command = item.get("command") if isinstance(item.get("command"), str) else ""
            return _text_delta(f"[executing] {command}\n")

        if kind == "turn.completed":
            return {"type": "result", "result": self.accumulated_text, "is_error": False}

        if kind == "turn.failed":
            error = parsed.get("error") if isinstance(parsed.get("error"), dict) else {}
            message = error.get("message") if isinstance(error.get("message"), str) else "Turn failed"
            return {"type": "result", "result": message, "is_error": True}

        if kind == "error":
            message = parsed.get("message") if isinstance(parsed.get("message"), str) else "Unknown error"
            return {"type": "result", "result": message, "is_error": True}

        return None


def create_line_normalizer(dialect: AgentDialect) -> ClaudeNormalizer | CodexNormalizer:
    """One normalizer per session; the codex one is stateful."""
    if dialect == AgentDialect.CODEX:
        return CodexNormalizer()
    return ClaudeNormalizer()


def normalize_line(normalizer, line: str) -> dict[str, Any] | None:
    """Parse one raw stdout line; non-JSON lines are skipped."""
    line = line.strip()
    if not line:
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        log.debug("Skipping non-JSON agent line: %s", line[:200])
        return None
    return normalizer.normalize(parsed)


# ── Event text helpers ───────────────────────────────────────────────

def delta_text(event: dict[str, Any]) -> str | None:
    if event.get("type") != "stream_event":
        return None
    inner = event.get("event") or {}
    delta = inner.get("delta") or {}
    if inner.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
        text = delta.get("text")
        return text if isinstance(text, str) else None
    return None


def assistant_text(event: dict[str, Any]) -> str:
    if event.get("type") != "assistant":
        return ""
    content = (event.get("message") or {}).get("content") or []
    return "".join(
        block.get("text", "") for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )
