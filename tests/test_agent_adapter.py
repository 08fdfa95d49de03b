"""Unit tests for agent CLI dialects and stream normalization."""

import json

import pytest

from utils.agent_adapter import (
    AgentDescriptor,
    AgentDialect,
    ClaudeNormalizer,
    CodexNormalizer,
    assistant_text,
    build_prompt_mode_args,
    delta_text,
    normalize_line,
    resolve_dialect,
)
from utils.agent_process import StreamItem


@pytest.mark.parametrize("command, dialect", [
    ("claude", AgentDialect.CLAUDE),
    ("/opt/bin/codex", AgentDialect.CODEX),
    ("Codex-Nightly", AgentDialect.CODEX),
    ("/home/codex/bin/claude", AgentDialect.CLAUDE),
])
def test_resolve_dialect(command, dialect):
    assert resolve_dialect(command) == dialect


def test_claude_prompt_args():
    argv = build_prompt_mode_args(AgentDescriptor(command="claude", model="opus"), "hi")
    assert argv[:3] == ["claude", "-p", "hi"]
    assert "stream-json" in argv
    assert argv[-2:] == ["--model", "opus"]


def test_codex_prompt_args():
    argv = build_prompt_mode_args(AgentDescriptor(command="codex"), "hi")
    assert argv == ["codex", "exec", "hi", "--json", "--dangerously-bypass-approvals-and-sandbox"]


def test_normalize_line_skips_noise():
    normalizer = ClaudeNormalizer()
    assert normalize_line(normalizer, "") is None
    assert normalize_line(normalizer, "Loading...") is None
    assert normalize_line(normalizer, "[1, 2]") is None
    assert normalize_line(normalizer, '{"type": "assistant"}') == {"type": "assistant"}


def test_codex_events_map_to_common_shapes():
    codex = CodexNormalizer()
    line = lambda obj: normalize_line(codex, json.dumps(obj))

    assert line({"type": "thread.started"}) is None
    started = line({"type": "item.started", "item": {"type": "command_execution", "command": "ls"}})
    assert delta_text(started) == "[executing] ls\n"

    first = line({"type": "item.completed", "item": {"type": "agent_message", "text": "one"}})
    line({"type": "item.completed", "item": {"type": "agent_message", "text": "two"}})
    assert assistant_text(first) == "one"

    tool = line({"type": "item.completed", "item": {"type": "command_execution", "aggregated_output": "out"}})
    assert tool["type"] == "user"

    assert line({"type": "turn.completed"}) == {"type": "result", "result": "one\ntwo", "is_error": False}
    assert line({"type": "turn.failed", "error": {}})["result"] == "Turn failed"
    assert line({"type": "error", "message": "boom"}) == {"type": "result", "result": "boom", "is_error": True}


def test_text_helpers_ignore_other_events():
    assert delta_text({"type": "assistant"}) is None
    assert delta_text({"type": "stream_event", "event": {"type": "message_start"}}) is None
    assert assistant_text({"type": "result"}) == ""
    assert assistant_text({"type": "assistant", "message": {"content": [
        {"type": "tool_use"}, {"type": "text", "text": "a"}, {"type": "text", "text": "b"},
    ]}}) == "ab"


def test_signal_names():
    assert StreamItem("exit", returncode=-15).signal_name == "SIGTERM"
    assert StreamItem("exit", returncode=1).signal_name is None
