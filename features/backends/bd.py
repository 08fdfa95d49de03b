"""
Thin wrapper around the ``bd`` tracker binary.

Each helper runs one subcommand with ``subprocess.run`` and returns parsed
stdout. A non-zero exit raises ``BdCommandError`` carrying the tracker's
stderr so the backend can classify it.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

import config

log = logging.getLogger(__name__)


class BdCommandError(RuntimeError):
    """The tracker binary exited non-zero or produced unparseable output."""


def _base_args() -> list[str]:
    args = [config.BD_BIN]
    if config.BD_DB:
        args += ["--db", config.BD_DB]
    return args


def _bd(repo_path: str | None, *args: str) -> str:
    """Run a bd command in the target repo and return stripped stdout."""
    cmd = [*_base_args(), *args]
    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        cwd=repo_path or None,
        timeout=config.BD_COMMAND_TIMEOUT_SEC,
    )
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or f"bd {args[0]} failed"
        log.warning("bd %s failed: %s", " ".join(args[:2]), message)
        raise BdCommandError(message)
    return result.stdout.strip()


def _parse_json(raw: str, what: str) -> Any:
    try:
        return json.loads(raw) if raw else []
    except json.JSONDecodeError as e:
        raise BdCommandError(f"Failed to parse bd {what} output: {e}") from e


def _flag_args(fields: dict[str, Any]) -> list[str]:
    args: list[str] = []
    for key, val in fields.items():
        if val is None or val == "":
            continue
        args += [f"--{key}", str(val)]
    return args


def list_issues(filters: dict[str, Any] | None = None, repo_path: str | None = None) -> list[dict]:
    out = _bd(repo_path, "list", "--json", "--limit", "0", *_flag_args(filters or {}))
    return _parse_json(out, "list")


def ready_issues(filters: dict[str, Any] | None = None, repo_path: str | None = None) -> list[dict]:
    out = _bd(repo_path, "ready", "--json", "--limit", "0", *_flag_args(filters or {}))
    return _parse_json(out, "ready")


def search_issues(query: str, filters: dict[str, Any] | None = None,
                  repo_path: str | None = None) -> list[dict]:
    out = _bd(repo_path, "search", query, "--json", "--limit", "0", *_flag_args(filters or {}))
    return _parse_json(out, "search")


def query_issues(expression: str, limit: int | None = None, sort: str | None = None,
                 repo_path: str | None = None) -> list[dict]:
    args = ["query", expression, "--json"]
    if limit:
        args += ["--limit", str(limit)]
    if sort:
        args += ["--sort", sort]
    return _parse_json(_bd(repo_path, *args), "query")


def show_issue(issue_id: str, repo_path: str | None = None) -> dict:
    parsed = _parse_json(_bd(repo_path, "show", issue_id, "--json"), "show")
    if isinstance(parsed, list):
        if not parsed:
            raise BdCommandError(f"Issue {issue_id} not found")
        parsed = parsed[0]
    return parsed


def create_issue(fields: dict[str, Any], repo_path: str | None = None) -> str:
    """Create an issue and return its id; bd may print JSON or a bare id."""
    fields = dict(fields)
    labels = fields.pop("labels", None)
    args = ["create", "--json", *_flag_args(fields)]
    if labels:
        args += ["--labels", ",".join(labels)]
    out = _bd(repo_path, *args)
    try:
        parsed = json.loads(out)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("id"):
        return str(parsed["id"])
    if out and parsed is None:
        return out.splitlines()[-1].strip()
    raise BdCommandError("Failed to parse bd create output")


def update_issue(issue_id: str, fields: dict[str, Any], add_labels: list[str] | None = None,
                 remove_labels: list[str] | None = None, repo_path: str | None = None) -> None:
    args = ["update", issue_id, *_flag_args(fields)]
    for label in add_labels or []:
        args += ["--add-label", label]
    for label in remove_labels or []:
        args += ["--remove-label", label]
    _bd(repo_path, *args)


def delete_issue(issue_id: str, repo_path: str | None = None) -> None:
    _bd(repo_path, "delete", issue_id, "--force")


def close_issue(issue_id: str, reason: str | None = None, repo_path: str | None = None) -> None:
    args = ["close", issue_id]
    if reason:
        args += ["--reason", reason]
    _bd(repo_path, *args)


def list_deps(issue_id: str, dep_type: str | None = None, repo_path: str | None = None) -> list[dict]:
    args = ["dep", "list", issue_id, "--json"]
    if dep_type:
        args += ["--type", dep_type]
    return _parse_json(_bd(repo_path, *args), "dep list")


def add_dep(blocker_id: str, blocked_id: str, repo_path: str | None = None) -> None:
    _bd(repo_path, "dep", blocker_id, "--blocks", blocked_id)


def remove_dep(blocker_id: str, blocked_id: str, repo_path: str | None = None) -> None:
    _bd(repo_path, "dep", "remove", blocker_id, blocked_id)
