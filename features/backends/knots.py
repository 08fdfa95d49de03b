"""
Thin wrapper around the ``knots`` service CLI.

Every call passes ``--repo-root`` and ``--db`` so the service resolves the
right repository cache. Non-zero exits raise ``KnotsCommandError`` with the
service's stderr for classification by the backend.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any

import config

log = logging.getLogger(__name__)

_CREATED_RE = re.compile(r"^created\s+(\S+)\s+\[", re.MULTILINE)

EDGE_PARENT_OF = "parent_of"
EDGE_BLOCKED_BY = "blocked_by"


class KnotsCommandError(RuntimeError):
    """The service CLI exited non-zero or produced unparseable output."""


def _base_args(repo_path: str) -> list[str]:
    root = Path(repo_path).resolve()
    db_path = Path(config.KNOTS_DB_PATH)
    if not db_path.is_absolute():
        db_path = root / db_path
    return [config.KNOTS_BIN, "--repo-root", str(root), "--db", str(db_path)]


def _knots(repo_path: str, *args: str) -> str:
    try:
        result = subprocess.run(
            [*_base_args(repo_path), *args],
            capture_output=True,
            text=True,
            cwd=repo_path,
            timeout=config.KNOTS_COMMAND_TIMEOUT_SEC,
        )
    except subprocess.TimeoutExpired as e:
        raise KnotsCommandError(
            f"knots command timed out after {config.KNOTS_COMMAND_TIMEOUT_SEC}s"
        ) from e
    if result.returncode != 0:
        message = result.stderr.strip() or f"knots {args[0]} failed"
        log.warning("knots %s failed: %s", " ".join(args[:2]), message)
        raise KnotsCommandError(message)
    return result.stdout.strip()


def _parse_json(raw: str, what: str) -> Any:
    try:
        return json.loads(raw) if raw else []
    except json.JSONDecodeError as e:
        raise KnotsCommandError(f"Failed to parse knots {what} output") from e


def list_knots(repo_path: str) -> list[dict]:
    return _parse_json(_knots(repo_path, "ls", "--json"), "ls")


def show_knot(knot_id: str, repo_path: str) -> dict:
    return _parse_json(_knots(repo_path, "show", knot_id, "--json"), "show")


def list_profiles(repo_path: str) -> list[dict]:
    return _parse_json(_knots(repo_path, "profile", "list", "--json"), "profile list")


def new_knot(title: str, body: str | None = None, state: str | None = None,
             profile: str | None = None, repo_path: str = ".") -> str:
    args = ["new"]
    if body:
        args += ["--body", body]
    if state:
        args += ["--state", state]
    if profile:
        args += ["--profile", profile]
    args += ["--", title]
    out = _knots(repo_path, *args)
    match = _CREATED_RE.search(out)
    if not match:
        raise KnotsCommandError("Failed to parse knots new output")
    return match.group(1)


def update_knot(knot_id: str, patch: dict[str, Any], repo_path: str) -> None:
    """Apply a patch; keys mirror the CLI flags (``add_tags``, ``add_note`` ...)."""
    args = ["update", knot_id]
    for key in ("title", "description", "priority", "status", "type"):
        if patch.get(key) is not None:
            args += [f"--{key}", str(patch[key])]
    for tag in patch.get("add_tags") or []:
        if tag.strip():
            args += ["--add-tag", tag]
    for tag in patch.get("remove_tags") or []:
        if tag.strip():
            args += ["--remove-tag", tag]
    if patch.get("add_note") is not None:
        args += ["--add-note", patch["add_note"]]
        if patch.get("note_username"):
            args += ["--note-username", patch["note_username"]]
    if patch.get("force"):
        args.append("--force")
    _knots(repo_path, *args)


def list_edges(knot_id: str, direction: str = "both", repo_path: str = ".") -> list[dict]:
    out = _knots(repo_path, "edge", "list", knot_id, "--direction", direction, "--json")
    return _parse_json(out, "edge list")


def add_edge(src: str, kind: str, dst: str, repo_path: str) -> None:
    _knots(repo_path, "edge", "add", src, kind, dst)


def remove_edge(src: str, kind: str, dst: str, repo_path: str) -> None:
    _knots(repo_path, "edge", "remove", src, kind, dst)
