"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Repository
DEFAULT_REPO_PATH = os.getenv("DEFAULT_REPO_PATH", "")

# API server
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Backend routing
BACKEND_TYPE = os.getenv("BACKEND_TYPE", "cli")

# CLI-backed tracker
BD_BIN = os.getenv("BD_BIN", "bd")
BD_DB = os.getenv("BD_DB", "")
BD_COMMAND_TIMEOUT_SEC = float(os.getenv("BD_COMMAND_TIMEOUT_SEC", "30"))

# Service-backed tracker
KNOTS_BIN = os.getenv("KNOTS_BIN", "knots")
KNOTS_DB_PATH = os.getenv("KNOTS_DB_PATH", ".knots/cache/state.sqlite")
KNOTS_COMMAND_TIMEOUT_SEC = float(os.getenv("KNOTS_COMMAND_TIMEOUT_SEC", "5"))

# Reasoning agent
AGENT_COMMAND = os.getenv("AGENT_COMMAND", "claude")
AGENT_MODEL = os.getenv("AGENT_MODEL", "")

# Verification
VERIFICATION_ENABLED = _env_bool("VERIFICATION_ENABLED", False)
VERIFICATION_AGENT_COMMAND = os.getenv("VERIFICATION_AGENT_COMMAND", "") or AGENT_COMMAND
VERIFICATION_AGENT_MODEL = os.getenv("VERIFICATION_AGENT_MODEL", "") or AGENT_MODEL
VERIFICATION_MAX_RETRIES = int(os.getenv("VERIFICATION_MAX_RETRIES", "3"))

# Orchestration sessions
ORCHESTRATION_MAX_BUFFER = 5_000
ORCHESTRATION_CLEANUP_DELAY_SEC = 10 * 60
ORCHESTRATION_LISTENER_DRAIN_SEC = 2.0
ORCHESTRATION_ABORT_GRACE_SEC = 5.0

# Service-backed caches
KNOTS_EDGE_CACHE_TTL_SEC = 2.0
KNOTS_PROFILE_CACHE_TTL_SEC = 10.0

# Verification bookkeeping
VERIFICATION_LOCK_TIMEOUT_SEC = 10 * 60
VERIFICATION_MAX_EVENT_LOG = 500
VERIFICATION_MAX_OUTPUT_CHARS = 2_000
