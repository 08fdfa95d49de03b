"""
Orchestration feature — agent-planned execution waves.

Public API:
    from features.orchestration import get_manager, OrchestrationManager
    from features.orchestration import OrchestrationError, SessionNotFoundError
"""

from features.orchestration.manager import OrchestrationManager, SessionStateError, get_manager
from features.orchestration.models import (
    ApplyOverrides,
    ApplyResult,
    OrchestrationError,
    OrchestrationPlan,
    OrchestrationSession,
    SessionNotFoundError,
    SessionStatus,
)

__all__ = [
    "ApplyOverrides",
    "ApplyResult",
    "OrchestrationError",
    "OrchestrationManager",
    "OrchestrationPlan",
    "OrchestrationSession",
    "SessionNotFoundError",
    "SessionStateError",
    "SessionStatus",
    "get_manager",
]
