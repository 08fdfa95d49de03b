"""
Verification feature — post-completion verification of beats by a second agent.

Public API:
    from features.verification import get_orchestrator, VerificationOrchestrator
"""

from features.verification.launcher import ActionRelauncher
from features.verification.orchestrator import (
    VerificationEvent,
    VerificationOrchestrator,
    get_orchestrator,
)
from features.verification.workflow import VerificationOutcome, VerificationStage

__all__ = [
    "ActionRelauncher",
    "VerificationEvent",
    "VerificationOrchestrator",
    "VerificationOutcome",
    "VerificationStage",
    "get_orchestrator",
]
