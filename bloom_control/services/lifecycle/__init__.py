"""
Lifecycle - server state machine and the orchestrator that drives it.
"""

from .lifecycle import LifecycleOrchestrator, calculate_cost
from .transitions import Trigger, TRANSITIONS, next_state, can_transition

__all__ = [
    "LifecycleOrchestrator",
    "calculate_cost",
    "Trigger",
    "TRANSITIONS",
    "next_state",
    "can_transition"
]
