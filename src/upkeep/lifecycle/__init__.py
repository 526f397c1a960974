"""Lifecycle module — status state machine and assignment resolver."""

from upkeep.lifecycle.assignment import AssignmentCheck, AssignmentResolver
from upkeep.lifecycle.state_machine import RequestStateMachine, TransitionCheck

__all__ = [
    "AssignmentCheck",
    "AssignmentResolver",
    "RequestStateMachine",
    "TransitionCheck",
]
