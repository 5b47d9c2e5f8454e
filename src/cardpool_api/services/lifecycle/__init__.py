"""Account lifecycle state machine and day/quota progression."""

from .state_machine import AccountState, AccountStateMachine, InvalidAccountTransitionError
from .sweep import AccountLifecycleSweeper

__all__ = [
    "AccountLifecycleSweeper",
    "AccountState",
    "AccountStateMachine",
    "InvalidAccountTransitionError",
]
