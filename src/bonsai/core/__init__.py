"""Core domain models, state machine and policies."""

from bonsai.core.models import enums, state_machine

__all__ = [
    "enums",
    "state_machine",
]
