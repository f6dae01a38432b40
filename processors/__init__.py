"""Processors module for session tracking and replay."""

from .session_tracker import (
    ObservationKind, SessionObservation, SessionState, SessionTracker, TrackedPacket
)
from .replay_scheduler import ReplayEntry, ReplayReport, ReplayScheduler, ReplayState

__all__ = [
    "ObservationKind",
    "SessionObservation",
    "SessionState",
    "SessionTracker",
    "TrackedPacket",
    "ReplayEntry",
    "ReplayReport",
    "ReplayScheduler",
    "ReplayState"
]
