from __future__ import annotations

from hookpolicy.session.signals import (
    CheckpointSignals,
    GitSignals,
    StaticSignals,
    current_revision,
)
from hookpolicy.session.store import (
    ATOMIC_APPEND_LIMIT,
    CheckpointDiff,
    CheckpointEntry,
    CheckpointStore,
)

__all__ = [
    "ATOMIC_APPEND_LIMIT",
    "CheckpointDiff",
    "CheckpointEntry",
    "CheckpointSignals",
    "CheckpointStore",
    "GitSignals",
    "StaticSignals",
    "current_revision",
]
