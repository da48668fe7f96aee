"""Persisted execution state and working-tree snapshots."""

from forge.state.repositories import (
    Execution,
    ExecutionRepository,
    TaskAttempt,
    TaskAttemptRepository,
    Version,
    VersionRepository,
)
from forge.state.store import StateStore, StateStoreError
from forge.state.vcs import GitSnapshotter, VersionControlError

__all__ = [
    "Execution",
    "ExecutionRepository",
    "GitSnapshotter",
    "StateStore",
    "StateStoreError",
    "TaskAttempt",
    "TaskAttemptRepository",
    "Version",
    "VersionControlError",
    "VersionRepository",
]
