"""Central Enum definitions for run and failure states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and orchestration logic.
"""
from __future__ import annotations
import enum


class RunPhase(str, enum.Enum):
    """Progress phase of a run. Declaration order is the only legal order."""
    INITIALIZING = "INITIALIZING"
    ES_LOOKUP = "ES_LOOKUP"
    GATEWAY_PROCESSING = "GATEWAY_PROCESSING"
    AGGREGATING = "AGGREGATING"
    COMPLETED = "COMPLETED"

    @property
    def rank(self) -> int:
        return list(RunPhase).index(self)


class RunStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureStage(str, enum.Enum):
    BATCH_NOTIFY = "BATCH_NOTIFY"
    ITEM_TRIGGER = "ITEM_TRIGGER"
    # Sentinel for an unexpected escape from a gateway branch
    BRANCH = "BRANCH"
    # Work skipped because the run was cancelled
    CANCELLED = "CANCELLED"


__all__ = [
    "RunPhase",
    "RunStatus",
    "FailureStage",
]
