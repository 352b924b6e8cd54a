from .check_runs import CheckRun
from .checkpoints import LookupCheckpoint, ChunkCheckpoint
from .enums import RunPhase, RunStatus, FailureStage

__all__ = [
    "CheckRun",
    "LookupCheckpoint",
    "ChunkCheckpoint",
    "RunPhase",
    "RunStatus",
    "FailureStage",
]
