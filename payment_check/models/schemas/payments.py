"""
Pydantic schemas for payment status check runs.
"""
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from payment_check.models.db.enums import FailureStage, RunPhase, RunStatus
from payment_check.services.run_config import RunConfig
from payment_check.services.types import CheckStatusResult, ProgressSnapshot


class RunConfigOverrides(BaseModel):
    """Per-request overrides of the service default run configuration. Omitted fields keep the default."""
    max_parallel_lookups: Optional[int] = Field(None, ge=1, description="Maximum concurrent gateway lookups")
    max_payments_per_chunk: Optional[int] = Field(None, ge=1, description="Maximum payments per batch notify call")
    run_deadline_seconds: Optional[float] = Field(None, gt=0, description="Advisory deadline for the whole run")
    abort_on_deadline: Optional[bool] = Field(None, description="Cancel the run when the deadline passes")
    lookup_max_attempts: Optional[int] = Field(None, ge=1)
    notify_max_attempts: Optional[int] = Field(None, ge=1)
    trigger_max_attempts: Optional[int] = Field(None, ge=1)

    def apply(self, base: RunConfig) -> RunConfig:
        """Validated copy of `base` with these overrides applied."""
        config = base.with_overrides(
            max_parallel_lookups=self.max_parallel_lookups,
            max_payments_per_chunk=self.max_payments_per_chunk,
            run_deadline_seconds=self.run_deadline_seconds,
            abort_on_deadline=self.abort_on_deadline,
        )
        retries = {}
        if self.lookup_max_attempts is not None:
            retries["lookup_retry"] = replace(config.lookup_retry, max_attempts=self.lookup_max_attempts)
        if self.notify_max_attempts is not None:
            retries["notify_retry"] = replace(config.notify_retry, max_attempts=self.notify_max_attempts)
        if self.trigger_max_attempts is not None:
            retries["trigger_retry"] = replace(config.trigger_retry, max_attempts=self.trigger_max_attempts)
        return config.with_overrides(**retries) if retries else config


class CheckStatusRequest(BaseModel):
    payment_ids: List[str] = Field(min_length=1, description="Payment ids to check; duplicates are collapsed")
    config: Optional[RunConfigOverrides] = None

    @field_validator("payment_ids")
    @classmethod
    def _non_blank(cls, value: List[str]) -> List[str]:
        if any(not pid.strip() for pid in value):
            raise ValueError("payment ids must be non-empty strings")
        return value


class CheckStatusStarted(BaseModel):
    run_id: str
    status: str = "STARTED"


class GatewayProgressRead(BaseModel):
    total_chunks: int
    completed_chunks: int
    current_chunk_index: int


class ProgressRead(BaseModel):
    total_payments: int
    gateways_identified: int
    chunks_total: int
    chunks_completed: int
    chunks_failed: int
    phase: RunPhase
    cancelled: bool = False
    deadline_exceeded: bool = False
    gateways: Dict[str, GatewayProgressRead] = Field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: ProgressSnapshot) -> "ProgressRead":
        return cls.model_validate(snapshot.to_dict())


class FailedChunkRead(BaseModel):
    chunk_index: int = Field(description="Index within the gateway's chunk list; -1 for a whole-branch failure")
    payment_ids: List[str]
    error_message: str
    stage: FailureStage


class CheckStatusResultRead(BaseModel):
    successful: Dict[str, List[str]] = Field(default_factory=dict)
    failed: Dict[str, List[FailedChunkRead]] = Field(default_factory=dict)
    gateway_lookup_failed: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: CheckStatusResult) -> "CheckStatusResultRead":
        return cls.model_validate(result.to_dict())


class CheckStatusRunRead(BaseModel):
    """Full view of a run: lifecycle status, live progress and, once completed, the result."""
    run_id: str
    status: RunStatus
    progress: ProgressRead
    result: Optional[CheckStatusResultRead] = None
    error_message: Optional[str] = None
    retrieved_at: datetime
