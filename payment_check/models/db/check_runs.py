from __future__ import annotations
"""SQLAlchemy model for payment status check runs."""
from sqlalchemy import Integer, String, Text, DateTime, Enum, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from payment_check.database import Base
from .enums import RunPhase, RunStatus


class CheckRun(Base):
    __tablename__ = "check_runs"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payment_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), nullable=False, default=RunStatus.PENDING, index=True)
    phase: Mapped[RunPhase] = mapped_column(Enum(RunPhase), nullable=False, default=RunPhase.INITIALIZING)
    # Final snapshot / result are written once the run completes
    progress: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Incremented each time a worker (re)starts the run
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
