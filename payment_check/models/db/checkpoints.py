from __future__ import annotations
"""SQLAlchemy models for the per-run checkpoint log.

One row per settled lookup and one row per settled chunk. Rows are only
ever inserted (or overwritten with identical content on replay).
"""
from sqlalchemy import Integer, String, Text, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from payment_check.database import Base


class LookupCheckpoint(Base):
    __tablename__ = "lookup_checkpoints"
    __table_args__ = (UniqueConstraint("run_id", "payment_id", name="uq_lookup_checkpoint"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_id: Mapped[str] = mapped_column(String, nullable=False)
    # NULL gateway means the lookup failed terminally
    gateway_name: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ChunkCheckpoint(Base):
    __tablename__ = "chunk_checkpoints"
    __table_args__ = (UniqueConstraint("run_id", "gateway", "chunk_index", name="uq_chunk_checkpoint"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gateway: Mapped[str] = mapped_column(String, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    successful_payment_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    failed_chunks: Mapped[list] = mapped_column(JSON, nullable=False)
    recorded_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
