"""
Database models for the run state store.

Run state is append-only: a run header row plus one row per recorded event
(run status, stage result, post-action) and one row per output chunk.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(String(36), primary_key=True)
    pipeline_name = Column(String(255), nullable=False)
    definition = Column(JSON, nullable=False)
    parameters = Column(JSON, nullable=False)
    stage_names = Column(JSON, nullable=False)
    # Summary columns for listing; the events table stays the source of truth
    status = Column(String(50), default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    finished_at = Column(DateTime(timezone=True))

class RunEvent(Base):
    __tablename__ = "run_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(32), nullable=False)
    stage_name = Column(String(255))
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_run_events_run_id", "run_id", "id"),)

class OutputChunk(Base):
    __tablename__ = "output_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False)
    stage_name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_output_chunks_run_stage", "run_id", "stage_name", "id"),)
