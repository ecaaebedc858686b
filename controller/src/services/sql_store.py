"""
SQLAlchemy-backed run state store.

Each recorded event or output chunk is its own INSERT committed in its own
transaction, so a reader can never observe half of a record.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from controller.src.models.db import Base, OutputChunk, PipelineRun, RunEvent
from controller.src.models.run import RunStatus, RunSummary
from controller.src.services.state_store import RunNotFoundError, RunStateStore

logger = logging.getLogger(__name__)

def create_store_engine(database_url: str) -> Engine:
    """Engine for the state store; SQLite URLs get thread-safe settings."""
    if database_url.startswith("sqlite"):
        from sqlalchemy.pool import StaticPool
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)

class SqlRunStateStore(RunStateStore):
    def __init__(self, engine: Engine):
        super().__init__()
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlRunStateStore":
        return cls(create_store_engine(database_url))

    def init_db(self):
        """Create tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    def _insert_run(self, header, definition):
        with self.Session() as session:
            session.add(PipelineRun(
                id=header["run_id"],
                pipeline_name=header["pipeline"],
                definition=definition,
                parameters=header["parameters"],
                stage_names=header["stage_names"],
                status=RunStatus.PENDING.value,
                created_at=datetime.fromisoformat(header["created_at"]),
            ))
            session.commit()

    def _append_event(self, run_id, kind, stage_name, payload):
        with self.Session() as session:
            session.add(RunEvent(run_id=run_id, kind=kind, stage_name=stage_name, payload=payload))
            session.commit()

    def _update_summary(self, run_id: str, status: RunStatus, at: datetime):
        values = {"status": status.value}
        if status.is_terminal:
            values["finished_at"] = at

        with self.Session() as session:
            session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == run_id)
                .values(**values)
            )
            session.commit()

    def _load(self, run_id):
        with self.Session() as session, session.begin():
            run = session.get(PipelineRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)

            events = session.execute(
                select(RunEvent)
                .where(RunEvent.run_id == run_id)
                .order_by(RunEvent.id)
            ).scalars().all()

            header = {
                "run_id": run.id,
                "pipeline": run.pipeline_name,
                "parameters": run.parameters,
                "stage_names": run.stage_names,
                "created_at": run.created_at,
            }
            return header, [{"kind": e.kind, "stage": e.stage_name, "payload": e.payload} for e in events]

    def append_output(self, run_id, stage_name, chunk):
        with self.Session() as session:
            session.add(OutputChunk(run_id=run_id, stage_name=stage_name, content=chunk))
            session.commit()

    def read_output(self, run_id, stage_name=None):
        with self.Session() as session:
            if session.get(PipelineRun, run_id) is None:
                raise RunNotFoundError(run_id)

            query = select(OutputChunk).where(OutputChunk.run_id == run_id).order_by(OutputChunk.id)
            if stage_name:
                query = query.where(OutputChunk.stage_name == stage_name)

            output = {stage_name: ""} if stage_name else {}
            for chunk in session.execute(query).scalars():
                output[chunk.stage_name] = output.get(chunk.stage_name, "") + chunk.content
            return output

    def load_definition(self, run_id):
        with self.Session() as session:
            run = session.get(PipelineRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            return run.definition

    def list_runs(self, limit=20, offset=0, status: Optional[str] = None):
        query = select(PipelineRun).order_by(PipelineRun.created_at.desc(), PipelineRun.id)
        if status:
            query = query.where(PipelineRun.status == status)
        query = query.limit(limit).offset(offset)

        with self.Session() as session:
            return [
                RunSummary(
                    run_id=run.id,
                    pipeline=run.pipeline_name,
                    status=RunStatus(run.status),
                    created_at=run.created_at,
                    finished_at=run.finished_at,
                )
                for run in session.execute(query).scalars()
            ]
