"""
Run state store.

Run state is written as an append-only sequence of events per run (run
status transitions, stage result transitions, post-action records) plus
output chunks per stage. Readers never see the events themselves: they get a
``RunSnapshot`` folded from every event recorded up to the moment of the
read.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from controller.src.errors import RunStateError
from controller.src.models.pipeline import PipelineDefinition
from controller.src.models.run import (
    ErrorInfo,
    PostActionRecord,
    RunSnapshot,
    RunStatus,
    RunSummary,
    StageResult,
    utcnow,
)

logger = logging.getLogger(__name__)

RUN_EVENT = "run"
STAGE_EVENT = "stage"
POST_ACTION_EVENT = "post_action"

_ALLOWED = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.ABORTED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED},
}


class RunNotFoundError(RunStateError, KeyError):
    kind = "RunNotFoundError"


def output_ref(run_id: str, stage_name: str) -> str:
    return f"{run_id}/{stage_name}"


def fold_snapshot(header: Dict[str, Any], events: List[Dict[str, Any]]) -> RunSnapshot:
    """Build a snapshot from a run header and its events, oldest first."""
    stages = {name: {"name": name} for name in header["stage_names"]}
    snapshot = {
        "run_id": header["run_id"],
        "pipeline": header["pipeline"],
        "parameters": header.get("parameters") or {},
        "created_at": header.get("created_at"),
        "post_actions": [],
    }

    for event in events:
        kind = event["kind"]
        payload = event["payload"]
        if kind == RUN_EVENT:
            status = RunStatus(payload["status"])
            snapshot["status"] = status
            if payload.get("error"):
                snapshot["error"] = payload["error"]
            if status == RunStatus.RUNNING:
                snapshot["started_at"] = payload["at"]
            elif status.is_terminal:
                snapshot["finished_at"] = payload["at"]
        elif kind == STAGE_EVENT:
            stages[payload["name"]] = payload
        elif kind == POST_ACTION_EVENT:
            snapshot["post_actions"].append(payload)
        else:
            logger.warning(f"Ignoring unknown event kind '{kind}' for run {header['run_id']}")

    snapshot["stages"] = list(stages.values())
    # Payloads hold JSON values; validation turns timestamps back into datetimes
    return RunSnapshot.model_validate(snapshot)


class RunStateStore:
    """
    Base store. Subclasses provide the storage primitives; status transition
    checks and snapshot folding live here.
    """

    def __init__(self):
        self._status_lock = threading.Lock()
        self._status: Dict[str, RunStatus] = {}

    # Storage primitives

    def _insert_run(self, header: Dict[str, Any], definition: Dict[str, Any]):
        raise NotImplementedError

    def _append_event(self, run_id: str, kind: str, stage_name: Optional[str], payload: Dict[str, Any]):
        raise NotImplementedError

    def _load(self, run_id: str):
        """Return ``(header, events)`` read consistently, or raise RunNotFoundError."""
        raise NotImplementedError

    def _update_summary(self, run_id: str, status: RunStatus, at: datetime):
        pass

    def append_output(self, run_id: str, stage_name: str, chunk: str):
        raise NotImplementedError

    def read_output(self, run_id: str, stage_name: Optional[str] = None) -> Dict[str, str]:
        raise NotImplementedError

    def load_definition(self, run_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def list_runs(self, limit: int = 20, offset: int = 0, status: Optional[str] = None) -> List[RunSummary]:
        raise NotImplementedError

    # Public API

    def create_run(
        self,
        run_id: str,
        definition: PipelineDefinition,
        parameters: Dict[str, str],
        stage_names: List[str],
    ) -> RunSnapshot:
        header = {
            "run_id": run_id,
            "pipeline": definition.name,
            "parameters": dict(parameters),
            "stage_names": list(stage_names),
            "created_at": utcnow().isoformat(),
        }
        self._insert_run(header, definition.model_dump(mode="json"))
        with self._status_lock:
            self._status[run_id] = RunStatus.PENDING
        logger.info(f"Created run {run_id} for pipeline '{definition.name}'")
        return fold_snapshot(header, [])

    def current_status(self, run_id: str) -> RunStatus:
        with self._status_lock:
            status = self._status.get(run_id)
        if status is None:
            status = self.snapshot(run_id).status
        return status

    def record_run_status(self, run_id: str, status: RunStatus, error: Optional[ErrorInfo] = None):
        with self._status_lock:
            current = self._status.get(run_id)
            if current is None:
                current = self.snapshot(run_id).status
            if status not in _ALLOWED.get(current, set()):
                raise RunStateError(
                    f"Run {run_id} cannot move from {current.value} to {status.value}"
                )
            at = utcnow()
            self._append_event(run_id, RUN_EVENT, None, {
                "status": status.value,
                "error": error.model_dump(mode="json") if error else None,
                "at": at.isoformat(),
            })
            self._status[run_id] = status
        self._update_summary(run_id, status, at)
        logger.info(f"Run {run_id} is now {status.value}")

    def _check_writable(self, run_id: str):
        if self.current_status(run_id).is_terminal:
            raise RunStateError(f"Run {run_id} is finished and can no longer change")

    def record_stage(self, run_id: str, result: StageResult):
        self._check_writable(run_id)
        self._append_event(run_id, STAGE_EVENT, result.name, result.model_dump(mode="json"))
        logger.debug(f"Run {run_id} stage '{result.name}' -> {result.status.value}")

    def record_post_action(self, run_id: str, record: PostActionRecord):
        self._check_writable(run_id)
        self._append_event(run_id, POST_ACTION_EVENT, record.stage, record.model_dump(mode="json"))

    def snapshot(self, run_id: str) -> RunSnapshot:
        header, events = self._load(run_id)
        return fold_snapshot(header, events)


class MemoryRunStateStore(RunStateStore):
    """In-process store; safe for concurrent writers and readers across threads."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Any]] = {}

    def _get(self, run_id: str) -> Dict[str, Any]:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _insert_run(self, header, definition):
        with self._lock:
            if header["run_id"] in self._runs:
                raise RunStateError(f"Run {header['run_id']} already exists")
            self._runs[header["run_id"]] = {
                "header": header,
                "definition": definition,
                "events": [],
                "output": {},
            }

    def _append_event(self, run_id, kind, stage_name, payload):
        event = {"kind": kind, "stage": stage_name, "payload": copy.deepcopy(payload)}
        with self._lock:
            self._get(run_id)["events"].append(event)

    def _load(self, run_id):
        with self._lock:
            run = self._get(run_id)
            # Events are never mutated after append, a shallow copy is a stable view
            return dict(run["header"]), list(run["events"])

    def append_output(self, run_id, stage_name, chunk):
        with self._lock:
            self._get(run_id)["output"].setdefault(stage_name, []).append(chunk)

    def read_output(self, run_id, stage_name=None):
        with self._lock:
            output = self._get(run_id)["output"]
            names = [stage_name] if stage_name else list(output)
            return {name: "".join(output.get(name, [])) for name in names}

    def load_definition(self, run_id):
        with self._lock:
            return copy.deepcopy(self._get(run_id)["definition"])

    def list_runs(self, limit=20, offset=0, status=None):
        with self._lock:
            run_ids = list(self._runs)
        summaries = []
        for run_id in reversed(run_ids):
            snapshot = self.snapshot(run_id)
            if status and snapshot.status.value != status:
                continue
            summaries.append(RunSummary(
                run_id=run_id,
                pipeline=snapshot.pipeline,
                status=snapshot.status,
                created_at=snapshot.created_at,
                finished_at=snapshot.finished_at,
            ))
        return summaries[offset:offset + limit]
