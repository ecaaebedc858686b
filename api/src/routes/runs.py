from fastapi import APIRouter, Depends, HTTPException
from starlette.concurrency import run_in_threadpool
from typing import List, Optional

from api.src.db.database import get_store
from api.src.models.run import AbortResponse, ManualTriggerRequest, RunLogsResponse, TriggerResponse
from api.src.services.queue import get_run_status, request_abort
from api.src.services.triggers import trigger_run
from controller.src.errors import DefinitionError
from controller.src.models.run import RunSnapshot, RunSummary
from controller.src.services.state_store import RunNotFoundError, RunStateStore

router = APIRouter(prefix="/runs", tags=["runs"])

def _snapshot(store: RunStateStore, run_id: str) -> RunSnapshot:
    try:
        return store.snapshot(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

@router.post("", response_model=TriggerResponse, status_code=201)
async def create_run(request: ManualTriggerRequest, store: RunStateStore = Depends(get_store)):
    """Trigger a run from a definition and parameter bindings."""
    try:
        run_id = await trigger_run(store, request.definition, request.parameters)
    except DefinitionError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return TriggerResponse(status="queued", run_id=run_id)

@router.get("", response_model=List[RunSummary])
def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    store: RunStateStore = Depends(get_store),
):
    """List pipeline runs, newest first."""
    return store.list_runs(limit=limit, offset=offset, status=status)

@router.get("/{run_id}", response_model=RunSnapshot)
def get_run(run_id: str, store: RunStateStore = Depends(get_store)):
    """Current snapshot of a pipeline run."""
    return _snapshot(store, run_id)

@router.get("/{run_id}/status")
async def get_run_status_endpoint(run_id: str, store: RunStateStore = Depends(get_store)):
    """Stage statuses plus the live status published by the controller."""
    snapshot = await run_in_threadpool(_snapshot, store, run_id)
    live_status = await get_run_status(run_id)

    return {
        "run_id": run_id,
        "status": snapshot.status.value,
        "live_status": live_status,
        "stages": [
            {"name": stage.name, "status": stage.status.value}
            for stage in snapshot.stages
        ],
    }

@router.get("/{run_id}/logs", response_model=RunLogsResponse)
def get_run_logs(run_id: str, stage: Optional[str] = None, store: RunStateStore = Depends(get_store)):
    """Get output captured so far, per stage."""
    try:
        output = store.read_output(run_id, stage)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return RunLogsResponse(run_id=run_id, stages=output)

@router.post("/{run_id}/abort", response_model=AbortResponse, status_code=202)
async def abort_run(run_id: str, store: RunStateStore = Depends(get_store)):
    """Ask the controller to abort a run at its next safe point."""
    snapshot = await run_in_threadpool(_snapshot, store, run_id)
    if snapshot.status.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Pipeline run already {snapshot.status.value}",
        )

    await request_abort(run_id)
    return AbortResponse(run_id=run_id, status="abort_requested")
