"""
Run state models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum

from controller.src.models.pipeline import SCHEMA_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"

    @property
    def is_failure(self) -> bool:
        # A timeout is a failure with a more specific reason
        return self in (StageStatus.FAILED, StageStatus.TIMED_OUT)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"
    SKIPPED = "skipped"


class ErrorInfo(BaseModel):
    kind: str
    message: str = ""
    stage: Optional[str] = None


class StepResult(BaseModel):
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    attempts: int = 1
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: float = 0.0
    output: str = ""
    error: Optional[ErrorInfo] = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


class StageResult(BaseModel):
    name: str
    status: StageStatus = StageStatus.PENDING
    agent_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output_ref: Optional[str] = None
    steps: List[StepResult] = []
    error: Optional[ErrorInfo] = None
    skip_reason: Optional[str] = None


class PostActionRecord(BaseModel):
    scope: str  # "stage" or "pipeline"
    condition: str
    step: str
    status: StepStatus
    stage: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[ErrorInfo] = None


class RunSnapshot(BaseModel):
    schema_version: int = SCHEMA_VERSION
    run_id: str
    pipeline: str
    parameters: Dict[str, str] = {}
    status: RunStatus = RunStatus.PENDING
    stages: List[StageResult] = []
    post_actions: List[PostActionRecord] = []
    error: Optional[ErrorInfo] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None


class RunSummary(BaseModel):
    run_id: str
    pipeline: str
    status: RunStatus
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RunRequest(BaseModel):
    """Payload placed on the run queue by the trigger interface."""

    run_id: str
    definition: Dict[str, Any]
    parameters: Dict[str, str] = {}
    queued_at: Optional[datetime] = None
