from controller.src.models.pipeline import (
    SCHEMA_VERSION,
    PipelineDefinition,
    StageSpec,
    ShellStep,
    ExecStep,
    Guard,
    PostActions,
)
from controller.src.models.run import (
    RunStatus,
    StageStatus,
    StepStatus,
    ErrorInfo,
    StepResult,
    StageResult,
    PostActionRecord,
    RunSnapshot,
    RunSummary,
    RunRequest,
)
from controller.src.models.agent import Agent, AgentEvent

__all__ = [
    "SCHEMA_VERSION",
    "PipelineDefinition",
    "StageSpec",
    "ShellStep",
    "ExecStep",
    "Guard",
    "PostActions",
    "RunStatus",
    "StageStatus",
    "StepStatus",
    "ErrorInfo",
    "StepResult",
    "StageResult",
    "PostActionRecord",
    "RunSnapshot",
    "RunSummary",
    "RunRequest",
    "Agent",
    "AgentEvent",
]
