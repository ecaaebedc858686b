from controller.src.services.agent_pool import AgentPool, Lease
from controller.src.services.credentials import (
    CredentialProvider,
    EnvCredentialProvider,
    StaticCredentialProvider,
)
from controller.src.services.executor import StepContext, StepExecutor, LocalLauncher
from controller.src.services.pipeline_parser import parse_pipeline_config, parse_pipeline_dict
from controller.src.services.scheduler import Scheduler
from controller.src.services.stage_graph import Graph, ExecutionUnit, compile
from controller.src.services.state_store import (
    RunStateStore,
    MemoryRunStateStore,
    RunNotFoundError,
)
from controller.src.services.sql_store import SqlRunStateStore

__all__ = [
    "AgentPool",
    "Lease",
    "CredentialProvider",
    "EnvCredentialProvider",
    "StaticCredentialProvider",
    "StepContext",
    "StepExecutor",
    "LocalLauncher",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "Scheduler",
    "Graph",
    "ExecutionUnit",
    "compile",
    "RunStateStore",
    "MemoryRunStateStore",
    "RunNotFoundError",
    "SqlRunStateStore",
]
