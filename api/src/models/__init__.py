from api.src.models.run import (
    ManualTriggerRequest,
    TriggerResponse,
    RunLogsResponse,
    AbortResponse,
)

__all__ = [
    "ManualTriggerRequest",
    "TriggerResponse",
    "RunLogsResponse",
    "AbortResponse",
]
