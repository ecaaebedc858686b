from pydantic import BaseModel
from typing import Optional, Dict, Any, Union

class ManualTriggerRequest(BaseModel):
    # YAML text or the decoded pipeline object
    definition: Union[str, Dict[str, Any]]
    parameters: Dict[str, str] = {}

class TriggerResponse(BaseModel):
    status: str
    run_id: Optional[str] = None
    reason: Optional[str] = None

class RunLogsResponse(BaseModel):
    run_id: str
    stages: Dict[str, str]

class AbortResponse(BaseModel):
    run_id: str
    status: str
