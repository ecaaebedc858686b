"""
Runway error taxonomy.
"""

from typing import Optional


class RunwayError(Exception):
    """Base exception for all Runway errors."""

    kind = "RunwayError"


class DefinitionError(RunwayError):
    """Raised when a pipeline definition is malformed."""

    kind = "DefinitionError"


class AcquireError(RunwayError):
    """Raised when no matching agent could be acquired."""

    TIMEOUT = "Timeout"

    def __init__(self, labels, timeout: float, kind: str = TIMEOUT):
        self.labels = sorted(labels)
        self.timeout = timeout
        self.kind = f"AcquireError.{kind}"
        super().__init__(
            f"No agent matching {self.labels or 'any'} became available within {timeout}s"
        )


class ReleaseError(RunwayError):
    """Raised when releasing an agent slot that is not allocated."""

    NOT_ALLOCATED = "NotAllocated"

    def __init__(self, agent_id: str, kind: str = NOT_ALLOCATED):
        self.agent_id = agent_id
        self.kind = f"ReleaseError.{kind}"
        super().__init__(f"Agent '{agent_id}' is not allocated to this lease")


class RegistrationError(RunwayError):
    """Raised when an agent cannot be registered."""

    kind = "RegistrationError"


class LaunchError(RunwayError):
    """Raised when a step process could not even be started."""

    kind = "LaunchError"


class AgentLostError(RunwayError):
    """Raised when the agent running a step disappears mid-execution."""

    kind = "AgentLostError"

    def __init__(self, agent_id: str, message: Optional[str] = None):
        self.agent_id = agent_id
        super().__init__(message or f"Agent '{agent_id}' was lost during execution")


class RunStateError(RunwayError):
    """Raised on invalid run state transitions."""

    kind = "RunStateError"
