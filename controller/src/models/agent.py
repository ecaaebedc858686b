"""
Build agent models.
"""

from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class Agent(BaseModel):
    id: str
    labels: List[str] = []
    capacity: int = Field(default=1, ge=1)
    kind: Literal["local", "kubernetes"] = "local"
    workdir: Optional[str] = None  # local agents
    namespace: Optional[str] = None  # kubernetes agents

    def matches(self, labels) -> bool:
        """An agent matches when it carries every requested label."""
        return set(labels).issubset(self.labels)


class AgentEvent(BaseModel):
    """Registration event sent by an external provisioner."""

    op: Literal["register", "evict"]
    agent: Optional[Agent] = None
    agent_id: Optional[str] = None
