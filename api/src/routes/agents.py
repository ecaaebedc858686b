"""
Agent registration endpoints for external provisioners.
"""

from fastapi import APIRouter
import logging

from api.src.services.queue import publish_agent_event
from controller.src.models.agent import Agent, AgentEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])

@router.post("", status_code=202)
async def register_agent(agent: Agent):
    """Make a freshly provisioned agent available to the controller."""
    await publish_agent_event(AgentEvent(op="register", agent=agent))
    logger.info(f"Registration of agent {agent.id} forwarded to controller")
    return {"status": "accepted", "agent_id": agent.id}

@router.delete("/{agent_id}", status_code=202)
async def evict_agent(agent_id: str):
    """Remove an agent; stages running on it fail with AgentLostError."""
    await publish_agent_event(AgentEvent(op="evict", agent_id=agent_id))
    logger.info(f"Eviction of agent {agent_id} forwarded to controller")
    return {"status": "accepted", "agent_id": agent_id}
