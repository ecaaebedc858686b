"""
Redis queue service for pipeline runs and controller commands.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional

from api.src.config import get_settings
from controller.src.models.agent import AgentEvent
from controller.src.models.run import RunRequest, RunStatus, utcnow
from controller.src.worker import ABORT_QUEUE, AGENT_QUEUE, RUN_QUEUE, RUN_STATUS

settings = get_settings()

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_run(run_id: str, definition: Dict[str, Any], parameters: Dict[str, str]):
    """Add pipeline run to the controller's queue."""
    client = await get_redis_client()

    request = RunRequest(
        run_id=run_id,
        definition=definition,
        parameters=parameters,
        queued_at=utcnow(),
    )

    try:
        await client.lpush(RUN_QUEUE, request.model_dump_json())
        await client.hset(RUN_STATUS, run_id, RunStatus.PENDING.value)
    finally:
        await client.aclose()

async def request_abort(run_id: str):
    """Ask the controller to abort a run."""
    client = await get_redis_client()

    try:
        await client.lpush(ABORT_QUEUE, json.dumps({"run_id": run_id}))
    finally:
        await client.aclose()

async def publish_agent_event(event: AgentEvent):
    """Forward an agent register/evict request to the controller."""
    client = await get_redis_client()

    try:
        await client.lpush(AGENT_QUEUE, event.model_dump_json())
    finally:
        await client.aclose()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get live pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(RUN_STATUS, run_id)
    finally:
        await client.aclose()

async def get_queue_length() -> int:
    """Get number of runs waiting for the controller."""
    client = await get_redis_client()

    try:
        return await client.llen(RUN_QUEUE)
    finally:
        await client.aclose()
