"""
Queue worker - pulls run requests and control messages from Redis.
"""

import asyncio
import logging
import json
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from pydantic import ValidationError

from controller.src.config import Settings, get_settings
from controller.src.errors import DefinitionError, RunwayError
from controller.src.models.agent import AgentEvent
from controller.src.models.run import ErrorInfo, RunRequest, RunStatus
from controller.src.services.agent_pool import AgentPool
from controller.src.services.pipeline_parser import parse_pipeline_dict
from controller.src.services.scheduler import Scheduler

logger = logging.getLogger(__name__)

RUN_QUEUE = "runway:runs"
ABORT_QUEUE = "runway:aborts"
AGENT_QUEUE = "runway:agents"
RUN_STATUS = "runway:status"

class Worker:
    def __init__(
        self,
        scheduler: Scheduler,
        pool: AgentPool,
        client: redis.Redis,
        settings: Optional[Settings] = None,
    ):
        self.scheduler = scheduler
        self.pool = pool
        self.client = client
        self.settings = settings or get_settings()
        self.tasks: Dict[str, asyncio.Task] = {}

    def queues(self):
        """Control queues are always served; new runs only while a slot is free."""
        keys = [ABORT_QUEUE, AGENT_QUEUE]
        if len(self.tasks) < self.settings.max_concurrent_runs:
            keys.append(RUN_QUEUE)
        return keys

    async def handle(self, queue: str, message: str):
        if queue == RUN_QUEUE:
            await self.start_run(message)
        elif queue == ABORT_QUEUE:
            run_id = json.loads(message)["run_id"]
            self.scheduler.abort(run_id)
        elif queue == AGENT_QUEUE:
            await self.apply_agent_event(AgentEvent.model_validate_json(message))
        else:
            logger.warning(f"Message on unexpected queue {queue}")

    async def start_run(self, message: str):
        request = RunRequest.model_validate_json(message)
        run_id = request.run_id
        logger.info(f"Received run {run_id}")

        try:
            definition = parse_pipeline_dict(request.definition)
            self.scheduler.submit(definition, request.parameters, run_id=run_id)
        except DefinitionError as e:
            logger.error(f"Run {run_id} has an invalid definition: {e}")
            self.scheduler.store.record_run_status(
                run_id, RunStatus.FAILED, ErrorInfo(kind=e.kind, message=str(e))
            )
            await self.client.hset(RUN_STATUS, run_id, RunStatus.FAILED.value)
            return

        await self.client.hset(RUN_STATUS, run_id, RunStatus.RUNNING.value)
        self.tasks[run_id] = asyncio.create_task(self._follow(run_id))

    async def _follow(self, run_id: str):
        """Publish the run's final status once it completes."""
        try:
            snapshot = await self.scheduler.wait(run_id)
            await self.client.hset(RUN_STATUS, run_id, snapshot.status.value)
        finally:
            self.tasks.pop(run_id, None)

    async def apply_agent_event(self, event: AgentEvent):
        if event.op == "register" and event.agent is not None:
            await self.pool.register(event.agent)
        elif event.op == "evict" and event.agent_id:
            await self.pool.evict(event.agent_id)
        else:
            logger.warning(f"Ignoring incomplete agent event: {event}")

    async def run(self):
        """Main worker loop."""
        logger.info("Worker started, waiting for runs...")

        while True:
            try:
                result = await self.client.brpop(self.queues(), timeout=5)
                if not result:
                    continue
                queue, message = result
                try:
                    await self.handle(queue, message)
                except (RunwayError, ValidationError, ValueError, KeyError) as e:
                    logger.error(f"Rejected message on {queue}: {e}")
            except asyncio.CancelledError:
                logger.info("Worker shutting down...")
                raise
            except RedisError as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)

    async def shutdown(self):
        """Abort in-flight runs and wait for them to wind down."""
        for run_id in list(self.tasks):
            self.scheduler.abort(run_id)
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        await self.client.aclose()
