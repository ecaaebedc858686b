"""Tests for the queue worker, with a mocked Redis client."""

import json
from unittest.mock import AsyncMock

import pytest

from controller.src.models.agent import Agent, AgentEvent
from controller.src.models.run import RunRequest, RunStatus, StageStatus
from controller.src.services.pipeline_parser import parse_pipeline_dict
from controller.src.worker import ABORT_QUEUE, AGENT_QUEUE, RUN_QUEUE, RUN_STATUS, Worker

DEFINITION = {
    "name": "ci",
    "stages": [{"name": "Build", "steps": [{"name": "b", "commands": ["echo built"]}]}],
}


@pytest.fixture
def redis_client():
    return AsyncMock()


@pytest.fixture
def worker(scheduler, pool, redis_client, settings):
    return Worker(scheduler, pool, redis_client, settings)


def _run_message(run_id, definition=None, parameters=None):
    return RunRequest(
        run_id=run_id,
        definition=definition or DEFINITION,
        parameters=parameters or {},
    ).model_dump_json()


@pytest.mark.asyncio
async def test_run_message_starts_run(worker, redis_client, store):
    await worker.handle(RUN_QUEUE, _run_message("run-1"))
    task = worker.tasks["run-1"]
    await task

    snapshot = store.snapshot("run-1")
    assert snapshot.status == RunStatus.SUCCEEDED
    assert snapshot.stage("Build").status == StageStatus.SUCCEEDED
    redis_client.hset.assert_any_await(RUN_STATUS, "run-1", "running")
    redis_client.hset.assert_awaited_with(RUN_STATUS, "run-1", "succeeded")
    assert worker.tasks == {}

@pytest.mark.asyncio
async def test_run_message_for_run_created_by_api(worker, store):
    definition = parse_pipeline_dict(DEFINITION)
    store.create_run("run-1", definition, {"BRANCH_NAME": "main"}, ["Build"])

    await worker.handle(RUN_QUEUE, _run_message("run-1", parameters={"BRANCH_NAME": "main"}))
    await worker.tasks["run-1"]

    assert store.snapshot("run-1").status == RunStatus.SUCCEEDED

@pytest.mark.asyncio
async def test_invalid_definition_fails_run(worker, redis_client, store):
    store.create_run("run-1", parse_pipeline_dict(DEFINITION), {}, ["Build"])
    broken = {"stages": [{"name": "Build"}, {"name": "Build"}]}

    await worker.handle(RUN_QUEUE, _run_message("run-1", definition=broken))

    snapshot = store.snapshot("run-1")
    assert snapshot.status == RunStatus.FAILED
    assert snapshot.error.kind == "DefinitionError"
    redis_client.hset.assert_awaited_with(RUN_STATUS, "run-1", "failed")
    assert "run-1" not in worker.tasks

@pytest.mark.asyncio
async def test_abort_message_before_run_message(worker, store):
    await worker.handle(ABORT_QUEUE, json.dumps({"run_id": "run-1"}))
    await worker.handle(RUN_QUEUE, _run_message("run-1"))
    await worker.tasks["run-1"]

    snapshot = store.snapshot("run-1")
    assert snapshot.status == RunStatus.ABORTED
    assert snapshot.stage("Build").status == StageStatus.SKIPPED

@pytest.mark.asyncio
async def test_agent_events_update_pool(worker, pool, tmp_path):
    agent = Agent(id="gpu-1", labels=["gpu"], workdir=str(tmp_path))

    await worker.handle(AGENT_QUEUE, AgentEvent(op="register", agent=agent).model_dump_json())
    assert "gpu-1" in [a.id for a in pool.agents()]

    await worker.handle(AGENT_QUEUE, AgentEvent(op="evict", agent_id="gpu-1").model_dump_json())
    assert "gpu-1" not in [a.id for a in pool.agents()]

def test_run_queue_polled_only_with_free_slot(worker):
    assert worker.queues() == [ABORT_QUEUE, AGENT_QUEUE, RUN_QUEUE]

    worker.tasks = {"run-1": object(), "run-2": object()}
    assert worker.queues() == [ABORT_QUEUE, AGENT_QUEUE]

@pytest.mark.asyncio
async def test_shutdown_aborts_in_flight_runs(worker, redis_client, store):
    slow = {
        "stages": [{"name": "Build", "steps": [{"name": "b", "commands": ["sleep 10"]}]}],
    }
    await worker.handle(RUN_QUEUE, _run_message("run-1", definition=slow))

    await worker.shutdown()

    assert store.snapshot("run-1").status == RunStatus.ABORTED
    redis_client.aclose.assert_awaited_once()
