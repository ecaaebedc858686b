import asyncio
import time

import pytest

from controller.src.config import Settings
from controller.src.models.agent import Agent
from controller.src.services.agent_pool import AgentPool
from controller.src.services.credentials import StaticCredentialProvider
from controller.src.services.executor import StepExecutor
from controller.src.services.scheduler import Scheduler
from controller.src.services.state_store import MemoryRunStateStore

SECRETS = {"API_TOKEN": "s3cr3t-t0ken"}


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        step_timeout=30,
        acquire_timeout=1,
        kill_grace_period=1,
        max_concurrent_runs=2,
    )


@pytest.fixture
def agents(tmp_path):
    return [
        Agent(id="linux-1", labels=["linux"], workdir=str(tmp_path)),
        Agent(id="linux-2", labels=["linux", "docker"], workdir=str(tmp_path)),
    ]


@pytest.fixture
def pool(agents):
    return AgentPool(agents)


@pytest.fixture
def store():
    return MemoryRunStateStore()


@pytest.fixture
def executor(settings):
    return StepExecutor(credentials=StaticCredentialProvider(SECRETS), settings=settings)


@pytest.fixture
def scheduler(pool, executor, store, settings):
    return Scheduler(pool, executor, store, settings)


@pytest.fixture
def wait_for_output():
    """Poll a run's output until ``text`` shows up for ``stage``."""

    async def wait(store, run_id, stage, text, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if text in store.read_output(run_id, stage).get(stage, ""):
                return
            await asyncio.sleep(0.05)
        raise AssertionError(f"'{text}' never appeared in output of stage '{stage}'")

    return wait
