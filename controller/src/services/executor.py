"""
Step executor - runs a single pipeline step on an acquired agent.
"""

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from string import Template
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from controller.src.config import Settings, get_settings
from controller.src.errors import AgentLostError, LaunchError
from controller.src.models.agent import Agent
from controller.src.models.pipeline import ExecStep, ShellStep
from controller.src.models.run import ErrorInfo, StepResult, StepStatus, utcnow
from controller.src.services.agent_pool import Lease
from controller.src.services.credentials import (
    CredentialProvider,
    EnvCredentialProvider,
    mask_secrets,
)

logger = logging.getLogger(__name__)

Step = Union[ShellStep, ExecStep]

READ_CHUNK_SIZE = 65536


@dataclass
class StepContext:
    run_id: str
    stage: str
    parameters: Dict[str, str] = field(default_factory=dict)
    sink: Callable[[str], None] = lambda chunk: None
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    timeout: Optional[float] = None
    credentials: Optional[CredentialProvider] = None
    step_index: int = 0
    attempt: int = 1


class ProcessHandle:
    """A launched step process, wherever it runs."""

    def lines(self) -> AsyncIterator[str]:
        raise NotImplementedError

    async def wait(self) -> int:
        raise NotImplementedError

    async def terminate(self):
        raise NotImplementedError

    async def kill(self):
        raise NotImplementedError


class Launcher:
    async def launch(
        self, step: Step, agent: Agent, env: Dict[str, str], context: StepContext
    ) -> ProcessHandle:
        raise NotImplementedError


def build_command(step: Step, parameters: Dict[str, str]) -> List[str]:
    """Argument vector for a step; exec arguments get ``${PARAM}`` substitution."""
    if isinstance(step, ShellStep):
        return ["/bin/sh", "-c", step.script()]
    return [Template(arg).safe_substitute(parameters) for arg in step.command]


class LocalProcessHandle(ProcessHandle):
    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process

    async def lines(self):
        # Read fixed-size chunks; a single line may be longer than any buffer
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await self.process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *complete, pending = pending.split("\n")
            for line in complete:
                yield line + "\n"
            if len(pending) >= READ_CHUNK_SIZE:
                yield pending
                pending = ""
        pending += decoder.decode(b"", final=True)
        if pending:
            yield pending

    async def wait(self) -> int:
        return await self.process.wait()

    def _signal(self, signum: int):
        try:
            # The step runs in its own session, so this reaches its children too
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass

    async def terminate(self):
        self._signal(signal.SIGTERM)

    async def kill(self):
        self._signal(signal.SIGKILL)


class LocalLauncher(Launcher):
    """Runs steps as subprocesses of the controller, inside the agent's workdir."""

    async def launch(self, step, agent, env, context):
        workdir = agent.workdir
        if workdir and not os.path.isdir(workdir):
            raise LaunchError(f"Working directory '{workdir}' of agent {agent.id} is not reachable")

        if step.image:
            logger.debug(f"Local agent {agent.id} ignores image '{step.image}' for step '{step.name}'")

        command = build_command(step, context.parameters)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, **env},
                cwd=workdir,
                start_new_session=True,
            )
        except OSError as e:
            raise LaunchError(f"Failed to launch '{command[0]}' on agent {agent.id}: {e}") from e

        return LocalProcessHandle(process)


class StepExecutor:
    """
    Runs steps and reports their outcome as a ``StepResult``.

    A non-zero exit code is a normal ``failed`` result. Only a process that
    cannot be started raises ``LaunchError``; losing the agent mid-step
    raises ``AgentLostError``.
    """

    def __init__(
        self,
        launchers: Optional[Dict[str, Launcher]] = None,
        credentials: Optional[CredentialProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.launchers = launchers if launchers is not None else {"local": LocalLauncher()}
        self.credentials = credentials or EnvCredentialProvider(self.settings.credential_prefix)

    def _environment(self, step: Step, context: StepContext, secrets: Dict[str, str]) -> Dict[str, str]:
        env = {
            "RUNWAY_RUN_ID": context.run_id,
            "RUNWAY_STAGE_NAME": context.stage,
            "RUNWAY_STEP_NAME": step.name,
        }
        env.update(context.parameters)
        env.update(step.env)
        env.update(secrets)
        return env

    async def run(self, step: Step, lease: Lease, context: StepContext) -> StepResult:
        agent = lease.agent
        timeout = step.timeout or context.timeout or self.settings.step_timeout
        started_at = utcnow()
        start = time.monotonic()

        launcher = self.launchers.get(agent.kind)
        if launcher is None:
            raise LaunchError(f"No launcher available for agent kind '{agent.kind}'")

        provider = context.credentials or self.credentials
        secrets = provider.resolve(step.credentials)
        env = self._environment(step, context, secrets)

        logger.info(
            f"Run {context.run_id} stage '{context.stage}': starting step '{step.name}' "
            f"on agent {agent.id} (attempt {context.attempt}, timeout {timeout}s)"
        )
        handle = await launcher.launch(step, agent, env, context)

        tail: List[str] = []
        pump = asyncio.create_task(self._pump(handle, context, list(secrets.values()), tail))
        waiter = asyncio.create_task(handle.wait())
        lost = asyncio.create_task(lease.lost.wait())
        aborted = asyncio.create_task(context.abort.wait())

        try:
            done, _ = await asyncio.wait(
                {waiter, lost, aborted},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if waiter in done:
                exit_code = waiter.result()
                status = StepStatus.SUCCEEDED if exit_code == 0 else StepStatus.FAILED
                error = None
            else:
                exit_code = await self._stop(handle, waiter)
                if lost in done:
                    status, error = None, None
                elif aborted in done:
                    status = StepStatus.ABORTED
                    error = ErrorInfo(kind="Aborted", message="Run aborted while step was running")
                else:
                    status = StepStatus.TIMED_OUT
                    error = ErrorInfo(kind="TimedOut", message=f"Step exceeded timeout of {timeout}s")
        except asyncio.CancelledError:
            await handle.kill()
            waiter.cancel()
            raise
        finally:
            for task in (lost, aborted):
                task.cancel()
            await self._drain(pump)

        if status is None:
            raise AgentLostError(agent.id)

        result = StepResult(
            name=step.name,
            status=status,
            exit_code=exit_code,
            attempts=context.attempt,
            started_at=started_at,
            finished_at=utcnow(),
            duration=time.monotonic() - start,
            output="".join(tail)[-self.settings.output_tail_chars:],
            error=error,
        )
        logger.info(
            f"Run {context.run_id} stage '{context.stage}': step '{step.name}' "
            f"{result.status.value} (exit code {exit_code}) in {result.duration:.1f}s"
        )
        return result

    async def _pump(self, handle: ProcessHandle, context: StepContext, secrets: List[str], tail: List[str]):
        """Forward output to the sink as it is produced."""
        size = 0
        async for line in handle.lines():
            line = mask_secrets(line, secrets)
            context.sink(line)
            tail.append(line)
            size += len(line)
            while size > self.settings.output_tail_chars and len(tail) > 1:
                size -= len(tail.pop(0))

    async def _drain(self, pump: asyncio.Task):
        try:
            await asyncio.wait_for(pump, timeout=self.settings.kill_grace_period)
        except asyncio.TimeoutError:
            logger.warning("Output stream did not close after the step ended")

    async def _stop(self, handle: ProcessHandle, waiter: asyncio.Task) -> Optional[int]:
        """Terminate a running step, escalating to a kill after the grace period."""
        await handle.terminate()
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=self.settings.kill_grace_period)
        except asyncio.TimeoutError:
            logger.warning("Step ignored termination signal, killing it")
            await handle.kill()
            return await waiter
