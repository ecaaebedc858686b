"""
Run pipeline steps as Kubernetes Jobs.
"""

import asyncio
import logging
from typing import Optional

from kubernetes.client.rest import ApiException

from controller.src.config import Settings, get_settings
from controller.src.errors import LaunchError
from controller.src.k8s.client import KubernetesClient
from controller.src.k8s.job_builder import build_job, build_job_name, get_job_status
from controller.src.services.executor import Launcher, ProcessHandle, build_command
from controller.src.services.log_collector import collect_logs, get_exit_code

logger = logging.getLogger(__name__)


class KubernetesJobHandle(ProcessHandle):
    """
    A step running as a Job.

    Output is polled from the pod log; each poll yields only what was written
    since the previous one.
    """

    def __init__(self, kube: KubernetesClient, job_name: str, namespace: str, poll_interval: float):
        self.kube = kube
        self.job_name = job_name
        self.namespace = namespace
        self.poll_interval = poll_interval
        self.finished = asyncio.Event()

    async def _read_logs(self) -> str:
        return await asyncio.to_thread(collect_logs, self.kube, self.job_name, self.namespace)

    async def lines(self):
        offset = 0
        while True:
            done = self.finished.is_set()
            logs = await self._read_logs()
            if len(logs) > offset:
                for line in logs[offset:].splitlines(keepends=True):
                    yield line
                offset = len(logs)
            if done:
                break
            try:
                await asyncio.wait_for(self.finished.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def wait(self) -> int:
        try:
            while True:
                try:
                    job = await asyncio.to_thread(self.kube.read_job, self.job_name, self.namespace)
                except ApiException as e:
                    if e.status == 404:
                        # Deleted underneath us, usually by terminate()
                        logger.warning(f"Job {self.job_name} disappeared")
                        return -1
                    logger.error(f"Error checking job status: {e}")
                    await asyncio.sleep(self.poll_interval)
                    continue

                status = get_job_status(job)
                if status == "succeeded":
                    return 0
                if status == "failed":
                    exit_code = await asyncio.to_thread(
                        get_exit_code, self.kube, self.job_name, self.namespace
                    )
                    return exit_code if exit_code is not None else 1

                await asyncio.sleep(self.poll_interval)
        finally:
            self.finished.set()

    async def terminate(self):
        await asyncio.to_thread(self.kube.delete_job, self.job_name, self.namespace)

    async def kill(self):
        await asyncio.to_thread(self.kube.delete_job, self.job_name, self.namespace, 0)


class KubernetesLauncher(Launcher):
    def __init__(self, kube: Optional[KubernetesClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.kube = kube or KubernetesClient(self.settings)

    async def launch(self, step, agent, env, context):
        if not step.image:
            raise LaunchError(
                f"Step '{step.name}' needs an 'image' to run on kubernetes agent {agent.id}"
            )

        namespace = self.kube.namespace_for(agent.namespace)
        job_name = build_job_name(
            context.run_id, context.stage, context.step_index, step.name, context.attempt
        )
        job = build_job(
            job_name=job_name,
            namespace=namespace,
            run_id=context.run_id,
            stage_name=context.stage,
            image=step.image,
            command=build_command(step, context.parameters),
            env_vars=env,
            timeout=step.timeout or context.timeout or self.settings.step_timeout,
            ttl_after_finished=self.settings.job_ttl_after_finished,
        )

        logger.info(f"Creating job {job_name} in namespace {namespace}")
        try:
            await asyncio.to_thread(self.kube.create_job, job, namespace)
        except ApiException as e:
            raise LaunchError(f"Kubernetes rejected job {job_name}: {e.reason}") from e

        return KubernetesJobHandle(self.kube, job_name, namespace, self.settings.k8s_poll_interval)
