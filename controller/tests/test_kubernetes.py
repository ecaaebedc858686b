"""Tests for running steps as Kubernetes Jobs, against a mocked cluster."""

from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from controller.src.config import Settings
from controller.src.errors import LaunchError
from controller.src.k8s.client import KubernetesClient
from controller.src.k8s.job_builder import build_job, build_job_name, get_job_status
from controller.src.k8s.launcher import KubernetesJobHandle, KubernetesLauncher
from controller.src.models.agent import Agent
from controller.src.models.pipeline import ExecStep, ShellStep
from controller.src.services.executor import StepContext
from controller.src.services.log_collector import collect_logs, get_exit_code


@pytest.fixture
def kube():
    kube = MagicMock(spec=KubernetesClient)
    kube.namespace_for.side_effect = lambda ns: ns or "runway"
    return kube


def _pod(name="step-pod", exit_code=None):
    terminated = client.V1ContainerStateTerminated(exit_code=exit_code) if exit_code is not None else None
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name),
        status=client.V1PodStatus(container_statuses=[
            client.V1ContainerStatus(
                name="step",
                image="alpine",
                image_id="",
                ready=False,
                restart_count=0,
                state=client.V1ContainerState(terminated=terminated),
            )
        ]),
    )


def test_job_name_is_a_valid_kubernetes_name():
    name = build_job_name("3f2b9c1e-run", "Build & Package", 2, "Compile_All The Things!!", attempt=3)

    assert name.startswith("rw-")
    assert name.endswith("-2-3-compile-all-the-thin")
    assert len(name) <= 63
    assert name == name.lower()
    assert build_job_name("run-1", "Build", 0, "x") != build_job_name("run-1", "Test", 0, "x")

def test_build_job_runs_argument_vector():
    job = build_job(
        job_name="rw-abc-0-1-build",
        namespace="builds",
        run_id="run-1",
        stage_name="Build & Package",
        image="node:18",
        command=["/bin/sh", "-c", "npm ci && npm test"],
        env_vars={"BRANCH_NAME": "main"},
        timeout=600,
        ttl_after_finished=300,
    )

    container = job.spec.template.spec.containers[0]
    assert container.name == "step"
    assert container.image == "node:18"
    assert container.command == ["/bin/sh"]
    assert container.args == ["-c", "npm ci && npm test"]
    assert [(e.name, e.value) for e in container.env] == [("BRANCH_NAME", "main")]
    assert job.metadata.namespace == "builds"
    assert job.metadata.labels["stage"] == "Build---Package"
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds == 660
    assert job.spec.template.spec.restart_policy == "Never"

def test_get_job_status():
    assert get_job_status(client.V1Job()) == "pending"
    assert get_job_status(client.V1Job(status=client.V1JobStatus(active=1))) == "running"
    assert get_job_status(client.V1Job(status=client.V1JobStatus(succeeded=1))) == "succeeded"
    assert get_job_status(client.V1Job(status=client.V1JobStatus(failed=1))) == "failed"

def test_collect_logs_and_exit_code(kube):
    kube.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod(exit_code=2)])
    kube.core.read_namespaced_pod_log.return_value = "building\n"

    assert collect_logs(kube, "job-1") == "building\n"
    assert get_exit_code(kube, "job-1") == 2
    kube.core.list_namespaced_pod.assert_called_with(namespace="runway", label_selector="job-name=job-1")

def test_collect_logs_before_container_starts(kube):
    kube.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod()])
    kube.core.read_namespaced_pod_log.side_effect = ApiException(status=400)

    assert collect_logs(kube, "job-1") == ""
    assert get_exit_code(kube, "job-1") is None

def test_delete_job_ignores_missing_job():
    batch = MagicMock()
    batch.delete_namespaced_job.side_effect = ApiException(status=404)
    kube = KubernetesClient(Settings(), batch_v1=batch, core_v1=MagicMock())

    kube.delete_job("job-1", grace_period_seconds=0)

    kwargs = batch.delete_namespaced_job.call_args.kwargs
    assert kwargs["namespace"] == "runway"
    assert kwargs["body"].grace_period_seconds == 0

@pytest.mark.asyncio
async def test_launcher_creates_job(kube):
    launcher = KubernetesLauncher(kube, Settings(step_timeout=120))
    agent = Agent(id="k8s-1", kind="kubernetes", namespace="builds")
    step = ExecStep(name="scan", image="aquasec/trivy", command=["trivy", "image", "app:${IMAGE_TAG}"])
    context = StepContext(run_id="run-1", stage="Scan", parameters={"IMAGE_TAG": "1.2"})

    handle = await launcher.launch(step, agent, {"RUNWAY_RUN_ID": "run-1"}, context)

    assert isinstance(handle, KubernetesJobHandle)
    assert handle.namespace == "builds"
    job, namespace = kube.create_job.call_args.args
    assert namespace == "builds"
    container = job.spec.template.spec.containers[0]
    assert container.command == ["trivy"]
    assert container.args == ["image", "app:1.2"]
    assert job.spec.active_deadline_seconds == 180

@pytest.mark.asyncio
async def test_launcher_requires_image(kube):
    launcher = KubernetesLauncher(kube, Settings())
    agent = Agent(id="k8s-1", kind="kubernetes")

    with pytest.raises(LaunchError, match="needs an 'image'"):
        await launcher.launch(ShellStep(name="x", commands=["true"]), agent, {}, StepContext(run_id="r", stage="s"))
    kube.create_job.assert_not_called()

@pytest.mark.asyncio
async def test_launcher_translates_rejected_job(kube):
    kube.create_job.side_effect = ApiException(status=403, reason="Forbidden")
    launcher = KubernetesLauncher(kube, Settings())
    agent = Agent(id="k8s-1", kind="kubernetes")
    step = ShellStep(name="x", image="alpine", commands=["true"])

    with pytest.raises(LaunchError, match="Forbidden"):
        await launcher.launch(step, agent, {}, StepContext(run_id="r", stage="s"))

@pytest.mark.asyncio
async def test_job_handle_wait_reports_exit_code(kube):
    kube.read_job.side_effect = [
        client.V1Job(status=client.V1JobStatus(active=1)),
        client.V1Job(status=client.V1JobStatus(failed=1)),
    ]
    kube.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod(exit_code=4)])
    handle = KubernetesJobHandle(kube, "job-1", "runway", poll_interval=0.01)

    assert await handle.wait() == 4
    assert handle.finished.is_set()

@pytest.mark.asyncio
async def test_job_handle_wait_after_deletion(kube):
    kube.read_job.side_effect = ApiException(status=404)
    handle = KubernetesJobHandle(kube, "job-1", "runway", poll_interval=0.01)

    assert await handle.wait() == -1

@pytest.mark.asyncio
async def test_job_handle_streams_only_new_output(kube):
    handle = KubernetesJobHandle(kube, "job-1", "runway", poll_interval=0.01)
    logs = iter(["line 1\n", "line 1\nline 2\n"])

    async def read_logs():
        # The job finishes right after the first poll
        handle.finished.set()
        return next(logs)

    handle._read_logs = read_logs

    assert [line async for line in handle.lines()] == ["line 1\n", "line 2\n"]

@pytest.mark.asyncio
async def test_job_handle_terminate_deletes_job(kube):
    handle = KubernetesJobHandle(kube, "job-1", "runway", poll_interval=0.01)

    await handle.terminate()
    await handle.kill()

    assert kube.delete_job.call_args_list[0].args == ("job-1", "runway")
    assert kube.delete_job.call_args_list[1].args == ("job-1", "runway", 0)
