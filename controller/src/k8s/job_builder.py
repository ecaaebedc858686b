"""
Kubernetes Job builder for pipeline steps.
"""

from kubernetes import client
from typing import List, Dict, Optional
import hashlib

def build_job_name(run_id: str, stage_name: str, step_index: int, step_name: str, attempt: int = 1) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = step_name.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name[:20].strip("-") or "step"

    # Short hash keeps run and stage unique without blowing the length limit
    run_hash = hashlib.md5(f"{run_id}/{stage_name}".encode()).hexdigest()[:10]

    return f"rw-{run_hash}-{step_index}-{attempt}-{safe_name}"

def _label_value(value: str) -> str:
    value = "".join(c if c.isalnum() or c in "-_." else "-" for c in value)
    return value[:63].strip("-_.") or "none"

def build_job(
    job_name: str,
    namespace: str,
    run_id: str,
    stage_name: str,
    image: str,
    command: List[str],
    env_vars: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    ttl_after_finished: Optional[int] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job running one step.

    The container's command is the step's full argument vector; a shell step
    arrives here already wrapped in ``/bin/sh -c``.
    """
    env = [
        client.V1EnvVar(name=key, value=value)
        for key, value in (env_vars or {}).items()
    ]

    labels = {
        "app": "runway",
        "run-id": _label_value(run_id),
        "stage": _label_value(stage_name),
    }

    container = client.V1Container(
        name="step",
        image=image,
        command=command[:1],
        args=command[1:],
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=client.V1PodSpec(
            containers=[container],
            restart_policy="Never",
        ),
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Retries are decided by the scheduler
        # Backstop in case the controller dies before it can delete the job
        active_deadline_seconds=int(timeout) + 60 if timeout else None,
        ttl_seconds_after_finished=ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
