"""
Collect logs and exit codes from Kubernetes step pods.
"""

import logging
from typing import Optional
from kubernetes.client.rest import ApiException

from controller.src.k8s.client import KubernetesClient

logger = logging.getLogger(__name__)

def get_job_pod(kube: KubernetesClient, job_name: str, namespace: Optional[str] = None):
    """Get the pod created for a job, if any."""
    try:
        pods = kube.core.list_namespaced_pod(
            namespace=kube.namespace_for(namespace),
            label_selector=f"job-name={job_name}",
        )
        if pods.items:
            return pods.items[0]
        return None
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None

def collect_logs(kube: KubernetesClient, job_name: str, namespace: Optional[str] = None) -> str:
    """Collect everything the job's pod has written so far."""
    pod = get_job_pod(kube, job_name, namespace)
    if pod is None:
        return ""

    try:
        return kube.core.read_namespaced_pod_log(
            name=pod.metadata.name,
            namespace=kube.namespace_for(namespace),
        ) or ""
    except ApiException as e:
        if e.status == 400:
            # Container has not started yet
            return ""
        logger.error(f"Failed to collect logs for {pod.metadata.name}: {e}")
        return ""

def get_exit_code(kube: KubernetesClient, job_name: str, namespace: Optional[str] = None) -> Optional[int]:
    """Exit code of the step container once it has terminated."""
    pod = get_job_pod(kube, job_name, namespace)
    if pod is None or pod.status is None:
        return None

    for status in pod.status.container_statuses or []:
        if status.name == "step" and status.state and status.state.terminated:
            return status.state.terminated.exit_code
    return None
