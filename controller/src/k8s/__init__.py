from controller.src.k8s.client import KubernetesClient
from controller.src.k8s.job_builder import (
    build_job,
    build_job_name,
    get_job_status,
)

__all__ = [
    "KubernetesClient",
    "build_job",
    "build_job_name",
    "get_job_status",
]
