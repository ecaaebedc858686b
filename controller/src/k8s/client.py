"""
Kubernetes client initialization and utilities.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from typing import Optional
import logging

from controller.src.config import Settings, get_settings

logger = logging.getLogger(__name__)

class KubernetesClient:
    """Lazily connected wrapper around the Batch and Core APIs."""

    def __init__(self, settings: Optional[Settings] = None, batch_v1=None, core_v1=None):
        self.settings = settings or get_settings()
        self._batch_v1 = batch_v1
        self._core_v1 = core_v1

    def connect(self) -> bool:
        """Load cluster configuration and check the connection."""
        try:
            if self.settings.k8s_in_cluster:
                # Running inside Kubernetes
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            else:
                # Running locally (Docker Desktop, minikube, etc.)
                config.load_kube_config()
                logger.info("Loaded local Kubernetes config")

            api_client = client.ApiClient()
            self._batch_v1 = client.BatchV1Api(api_client)
            self._core_v1 = client.CoreV1Api(api_client)

            # Test connection
            self._core_v1.list_namespace(limit=1)
            logger.info("Kubernetes client initialized successfully")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize Kubernetes client: {e}")
            return False

    @property
    def batch(self) -> client.BatchV1Api:
        if self._batch_v1 is None:
            self.connect()
        return self._batch_v1

    @property
    def core(self) -> client.CoreV1Api:
        if self._core_v1 is None:
            self.connect()
        return self._core_v1

    def namespace_for(self, namespace: Optional[str]) -> str:
        return namespace or self.settings.k8s_namespace

    def ensure_namespace(self, namespace: Optional[str] = None):
        """Create the agent namespace if it does not exist yet."""
        namespace = self.namespace_for(namespace)
        try:
            self.core.read_namespace(name=namespace)
            logger.info(f"Namespace '{namespace}' exists")
        except ApiException as e:
            if e.status != 404:
                raise
            self.core.create_namespace(
                body=client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
            )
            logger.info(f"Created namespace '{namespace}'")

    def create_job(self, job: client.V1Job, namespace: Optional[str] = None):
        return self.batch.create_namespaced_job(namespace=self.namespace_for(namespace), body=job)

    def read_job(self, job_name: str, namespace: Optional[str] = None) -> client.V1Job:
        return self.batch.read_namespaced_job(name=job_name, namespace=self.namespace_for(namespace))

    def delete_job(self, job_name: str, namespace: Optional[str] = None, grace_period_seconds: Optional[int] = None):
        """Delete a job and its pods; this is how a running step is signalled to stop."""
        try:
            self.batch.delete_namespaced_job(
                name=job_name,
                namespace=self.namespace_for(namespace),
                body=client.V1DeleteOptions(
                    propagation_policy="Foreground",
                    grace_period_seconds=grace_period_seconds,
                ),
            )
            logger.info(f"Deleted job {job_name}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete job {job_name}: {e}")
