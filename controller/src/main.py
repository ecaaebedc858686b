"""
Runway Controller - Main entry point.
"""

import asyncio
import logging
import sys

import redis.asyncio as redis

from controller.src.config import Settings, get_settings
from controller.src.services.agent_pool import AgentPool, load_agents
from controller.src.services.credentials import EnvCredentialProvider
from controller.src.services.executor import LocalLauncher, StepExecutor
from controller.src.services.scheduler import Scheduler
from controller.src.services.sql_store import SqlRunStateStore
from controller.src.worker import Worker

logger = logging.getLogger(__name__)

def configure_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

def build_launchers(settings: Settings, agents) -> dict:
    """Local launcher always; Kubernetes only when some agent needs it."""
    launchers = {"local": LocalLauncher()}

    if any(agent.kind == "kubernetes" for agent in agents):
        from controller.src.k8s.client import KubernetesClient
        from controller.src.k8s.launcher import KubernetesLauncher

        kube = KubernetesClient(settings)
        if not kube.connect():
            logger.error("Failed to initialize Kubernetes client")
            sys.exit(1)

        try:
            for namespace in {agent.namespace for agent in agents if agent.kind == "kubernetes"}:
                kube.ensure_namespace(namespace)
        except Exception as e:
            logger.error(f"Failed to ensure namespace: {e}")
            sys.exit(1)

        launchers["kubernetes"] = KubernetesLauncher(kube, settings)

    return launchers

async def serve(settings: Settings):
    agents = load_agents(settings.agents_file)
    pool = AgentPool(agents)

    store = SqlRunStateStore.from_url(settings.database_url)
    store.init_db()

    executor = StepExecutor(
        launchers=build_launchers(settings, agents),
        credentials=EnvCredentialProvider(settings.credential_prefix),
        settings=settings,
    )
    scheduler = Scheduler(pool, executor, store, settings)

    client = redis.from_url(settings.redis_url, decode_responses=True)
    worker = Worker(scheduler, pool, client, settings)
    try:
        await worker.run()
    finally:
        await worker.shutdown()

def main():
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings)

    logger.info("Starting Runway Controller")
    logger.info(f"Agents file: {settings.agents_file}")
    logger.info(f"Redis URL: {settings.redis_url}")

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Controller stopped")

if __name__ == "__main__":
    main()
