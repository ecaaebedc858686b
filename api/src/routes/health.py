from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool
from redis.exceptions import RedisError
import redis.asyncio as redis

from api.src.db.database import get_store
from api.src.config import get_settings
from api.src.services.queue import get_queue_length
from controller.src.services.state_store import RunStateStore

settings = get_settings()

router = APIRouter(tags=["health"])

async def _check_store(store: RunStateStore) -> str:
    try:
        await run_in_threadpool(store.list_runs, 1)
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def _check_redis() -> str:
    try:
        client = redis.from_url(settings.redis_url)
        await client.ping()
        await client.aclose()
        return "healthy"
    except RedisError as e:
        return f"unhealthy: {e}"

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "runway-api"}

@router.get("/health/db")
async def db_health_check(store: RunStateStore = Depends(get_store)):
    status = await _check_store(store)
    if status == "healthy":
        return {"status": "healthy", "database": "connected"}
    return {"status": "unhealthy", "database": status}

@router.get("/health/redis")
async def redis_health_check():
    status = await _check_redis()
    if status == "healthy":
        return {"status": "healthy", "redis": "connected"}
    return {"status": "unhealthy", "redis": status}

@router.get("/health/queue")
async def queue_health_check():
    try:
        queue_length = await get_queue_length()
        return {
            "status": "healthy",
            "queue_length": queue_length,
        }
    except RedisError as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(store: RunStateStore = Depends(get_store)):
    """Combined health check for all services."""
    health = {
        "api": "healthy",
        "database": await _check_store(store),
        "redis": await _check_redis(),
        "queue_length": 0,
    }

    if health["redis"] == "healthy":
        health["queue_length"] = await get_queue_length()

    overall = "healthy" if all(
        v == "healthy" for k, v in health.items()
        if k not in ["queue_length"]
    ) else "degraded"

    return {"status": overall, "services": health}
