from api.src.routes.agents import router as agents_router
from api.src.routes.health import router as health_router
from api.src.routes.runs import router as runs_router
from api.src.routes.webhooks import router as webhooks_router

__all__ = ["agents_router", "health_router", "runs_router", "webhooks_router"]
