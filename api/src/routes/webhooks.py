"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from typing import Optional
import logging

from api.src.db.database import get_store
from api.src.services.github import (
    RepositoryError,
    verify_signature,
    parse_webhook_payload,
    build_parameters,
    clone_repository,
    fetch_pipeline_config,
    cleanup_repo,
)
from api.src.services.triggers import trigger_run
from controller.src.errors import DefinitionError
from controller.src.services.state_store import RunStateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

async def process_push_event(payload: dict, store: RunStateStore):
    """Process GitHub push event and trigger a pipeline run."""

    webhook_data = parse_webhook_payload(payload)

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    # Clone repo and fetch pipeline config
    repo_path = None
    try:
        repo_path = await clone_repository(
            webhook_data["clone_url"],
            webhook_data["commit_sha"]
        )
        pipeline_config = fetch_pipeline_config(repo_path)
    except RepositoryError as e:
        logger.error(f"Failed to fetch repository {webhook_data['repo_full_name']}: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    if not pipeline_config:
        logger.info(f"No pipeline config found in {webhook_data['repo_full_name']}")
        return {"status": "skipped", "reason": "No pipeline configuration found"}

    try:
        run_id = await trigger_run(store, pipeline_config, build_parameters(webhook_data))
    except DefinitionError as e:
        logger.error(f"Invalid pipeline config: {e}")
        return {"status": "error", "reason": str(e)}

    return {"status": "queued", "run_id": run_id}

@router.post("/github")
async def github_webhook(
    request: Request,
    store: RunStateStore = Depends(get_store),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    if x_hub_signature_256:
        if not verify_signature(body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        return await process_push_event(payload, store)

    # Ignore other events
    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
