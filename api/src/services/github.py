"""
GitHub service for webhook validation and repo operations.
"""

import asyncio
import hmac
import hashlib
import os
import shutil
import tempfile
from typing import Optional, Dict, Any, List

from api.src.config import get_settings

settings = get_settings()

class RepositoryError(Exception):
    """Raised when a pushed repository cannot be fetched."""

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

async def _git(args: List[str], timeout: float, cwd: Optional[str] = None):
    process = await asyncio.create_subprocess_exec(
        "git", *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RepositoryError(f"git {args[0]} timed out")

    if process.returncode != 0:
        raise RepositoryError(f"git {args[0]} failed: {stderr.decode(errors='replace').strip()}")

async def clone_repository(clone_url: str, commit_sha: str) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="runway_")
    repo_path = os.path.join(temp_dir, "repo")

    try:
        await _git(["clone", "--depth", "1", clone_url, repo_path], timeout=120)

        # Checkout specific commit if provided
        if commit_sha:
            await _git(["fetch", "--depth", "1", "origin", commit_sha], timeout=60, cwd=repo_path)
            await _git(["checkout", commit_sha], timeout=30, cwd=repo_path)
    except RepositoryError:
        cleanup_repo(repo_path)
        raise

    return repo_path

def fetch_pipeline_config(repo_path: str) -> Optional[str]:
    """
    Read the pipeline file from repository.
    Returns its YAML text or None if not found.
    """
    for name in settings.pipeline_files:
        config_path = os.path.join(repo_path, name)
        if os.path.exists(config_path):
            with open(config_path, "r") as f:
                return f.read()

    return None

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub webhook payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": payload.get("pusher", {}).get("name", ""),
    }

def build_parameters(webhook_data: Dict[str, Any]) -> Dict[str, str]:
    """Parameter bindings a push-triggered run starts with."""
    return {
        "BRANCH_NAME": webhook_data["branch"],
        "COMMIT_SHA": webhook_data["commit_sha"],
        "REPO_FULL_NAME": webhook_data["repo_full_name"],
        "TRIGGERED_BY": webhook_data["pusher"],
    }

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if repo_path:
        # Remove the parent temp directory created by clone_repository
        shutil.rmtree(os.path.dirname(repo_path), ignore_errors=True)
