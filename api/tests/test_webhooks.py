"""Tests for webhook handling."""

import hashlib
import hmac
from unittest.mock import AsyncMock, MagicMock

import pytest
from api.src.services.github import (
    RepositoryError,
    build_parameters,
    fetch_pipeline_config,
    parse_webhook_payload,
    verify_signature,
)
from controller.src.models.run import RunStatus

PUSH_PAYLOAD = {
    "ref": "refs/heads/main",
    "repository": {
        "name": "test-repo",
        "full_name": "user/test-repo",
        "clone_url": "https://github.com/user/test-repo.git",
    },
    "head_commit": {
        "id": "abc123def456",
        "message": "Test commit",
    },
    "pusher": {
        "name": "testuser",
    },
}

PIPELINE_YAML = """
name: repo pipeline
stages:
  - name: Build
    steps:
      - name: compile
        commands: [make]
"""

def test_parse_push_payload():
    result = parse_webhook_payload(PUSH_PAYLOAD)

    assert result["repo_name"] == "test-repo"
    assert result["repo_full_name"] == "user/test-repo"
    assert result["branch"] == "main"
    assert result["commit_sha"] == "abc123def456"
    assert result["pusher"] == "testuser"

def test_parse_payload_with_after():
    """Test fallback to 'after' field for commit SHA."""
    payload = {
        "ref": "refs/heads/feature",
        "after": "xyz789",
        "repository": {
            "name": "repo",
            "full_name": "user/repo",
            "clone_url": "https://github.com/user/repo.git",
        },
        "head_commit": None,
        "pusher": {"name": "user"},
    }

    result = parse_webhook_payload(payload)
    assert result["commit_sha"] == "xyz789"
    assert result["branch"] == "feature"

def test_build_parameters():
    assert build_parameters(parse_webhook_payload(PUSH_PAYLOAD)) == {
        "BRANCH_NAME": "main",
        "COMMIT_SHA": "abc123def456",
        "REPO_FULL_NAME": "user/test-repo",
        "TRIGGERED_BY": "testuser",
    }

def test_verify_signature_without_secret():
    """When no secret is configured, verification should pass."""
    # This test assumes GITHUB_WEBHOOK_SECRET is not set
    result = verify_signature(b"payload", "sha256=anything")
    assert result is True

def test_verify_signature_with_secret(monkeypatch):
    from api.src.services import github

    monkeypatch.setattr(github.settings, "github_webhook_secret", "topsecret")
    good = "sha256=" + hmac.new(b"topsecret", b"payload", hashlib.sha256).hexdigest()

    assert verify_signature(b"payload", good) is True
    assert verify_signature(b"payload", "sha256=forged") is False

def test_fetch_pipeline_config(tmp_path):
    assert fetch_pipeline_config(str(tmp_path)) is None

    (tmp_path / "runway.yml").write_text("second")
    (tmp_path / ".runway.yml").write_text(PIPELINE_YAML)
    assert fetch_pipeline_config(str(tmp_path)) == PIPELINE_YAML


@pytest.fixture
def repo(monkeypatch):
    """Replace the git clone with a fixed checkout."""
    mocks = {
        "clone_repository": AsyncMock(return_value="/tmp/runway_x/repo"),
        "fetch_pipeline_config": MagicMock(return_value=PIPELINE_YAML),
        "cleanup_repo": MagicMock(),
    }
    for name, mock in mocks.items():
        monkeypatch.setattr(f"api.src.routes.webhooks.{name}", mock)
    return mocks

def test_ping_event(client):
    response = client.post("/api/webhooks/github", json={"zen": "hi"}, headers={"X-GitHub-Event": "ping"})
    assert response.json()["status"] == "pong"

def test_push_event_triggers_run(client, store, queue, repo):
    response = client.post("/api/webhooks/github", json=PUSH_PAYLOAD, headers={"X-GitHub-Event": "push"})

    body = response.json()
    assert body["status"] == "queued"
    snapshot = store.snapshot(body["run_id"])
    assert snapshot.status == RunStatus.PENDING
    assert snapshot.pipeline == "repo pipeline"
    assert snapshot.parameters["BRANCH_NAME"] == "main"
    assert snapshot.parameters["COMMIT_SHA"] == "abc123def456"

    repo["clone_repository"].assert_awaited_once_with(
        "https://github.com/user/test-repo.git", "abc123def456"
    )
    repo["cleanup_repo"].assert_called_once_with("/tmp/runway_x/repo")
    queue["enqueue_run"].assert_awaited_once()

def test_push_without_pipeline_file_is_skipped(client, store, queue, repo):
    repo["fetch_pipeline_config"].return_value = None

    response = client.post("/api/webhooks/github", json=PUSH_PAYLOAD, headers={"X-GitHub-Event": "push"})

    assert response.json()["status"] == "skipped"
    assert store.list_runs() == []
    queue["enqueue_run"].assert_not_awaited()

def test_push_with_invalid_pipeline_reports_error(client, store, repo):
    repo["fetch_pipeline_config"].return_value = "name: broken\n"

    response = client.post("/api/webhooks/github", json=PUSH_PAYLOAD, headers={"X-GitHub-Event": "push"})

    body = response.json()
    assert body["status"] == "error"
    assert "stages" in body["reason"]
    assert store.list_runs() == []

def test_push_with_unreachable_repository(client, repo):
    repo["clone_repository"].side_effect = RepositoryError("git clone failed: not found")

    response = client.post("/api/webhooks/github", json=PUSH_PAYLOAD, headers={"X-GitHub-Event": "push"})

    assert response.json() == {"status": "error", "reason": "git clone failed: not found"}

def test_other_events_are_ignored(client):
    response = client.post("/api/webhooks/github", json={}, headers={"X-GitHub-Event": "issues"})
    assert response.json()["status"] == "ignored"
