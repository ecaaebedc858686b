from api.src.services.github import (
    RepositoryError,
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    parse_webhook_payload,
    build_parameters,
    cleanup_repo,
)
from api.src.services.queue import (
    enqueue_run,
    request_abort,
    publish_agent_event,
    get_run_status,
    get_queue_length,
)
from api.src.services.triggers import load_definition, trigger_run

__all__ = [
    "RepositoryError",
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "build_parameters",
    "cleanup_repo",
    "enqueue_run",
    "request_abort",
    "publish_agent_event",
    "get_run_status",
    "get_queue_length",
    "load_definition",
    "trigger_run",
]
