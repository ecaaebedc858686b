"""
Trigger interface - turns a definition and parameter bindings into a queued run.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Union

from starlette.concurrency import run_in_threadpool

from api.src.services.queue import enqueue_run
from controller.src.models.pipeline import PipelineDefinition
from controller.src.services.pipeline_parser import parse_pipeline_config, parse_pipeline_dict
from controller.src.services.stage_graph import compile
from controller.src.services.state_store import RunStateStore

logger = logging.getLogger(__name__)

def load_definition(definition: Union[str, Dict[str, Any]]) -> PipelineDefinition:
    """Parse a definition given as YAML text or as an already decoded object."""
    if isinstance(definition, str):
        return parse_pipeline_config(definition)
    return parse_pipeline_dict(definition)

async def trigger_run(
    store: RunStateStore,
    definition: Union[str, Dict[str, Any]],
    parameters: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Validate, record and enqueue a run; returns its id.

    Definition errors are raised here, before a run exists anywhere.
    """
    pipeline = load_definition(definition)
    graph = compile(pipeline)
    bound = pipeline.bind(parameters)

    run_id = str(uuid.uuid4())
    await run_in_threadpool(store.create_run, run_id, pipeline, bound, graph.stage_names)
    await enqueue_run(run_id, pipeline.model_dump(mode="json"), bound)

    logger.info(f"Run {run_id} of '{pipeline.name}' created and queued")
    return run_id
