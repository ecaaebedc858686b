"""
Pipeline YAML parser and validator.
"""

import yaml
from typing import Dict, Any, Optional
from pydantic import ValidationError

from controller.src.errors import DefinitionError
from controller.src.models.pipeline import PipelineDefinition

def parse_pipeline_config(yaml_content: str) -> PipelineDefinition:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> PipelineDefinition:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> PipelineDefinition:
    """Validate pipeline configuration structure."""
    if not config:
        raise DefinitionError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise DefinitionError("Pipeline configuration must be a dictionary")

    if "stages" not in config:
        raise DefinitionError("Pipeline must have 'stages' defined")

    try:
        return PipelineDefinition.model_validate(config)
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline configuration: {_describe(e)}")

def _describe(error: ValidationError) -> str:
    """Flatten pydantic errors into one readable line."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)
