"""Tests for pipeline parser."""

import pytest

from controller.src.errors import DefinitionError
from controller.src.models.pipeline import ExecStep, ShellStep
from controller.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
)

def test_valid_pipeline():
    config = """
name: Test Pipeline
parameters:
  IMAGE_TAG: latest
stages:
  - name: Build
    agent: [linux, docker]
    steps:
      - name: build image
        image: node:18
        commands:
          - npm install
          - npm run build
  - name: Test
    steps:
      - kind: exec
        name: unit
        command: [npm, test]
"""
    result = parse_pipeline_config(config)
    assert result.name == "Test Pipeline"
    assert result.parameters == {"IMAGE_TAG": "latest"}
    assert [s.name for s in result.stages] == ["Build", "Test"]
    assert result.stages[0].labels() == ["linux", "docker"]
    assert result.stages[1].labels() == []

    build = result.stages[0].steps[0]
    assert isinstance(build, ShellStep)
    assert build.script() == "npm install && npm run build"
    assert isinstance(result.stages[1].steps[0], ExecStep)

def test_missing_stages():
    config = """
name: Bad Pipeline
"""
    with pytest.raises(DefinitionError, match="must have 'stages'"):
        parse_pipeline_config(config)

def test_missing_step_commands():
    config = """
name: Bad Pipeline
stages:
  - name: Build
    steps:
      - name: compile
"""
    with pytest.raises(DefinitionError, match="Invalid pipeline configuration"):
        parse_pipeline_config(config)

def test_unknown_step_kind():
    config = {
        "stages": [
            {"name": "Build", "steps": [{"kind": "docker", "name": "x", "commands": ["true"]}]}
        ]
    }
    with pytest.raises(DefinitionError):
        parse_pipeline_dict(config)

def test_empty_config():
    with pytest.raises(DefinitionError, match="Empty"):
        parse_pipeline_config("")

def test_invalid_yaml():
    with pytest.raises(DefinitionError, match="Invalid YAML"):
        parse_pipeline_config("stages: [unclosed")

def test_not_a_mapping():
    with pytest.raises(DefinitionError, match="must be a dictionary"):
        parse_pipeline_config("- just\n- a list\n")

def test_newer_schema_version_rejected():
    config = {
        "schema_version": 2,
        "stages": [{"name": "Build", "steps": [{"name": "x", "commands": ["true"]}]}],
    }
    with pytest.raises(DefinitionError, match="schema_version"):
        parse_pipeline_dict(config)

def test_dict_parsing():
    config = {
        "name": "Dict Pipeline",
        "stages": [
            {"name": "Stage 1", "steps": [{"name": "Step 1", "commands": ["echo hello"]}]}
        ],
        "post": {"failure": [{"name": "notify", "commands": ["echo failed"]}]},
    }
    result = parse_pipeline_dict(config)
    assert result.name == "Dict Pipeline"
    assert len(result.stages) == 1
    assert [h.name for h in result.post.for_condition("failure")] == ["notify"]
    assert result.post.for_condition("success") == []

def test_bind_merges_defaults_under_trigger_values():
    result = parse_pipeline_dict({
        "parameters": {"BRANCH_NAME": "develop", "IMAGE_TAG": "latest"},
        "stages": [{"name": "Build", "steps": [{"name": "x", "commands": ["true"]}]}],
    })
    assert result.bind({"BRANCH_NAME": "main", "BUILD_NUMBER": 42}) == {
        "BRANCH_NAME": "main",
        "IMAGE_TAG": "latest",
        "BUILD_NUMBER": "42",
    }
