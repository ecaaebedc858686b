"""
Pipeline definition models.

A pipeline is an ordered list of stages. A stage either runs its own steps on
one agent, or groups member stages under ``parallel``. Steps are tagged by
``kind``:

    stages:
      - name: Build
        agent: [linux, docker]
        steps:
          - kind: shell
            name: build image
            commands:
              - docker build -t app:${IMAGE_TAG} .
      - name: Checks
        parallel:
          - name: Lint
            agent: any
            steps:
              - kind: exec
                name: hadolint
                image: hadolint/hadolint
                command: [hadolint, Dockerfile]
"""

import fnmatch
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

SCHEMA_VERSION = 1
ANY_AGENT = "any"


class StepBase(BaseModel):
    name: str
    image: Optional[str] = None
    env: Dict[str, str] = {}
    credentials: List[str] = []
    timeout: Optional[float] = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0)


class ShellStep(StepBase):
    """Commands run through ``/bin/sh -c``, joined so the first failure stops the step."""

    kind: Literal["shell"] = "shell"
    commands: List[str] = Field(min_length=1)

    def script(self) -> str:
        return " && ".join(self.commands)


class ExecStep(StepBase):
    """A single executable invoked directly with its arguments."""

    kind: Literal["exec"] = "exec"
    command: List[str] = Field(min_length=1)


StepSpec = Annotated[Union[ShellStep, ExecStep], Field(discriminator="kind")]


def _default_step_kind(steps: Any) -> Any:
    # Steps written in the short form (just `commands`) are shell steps
    if not isinstance(steps, list):
        return steps
    return [
        {**step, "kind": "shell"} if isinstance(step, dict) and "kind" not in step else step
        for step in steps
    ]


class Guard(BaseModel):
    """
    Predicate over run parameters gating a stage.

    Every clause that is set must hold. Values in ``branch``, ``equals`` and
    ``not_equals`` are glob patterns.
    """

    branch: Optional[str] = None
    equals: Dict[str, str] = {}
    not_equals: Dict[str, str] = {}
    exists: List[str] = []
    any_of: List["Guard"] = []

    def matches(self, parameters: Dict[str, str]) -> bool:
        if self.branch is not None:
            branch = parameters.get("BRANCH_NAME")
            if branch is None or not fnmatch.fnmatchcase(branch, self.branch):
                return False

        for key, pattern in self.equals.items():
            value = parameters.get(key)
            if value is None or not fnmatch.fnmatchcase(value, pattern):
                return False

        for key, pattern in self.not_equals.items():
            value = parameters.get(key)
            if value is not None and fnmatch.fnmatchcase(value, pattern):
                return False

        if any(key not in parameters for key in self.exists):
            return False

        if self.any_of and not any(g.matches(parameters) for g in self.any_of):
            return False

        return True


class PostActions(BaseModel):
    always: List[StepSpec] = []
    success: List[StepSpec] = []
    failure: List[StepSpec] = []
    aborted: List[StepSpec] = []

    @field_validator("always", "success", "failure", "aborted", mode="before")
    @classmethod
    def _normalize_hooks(cls, value):
        return _default_step_kind(value)

    def for_condition(self, condition: str) -> List[Union[ShellStep, ExecStep]]:
        return list(getattr(self, condition))

    def is_empty(self) -> bool:
        return not (self.always or self.success or self.failure or self.aborted)


class StageSpec(BaseModel):
    name: str
    agent: Union[Literal["any"], List[str]] = ANY_AGENT
    steps: List[StepSpec] = []
    parallel: List["StageSpec"] = []
    when: Optional[Guard] = None
    post: PostActions = PostActions()
    continue_on_failure: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("steps", mode="before")
    @classmethod
    def _normalize_steps(cls, value):
        return _default_step_kind(value)

    @property
    def is_parallel(self) -> bool:
        return bool(self.parallel)

    def labels(self) -> List[str]:
        if self.agent == ANY_AGENT:
            return []
        return list(self.agent)


class PipelineOptions(BaseModel):
    max_parallel: int = Field(default=4, ge=1)


class PipelineDefinition(BaseModel):
    schema_version: int = SCHEMA_VERSION
    name: str = "Unnamed Pipeline"
    parameters: Dict[str, str] = {}
    options: PipelineOptions = PipelineOptions()
    stages: List[StageSpec] = Field(min_length=1)
    post: PostActions = PostActions()
    post_agent: Union[Literal["any"], List[str]] = ANY_AGENT

    @model_validator(mode="after")
    def _check_schema_version(self) -> "PipelineDefinition":
        if self.schema_version > SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported schema_version {self.schema_version} "
                f"(this engine understands up to {SCHEMA_VERSION})"
            )
        return self

    def bind(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """Merge trigger bindings over the definition's parameter defaults."""
        bound = dict(self.parameters)
        for key, value in (parameters or {}).items():
            bound[key] = str(value)
        return bound

    def post_labels(self) -> List[str]:
        if self.post_agent == ANY_AGENT:
            return []
        return list(self.post_agent)


Guard.model_rebuild()
StageSpec.model_rebuild()
