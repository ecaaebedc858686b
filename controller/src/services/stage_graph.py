"""
Compile a pipeline definition into ordered execution units.

Dependencies between stages are purely positional: each unit starts only
after the previous one resolved. A unit is either a single stage or the
members of one ``parallel`` block.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

from controller.src.errors import DefinitionError
from controller.src.models.pipeline import (
    ANY_AGENT,
    SCHEMA_VERSION,
    Guard,
    PipelineDefinition,
    StageSpec,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledStage:
    spec: StageSpec
    labels: FrozenSet[str]
    guards: Tuple[Guard, ...] = ()

    @property
    def name(self) -> str:
        return self.spec.name

    def should_run(self, parameters: Dict[str, str]) -> bool:
        return all(guard.matches(parameters) for guard in self.guards)


@dataclass(frozen=True)
class ExecutionUnit:
    name: str
    stages: Tuple[CompiledStage, ...]
    parallel: bool = False


@dataclass(frozen=True)
class Graph:
    definition: PipelineDefinition
    units: Tuple[ExecutionUnit, ...]

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for unit in self.units for stage in unit.stages]

    def stage(self, name: str) -> Optional[CompiledStage]:
        for unit in self.units:
            for stage in unit.stages:
                if stage.name == name:
                    return stage
        return None


def compile(definition: PipelineDefinition) -> Graph:
    """Validate a definition and produce its execution units."""
    if definition.schema_version > SCHEMA_VERSION:
        raise DefinitionError(f"Unsupported schema_version {definition.schema_version}")

    if not definition.stages:
        raise DefinitionError("Pipeline must have at least one stage")

    _check_agent(definition.post_agent, "pipeline post")

    seen = set()
    units = []
    for stage in definition.stages:
        _check_name(stage.name, seen)

        if stage.is_parallel:
            if stage.steps:
                raise DefinitionError(
                    f"Stage '{stage.name}' cannot define both 'steps' and 'parallel'"
                )
            if not stage.post.is_empty():
                raise DefinitionError(
                    f"Parallel group '{stage.name}' cannot define 'post'; "
                    "declare post-actions on its member stages"
                )
            group_guards = (stage.when,) if stage.when else ()
            members = []
            for member in stage.parallel:
                _check_name(member.name, seen)
                if member.is_parallel:
                    raise DefinitionError(
                        f"Stage '{member.name}' nests 'parallel' inside parallel group '{stage.name}'"
                    )
                members.append(_compile_stage(member, group_guards))
            units.append(ExecutionUnit(name=stage.name, stages=tuple(members), parallel=True))
        else:
            units.append(ExecutionUnit(name=stage.name, stages=(_compile_stage(stage),)))

    graph = Graph(definition=definition, units=tuple(units))
    logger.debug(f"Compiled pipeline '{definition.name}' into {len(units)} units")
    return graph


def _check_name(name: str, seen: set):
    if not name or not name.strip():
        raise DefinitionError("Stage names must not be empty")
    if name in seen:
        raise DefinitionError(f"Duplicate stage name: '{name}'")
    seen.add(name)


def _check_agent(agent, owner: str):
    if agent == ANY_AGENT:
        return
    if not agent:
        raise DefinitionError(f"Agent requirement of {owner} must not be empty")
    if any(not label or not label.strip() for label in agent):
        raise DefinitionError(f"Agent requirement of {owner} contains an empty label")


def _compile_stage(stage: StageSpec, inherited: Tuple[Guard, ...] = ()) -> CompiledStage:
    _check_agent(stage.agent, f"stage '{stage.name}'")
    if not stage.steps:
        raise DefinitionError(f"Stage '{stage.name}' must have at least one step")

    guards = inherited + ((stage.when,) if stage.when else ())
    return CompiledStage(spec=stage, labels=frozenset(stage.labels()), guards=guards)
