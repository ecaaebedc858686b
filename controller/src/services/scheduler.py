"""
Pipeline scheduler - drives runs through their execution units.

For every unit in order: guards are evaluated, agents acquired, steps run and
results recorded. A unit finishes only when all of its stages have finished.
The first unit containing a failed stage (without ``continue_on_failure``)
halts the run; stages that never started are recorded as skipped.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from controller.src.config import Settings, get_settings
from controller.src.errors import AcquireError, AgentLostError, LaunchError, ReleaseError, RunStateError
from controller.src.models.pipeline import PipelineDefinition, PostActions
from controller.src.models.run import (
    ErrorInfo,
    PostActionRecord,
    RunSnapshot,
    RunStatus,
    StageResult,
    StageStatus,
    StepResult,
    StepStatus,
    utcnow,
)
from controller.src.services.agent_pool import AgentPool, Lease
from controller.src.services.executor import Step, StepContext, StepExecutor
from controller.src.services.stage_graph import CompiledStage, ExecutionUnit, Graph, compile
from controller.src.services.state_store import RunNotFoundError, RunStateStore, output_ref

logger = logging.getLogger(__name__)

PIPELINE_POST = "(post)"

# Abort requests kept for runs that have not arrived yet
MAX_EARLY_ABORTS = 1000

_OUTCOME_CONDITION = {
    RunStatus.SUCCEEDED: "success",
    RunStatus.FAILED: "failure",
    RunStatus.ABORTED: "aborted",
}


@dataclass
class RunState:
    run_id: str
    graph: Graph
    parameters: Dict[str, str]
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    recorded: Dict[str, StageResult] = field(default_factory=dict)

    @property
    def definition(self) -> PipelineDefinition:
        return self.graph.definition


class Scheduler:
    def __init__(
        self,
        pool: AgentPool,
        executor: StepExecutor,
        store: RunStateStore,
        settings: Optional[Settings] = None,
    ):
        self.pool = pool
        self.executor = executor
        self.store = store
        self.settings = settings or get_settings()
        self._runs: Dict[str, RunState] = {}
        self._early_aborts: Dict[str, None] = {}

    # Run lifecycle

    def prepare(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Dict[str, str]] = None,
        run_id: Optional[str] = None,
    ) -> RunState:
        """
        Compile a definition and make sure its run exists in the store.

        Raises DefinitionError before anything is recorded.
        """
        graph = compile(definition)
        bound = definition.bind(parameters)
        run_id = run_id or str(uuid.uuid4())

        try:
            existing = self.store.snapshot(run_id)
        except RunNotFoundError:
            self.store.create_run(run_id, definition, bound, graph.stage_names)
        else:
            if existing.status != RunStatus.PENDING:
                raise RunStateError(f"Run {run_id} already {existing.status.value}")

        state = RunState(run_id=run_id, graph=graph, parameters=bound)
        if run_id in self._early_aborts:
            del self._early_aborts[run_id]
            state.abort.set()
        self._runs[run_id] = state
        return state

    def submit(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Dict[str, str]] = None,
        run_id: Optional[str] = None,
    ) -> str:
        """Start a run on its own task and return its id."""
        state = self.prepare(definition, parameters, run_id)
        state.task = asyncio.create_task(self._drive(state), name=f"run-{state.run_id}")
        state.task.add_done_callback(lambda _: self._runs.pop(state.run_id, None))
        return state.run_id

    async def run(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Dict[str, str]] = None,
        run_id: Optional[str] = None,
    ) -> RunSnapshot:
        """Run a pipeline to completion on the current task."""
        state = self.prepare(definition, parameters, run_id)
        try:
            return await self._drive(state)
        finally:
            self._runs.pop(state.run_id, None)

    async def wait(self, run_id: str) -> RunSnapshot:
        state = self._runs.get(run_id)
        if state is not None and state.task is not None:
            await asyncio.shield(state.task)
        return self.store.snapshot(run_id)

    def abort(self, run_id: str) -> bool:
        """
        Request a cooperative abort.

        Running steps are terminated and no further unit starts. An abort for
        a run this scheduler has not seen yet is applied when it arrives.
        """
        state = self._runs.get(run_id)
        if state is None:
            try:
                finished = self.store.current_status(run_id).is_terminal
            except RunNotFoundError:
                finished = False
            if finished:
                logger.info(f"Ignoring abort for run {run_id}, it has already finished")
                return False
            logger.info(f"Abort requested for run {run_id} before it started")
            self._early_aborts[run_id] = None
            while len(self._early_aborts) > MAX_EARLY_ABORTS:
                dropped = next(iter(self._early_aborts))
                del self._early_aborts[dropped]
                logger.warning(f"Forgetting abort request for run {dropped} that never arrived")
            return False
        logger.info(f"Abort requested for run {run_id}")
        state.abort.set()
        return True

    def active_runs(self) -> List[str]:
        return list(self._runs)

    async def _drive(self, state: RunState) -> RunSnapshot:
        try:
            return await self.execute(state)
        except Exception as e:
            logger.exception(f"Run {state.run_id} crashed")
            if not self.store.current_status(state.run_id).is_terminal:
                self.store.record_run_status(
                    state.run_id,
                    RunStatus.FAILED,
                    ErrorInfo(kind=type(e).__name__, message=str(e)),
                )
            return self.store.snapshot(state.run_id)

    # Execution

    async def execute(self, state: RunState) -> RunSnapshot:
        run_id = state.run_id
        logger.info(
            f"Starting run {run_id} of '{state.definition.name}' "
            f"with {len(state.graph.units)} units"
        )
        self.store.record_run_status(run_id, RunStatus.RUNNING)

        outcome = RunStatus.SUCCEEDED
        error = None

        for unit in state.graph.units:
            if state.abort.is_set():
                outcome = RunStatus.ABORTED
                break

            results = await self._run_unit(state, unit)

            if state.abort.is_set():
                outcome = RunStatus.ABORTED
                interrupted = next((r for _, r in results if r.status.is_failure), None)
                error = ErrorInfo(
                    kind="Aborted",
                    message="Run aborted",
                    stage=interrupted.name if interrupted else None,
                )
                break

            failed = [
                result for stage, result in results
                if result.status.is_failure and not stage.spec.continue_on_failure
            ]
            if failed:
                outcome = RunStatus.FAILED
                error = failed[0].error or ErrorInfo(kind="StageFailed", stage=failed[0].name)
                logger.warning(f"Run {run_id} halted at unit '{unit.name}'")
                break

            for stage, result in results:
                if result.status.is_failure:
                    logger.warning(
                        f"Run {run_id} stage '{stage.name}' failed but continues on failure"
                    )

        if outcome == RunStatus.ABORTED and error is None:
            error = ErrorInfo(kind="Aborted", message="Run aborted")

        self._skip_remaining(state, outcome)
        await self._run_pipeline_post(state, outcome)
        self.store.record_run_status(run_id, outcome, error)
        logger.info(f"Run {run_id} finished with status: {outcome.value}")
        return self.store.snapshot(run_id)

    async def _run_unit(self, state: RunState, unit: ExecutionUnit) -> List[Tuple[CompiledStage, StageResult]]:
        results = []
        runnable = []
        for stage in unit.stages:
            if stage.should_run(state.parameters):
                runnable.append(stage)
            else:
                result = StageResult(
                    name=stage.name,
                    status=StageStatus.SKIPPED,
                    skip_reason="Guard condition not met",
                )
                self._record(state, result)
                results.append((stage, result))
                logger.info(f"Run {state.run_id} stage '{stage.name}' skipped by guard")

        if not runnable:
            return results

        if unit.parallel:
            limit = asyncio.Semaphore(state.definition.options.max_parallel)

            async def bounded(stage: CompiledStage) -> StageResult:
                async with limit:
                    return await self._run_stage(state, stage)

            finished = await asyncio.gather(*(bounded(stage) for stage in runnable))
            results.extend(zip(runnable, finished))
        else:
            for stage in runnable:
                results.append((stage, await self._run_stage(state, stage)))

        return results

    async def _run_stage(self, state: RunState, stage: CompiledStage) -> StageResult:
        try:
            return await self._execute_stage(state, stage)
        except Exception as e:
            logger.exception(f"Run {state.run_id} stage '{stage.name}' crashed")
            result = state.recorded.get(stage.name) or StageResult(name=stage.name)
            result = result.model_copy(update={
                "status": StageStatus.FAILED,
                "finished_at": utcnow(),
                "error": ErrorInfo(kind=type(e).__name__, message=str(e), stage=stage.name),
            })
            self._record(state, result)
            return result

    async def _execute_stage(self, state: RunState, stage: CompiledStage) -> StageResult:
        run_id = state.run_id
        result = StageResult(name=stage.name, output_ref=output_ref(run_id, stage.name))

        if state.abort.is_set():
            return self._skip_aborted(state, stage, result)

        try:
            lease = await self._acquire(state, stage)
        except AcquireError as e:
            logger.error(f"Run {run_id} stage '{stage.name}': {e}")
            now = utcnow()
            result.status = StageStatus.FAILED
            result.started_at = now
            result.finished_at = now
            result.error = ErrorInfo(kind=e.kind, message=str(e), stage=stage.name)
            self._record(state, result)
            self._skip_hooks(state, stage.spec.post, ["always", "failure"], stage.name,
                             "No agent available")
            return result

        if lease is None:
            logger.info(f"Run {run_id} stage '{stage.name}' aborted while waiting for an agent")
            return self._skip_aborted(state, stage, result)

        try:
            result.status = StageStatus.RUNNING
            result.agent_id = lease.agent.id
            result.started_at = utcnow()
            self._record(state, result)

            agent_lost = False
            try:
                await self._run_steps(state, stage, lease, result)
            except AgentLostError as e:
                agent_lost = True
                result.status = StageStatus.FAILED
                result.error = ErrorInfo(kind=e.kind, message=str(e), stage=stage.name)

            result.finished_at = utcnow()
            self._record(state, result)

            conditions = _stage_conditions(result.status, state.abort.is_set())
            if agent_lost:
                self._skip_hooks(state, stage.spec.post, conditions, stage.name, "Agent lost")
            else:
                await self._run_hooks(state, stage.spec.post, conditions, lease, "stage", stage.name)
        finally:
            await self._release(lease)

        return result

    async def _acquire(self, state: RunState, stage: CompiledStage) -> Optional[Lease]:
        """Wait for an agent; returns None if the run is aborted first."""
        acquiring = asyncio.create_task(self.pool.acquire(
            stage.labels, self.settings.acquire_timeout, state.run_id, stage.name
        ))
        aborted = asyncio.create_task(state.abort.wait())
        try:
            await asyncio.wait({acquiring, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not acquiring.done():
                acquiring.cancel()

        try:
            lease = await acquiring
        except asyncio.CancelledError:
            if not state.abort.is_set():
                raise
            return None

        if state.abort.is_set():
            await self._release(lease)
            return None
        return lease

    def _skip_aborted(self, state: RunState, stage: CompiledStage, result: StageResult) -> StageResult:
        result.status = StageStatus.SKIPPED
        result.skip_reason = "Run aborted"
        self._record(state, result)
        self._skip_hooks(state, stage.spec.post, ["always", "aborted"], stage.name, "Run aborted")
        return result

    async def _run_steps(self, state: RunState, stage: CompiledStage, lease: Lease, result: StageResult):
        result.status = StageStatus.SUCCEEDED
        for index, step in enumerate(stage.spec.steps):
            if state.abort.is_set():
                result.status = StageStatus.FAILED
                result.error = ErrorInfo(kind="Aborted", message="Run aborted", stage=stage.name)
                return

            step_result = await self._run_step(state, stage, step, lease, index)
            result.steps.append(step_result)
            result.exit_code = step_result.exit_code

            if step_result.succeeded:
                continue

            if step_result.status == StepStatus.TIMED_OUT:
                result.status = StageStatus.TIMED_OUT
            else:
                result.status = StageStatus.FAILED
            error = step_result.error or ErrorInfo(kind="StepFailed")
            result.error = error.model_copy(update={"stage": stage.name})
            # Remaining steps in the stage do not run
            return

    async def _run_step(
        self,
        state: RunState,
        stage: CompiledStage,
        step: Step,
        lease: Lease,
        index: int,
    ) -> StepResult:
        attempts = step.retries + 1
        step_result = None
        for attempt in range(1, attempts + 1):
            context = StepContext(
                run_id=state.run_id,
                stage=stage.name,
                parameters=state.parameters,
                sink=self._sink(state.run_id, stage.name),
                abort=state.abort,
                timeout=stage.spec.timeout,
                step_index=index,
                attempt=attempt,
            )
            step_result = await self._attempt(step, lease, context)

            if step_result.succeeded or step_result.status == StepStatus.ABORTED or state.abort.is_set():
                break
            if attempt < attempts:
                logger.warning(
                    f"Run {state.run_id} stage '{stage.name}': step '{step.name}' "
                    f"{step_result.status.value}, retrying ({attempt}/{step.retries})"
                )
        return step_result

    async def _attempt(self, step: Step, lease: Lease, context: StepContext) -> StepResult:
        try:
            step_result = await self.executor.run(step, lease, context)
        except LaunchError as e:
            logger.error(f"Run {context.run_id} stage '{context.stage}': {e}")
            now = utcnow()
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                attempts=context.attempt,
                started_at=now,
                finished_at=now,
                error=ErrorInfo(kind=e.kind, message=str(e)),
            )

        if step_result.status == StepStatus.FAILED and step_result.error is None:
            step_result.error = ErrorInfo(
                kind="StepFailed",
                message=f"Step '{step.name}' exited with code {step_result.exit_code}",
            )
        return step_result

    # Post-actions

    async def _run_hooks(
        self,
        state: RunState,
        post: PostActions,
        conditions: List[str],
        lease: Lease,
        scope: str,
        stage_name: Optional[str],
    ):
        output_key = stage_name or PIPELINE_POST
        # Hooks get their own abort flag so they still run while a run is aborting
        hook_abort = asyncio.Event()

        for condition in conditions:
            for hook in post.for_condition(condition):
                context = StepContext(
                    run_id=state.run_id,
                    stage=output_key,
                    parameters=state.parameters,
                    sink=self._sink(state.run_id, output_key),
                    abort=hook_abort,
                )
                record = PostActionRecord(
                    scope=scope, condition=condition, step=hook.name,
                    stage=stage_name, status=StepStatus.SKIPPED,
                )
                try:
                    hook_result = await self._attempt(hook, lease, context)
                    record.status = hook_result.status
                    record.exit_code = hook_result.exit_code
                    record.error = hook_result.error
                except AgentLostError as e:
                    record.status = StepStatus.FAILED
                    record.error = ErrorInfo(kind=e.kind, message=str(e), stage=stage_name)
                    self.store.record_post_action(state.run_id, record)
                    return

                if record.status != StepStatus.SUCCEEDED:
                    logger.warning(
                        f"Run {state.run_id}: {condition} post-action '{hook.name}' "
                        f"of {output_key} {record.status.value}"
                    )
                self.store.record_post_action(state.run_id, record)

    def _skip_hooks(self, state: RunState, post: PostActions, conditions: List[str],
                    stage_name: Optional[str], reason: str):
        for condition in conditions:
            for hook in post.for_condition(condition):
                self.store.record_post_action(state.run_id, PostActionRecord(
                    scope="stage" if stage_name else "pipeline",
                    condition=condition,
                    step=hook.name,
                    stage=stage_name,
                    status=StepStatus.SKIPPED,
                    error=ErrorInfo(kind="Skipped", message=reason, stage=stage_name),
                ))

    def _skip_remaining(self, state: RunState, outcome: RunStatus):
        """Record every stage that never started as skipped, with a skipped pass over its hooks."""
        reason = "Run aborted" if outcome == RunStatus.ABORTED else "Halted after earlier failure"
        conditions = ["always", _OUTCOME_CONDITION[outcome]]
        for name in state.graph.stage_names:
            if name in state.recorded:
                continue
            self._record(state, StageResult(name=name, status=StageStatus.SKIPPED, skip_reason=reason))
            stage = state.graph.stage(name)
            self._skip_hooks(state, stage.spec.post, conditions, name, reason)

    async def _run_pipeline_post(self, state: RunState, outcome: RunStatus):
        post = state.definition.post
        conditions = ["always", _OUTCOME_CONDITION[outcome]]
        if not any(post.for_condition(c) for c in conditions):
            return

        try:
            lease = await self.pool.acquire(
                state.definition.post_labels(),
                self.settings.acquire_timeout,
                state.run_id,
                PIPELINE_POST,
            )
        except AcquireError as e:
            logger.error(f"Run {state.run_id}: no agent for pipeline post-actions: {e}")
            self._skip_hooks(state, post, conditions, None, str(e))
            return

        try:
            await self._run_hooks(state, post, conditions, lease, "pipeline", None)
        finally:
            await self._release(lease)

    # Helpers

    def _record(self, state: RunState, result: StageResult):
        state.recorded[result.name] = result.model_copy(deep=True)
        self.store.record_stage(state.run_id, result)

    def _sink(self, run_id: str, key: str):
        def sink(chunk: str):
            self.store.append_output(run_id, key, chunk)
        return sink

    async def _release(self, lease: Lease):
        try:
            await self.pool.release(lease)
        except ReleaseError as e:
            # Contract violation, but the run itself is unaffected
            logger.error(f"Release failed for run {lease.run_id} stage '{lease.stage}': {e}")


def _stage_conditions(status: StageStatus, aborted: bool) -> List[str]:
    if status == StageStatus.SUCCEEDED:
        return ["always", "success"]
    if aborted:
        return ["always", "aborted"]
    return ["always", "failure"]
