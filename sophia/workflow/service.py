"""
Workflow Service implementation for running multi-step tool pipelines.

Steps run strictly in array order. Each step may be gated by a condition,
pulls its input from static values and mappings into earlier outputs, and
is executed through the tool registry with bounded exponential-backoff
retries. The first step that still fails stops the workflow.
"""

import copy
import json
import keyword
import logging
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from sophia.config import settings
from sophia.utils.error_handling import (
    ErrorContext,
    ExecutionNotFoundError,
    ExpressionError,
    MappingResolutionError,
    StorageError,
    ToolNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    catch_and_log,
)
from sophia.utils.events import EventBus
from sophia.workflow.expression import ExpressionEvaluator, resolve_path
from sophia.workflow.models import (
    RESERVED_INPUT_STEP_ID,
    ConditionType,
    DataFlowEdge,
    ExecutionStatus,
    StepExecutionStatus,
    StepResult,
    StepStatus,
    Workflow,
    WorkflowExecutionResult,
    WorkflowProgress,
    WorkflowStep,
    new_execution_id,
)

logger = logging.getLogger(__name__)


class WorkflowService:
    """
    Stores workflow definitions and executes them against a tool registry.
    """

    def __init__(
        self,
        tool_registry,
        storage_dir: Optional[str] = None,
        events: Optional[EventBus] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        persist_progress: Optional[bool] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
    ):
        """
        Initialize the Workflow Service.

        Args:
            tool_registry: Registry used to execute steps
            storage_dir: Directory for workflow definitions and progress snapshots
            events: Event bus for progress and condition events
            max_retries: Retries after a failed step attempt
            backoff_base: Delay in seconds before the first retry; doubles each retry
            persist_progress: Write progress snapshots to disk
            evaluator: Condition expression evaluator
        """
        self.tool_registry = tool_registry
        self.storage_dir = storage_dir or settings.workflow_storage_dir
        self.events = events or EventBus()
        self.max_retries = settings.workflow_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.workflow_retry_base_delay if backoff_base is None else backoff_base
        self.persist_progress = settings.persist_workflow_progress if persist_progress is None else persist_progress
        self.evaluator = evaluator or ExpressionEvaluator()

        self.executions_dir = os.path.join(self.storage_dir, "executions")
        self.workflows: Dict[str, Workflow] = {}
        self.executions: Dict[str, WorkflowProgress] = {}
        self._snapshots: Dict[str, WorkflowProgress] = {}

        with ErrorContext("workflow", "Failed to create workflow storage", StorageError):
            os.makedirs(self.executions_dir, exist_ok=True)
        self._load_workflows()

    def _load_workflows(self) -> None:
        """Load workflow definitions from disk."""
        for filename in sorted(os.listdir(self.storage_dir)):
            if not filename.endswith(".json"):
                continue
            path = os.path.join(self.storage_dir, filename)
            try:
                with open(path, "r") as f:
                    workflow = Workflow.model_validate_json(f.read())
                self.workflows[workflow.id] = workflow
            except (OSError, ValidationError, ValueError) as e:
                logger.error(f"Skipping unreadable workflow file {path}: {e}")

        logger.info(f"Loaded {len(self.workflows)} workflows from storage")

    def _write_json(self, path: str, content: str) -> None:
        with ErrorContext("workflow", f"Failed to write {path}", StorageError):
            with open(path, "w") as f:
                f.write(content)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def validate_workflow(self, workflow: Workflow) -> List[str]:
        """
        Check a workflow definition. Tool names are not resolved here.

        Returns:
            List of problems, empty when the definition is valid
        """
        errors = []
        if not workflow.name:
            errors.append("Workflow name is required")

        seen = set()
        for position, step in enumerate(workflow.steps):
            label = step.id or f"#{position + 1}"
            if not step.id:
                errors.append(f"Step {label} has no id")
            elif step.id == RESERVED_INPUT_STEP_ID:
                errors.append(f"Step id '{RESERVED_INPUT_STEP_ID}' is reserved for the workflow input")
            elif step.id in seen:
                errors.append(f"Duplicate step id '{step.id}'")
            seen.add(step.id)

            if not step.tool_name:
                errors.append(f"Step {label} has no tool name")
            if step.condition is not None:
                if not step.condition.expression.strip():
                    errors.append(f"Step {label} has an empty condition expression")
                if step.condition.type == ConditionType.SWITCH and not step.condition.branches:
                    errors.append(f"Step {label} has a switch condition without branches")
        return errors

    def _parse_workflow(self, data: Union[Workflow, Dict[str, Any]]) -> Workflow:
        if isinstance(data, Workflow):
            workflow = data.model_copy(deep=True)
        else:
            try:
                workflow = Workflow.model_validate(data)
            except ValidationError as e:
                errors = [f"{'.'.join(str(p) for p in err['loc'])} {err['msg']}" for err in e.errors()]
                raise WorkflowValidationError(
                    f"Invalid workflow: {'; '.join(errors)}", component="workflow", details={"errors": errors}
                )

        errors = self.validate_workflow(workflow)
        if errors:
            raise WorkflowValidationError(
                f"Invalid workflow: {'; '.join(errors)}", component="workflow", details={"errors": errors}
            )
        return workflow

    async def list_workflows(self) -> List[Workflow]:
        return list(self.workflows.values())

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self.workflows.get(workflow_id)

    def _require_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found", component="workflow")
        return workflow

    async def save_workflow(self, workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        """
        Create or replace a workflow definition.

        Raises:
            WorkflowValidationError: If the definition is malformed
        """
        workflow = self._parse_workflow(workflow)
        self._save_definition(workflow)
        logger.info(f"Saved workflow {workflow.id} ({workflow.name})")
        return workflow

    async def update_workflow(self, workflow_id: str, updates: Dict[str, Any]) -> Workflow:
        """Merge updates into a workflow; the id never changes."""
        existing = self._require_workflow(workflow_id)
        merged = {**existing.model_dump(), **updates, "id": workflow_id}
        workflow = self._parse_workflow(merged)
        self._save_definition(workflow)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        self._require_workflow(workflow_id)
        path = os.path.join(self.storage_dir, f"{workflow_id}.json")
        with ErrorContext("workflow", f"Failed to delete workflow {workflow_id}", StorageError):
            if os.path.exists(path):
                os.remove(path)
        del self.workflows[workflow_id]
        logger.info(f"Deleted workflow {workflow_id}")

    def _save_definition(self, workflow: Workflow) -> None:
        self._write_json(os.path.join(self.storage_dir, f"{workflow.id}.json"), workflow.model_dump_json(indent=2))
        self.workflows[workflow.id] = workflow

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_workflow(self, workflow_id: str, input: Any = None) -> WorkflowExecutionResult:
        """
        Execute a workflow.

        Args:
            workflow_id: Workflow to run
            input: Workflow input, visible to conditions and mappings as step "input"

        Returns:
            WorkflowExecutionResult; step failures are reported, not raised

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        workflow = self._require_workflow(workflow_id)
        execution_id = new_execution_id()
        start_time = time.perf_counter()

        progress = WorkflowProgress(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.RUNNING,
            total_steps=len(workflow.steps),
            current_step=workflow.steps[0].id if workflow.steps else None,
            step_statuses={step.id: StepExecutionStatus() for step in workflow.steps}
        )
        result = WorkflowExecutionResult(execution_id=execution_id, success=True)
        self.executions[execution_id] = progress
        await self._emit_progress(progress)

        logger.info(f"Executing workflow {workflow_id} as {execution_id}")
        context: Dict[str, Any] = {RESERVED_INPUT_STEP_ID: input if input is not None else {}}

        try:
            for step in workflow.steps:
                progress.current_step = step.id
                status = progress.step_statuses[step.id]

                if not await self._should_execute_step(step, context, execution_id):
                    logger.info(f"Skipping step {step.id}: condition not met")
                    status.status = StepStatus.SKIPPED
                    result.step_results[step.id] = StepResult(success=True, skipped=True)
                    progress.completed_steps += 1
                    await self._emit_progress(progress)
                    continue

                status.status = StepStatus.RUNNING
                await self._emit_progress(progress)

                step_result = await self._run_step(step, context, status, progress, result)
                result.step_results[step.id] = step_result

                if step_result.success:
                    context[step.id] = step_result.output
                    status.status = StepStatus.COMPLETED
                    progress.completed_steps += 1
                    await self._emit_progress(progress)
                    continue

                status.status = StepStatus.FAILED
                status.error = step_result.error
                progress.status = ExecutionStatus.FAILED
                progress.error = f"Step '{step.id}' failed: {step_result.error}"
                result.success = False
                result.error = progress.error
                result.failed_step = step.id
                logger.warning(f"Workflow {workflow_id} stopped at step {step.id}: {step_result.error}")
                break
        except Exception as e:
            progress.status = ExecutionStatus.FAILED
            progress.error = str(e)
            progress.end_time = datetime.now()
            await self._emit_progress(progress)
            raise

        if progress.status != ExecutionStatus.FAILED:
            progress.status = ExecutionStatus.COMPLETED
            progress.current_step = None
        progress.end_time = datetime.now()
        result.total_execution_time = (time.perf_counter() - start_time) * 1000
        await self._emit_progress(progress)

        self._record_run(workflow_id)

        if result.success:
            await self.events.emit("workflow_completed", result)
        else:
            await self.events.emit("workflow_failed", result)
        return result

    async def _run_step(self, step: WorkflowStep, context: Dict[str, Any], status: StepExecutionStatus,
                        progress: WorkflowProgress, result: WorkflowExecutionResult) -> StepResult:
        step_start = time.perf_counter()
        try:
            step_input, edges = self._resolve_step_input(step, context)
        except MappingResolutionError as e:
            return StepResult(success=False, error=e.message, execution_time=(time.perf_counter() - step_start) * 1000)

        progress.data_flow.extend(edges)
        result.data_flow.extend(edges)

        try:
            return await self._execute_step_with_retry(step, step_input, status)
        except ToolNotFoundError as e:
            return StepResult(
                success=False,
                error=e.message,
                execution_time=(time.perf_counter() - step_start) * 1000,
                attempt=1
            )

    async def _execute_step_with_retry(self, step: WorkflowStep, step_input: Dict[str, Any],
                                       status: StepExecutionStatus) -> StepResult:
        """
        Execute a step's tool, retrying failed results with exponential backoff.

        The delay before retry n is backoff_base * 2^(n-1). Exceptions are
        not retried.
        """
        step_start = time.perf_counter()
        attempts = 0

        async def attempt() -> StepResult:
            nonlocal attempts
            attempts += 1
            execution = await self.tool_registry.execute_tool(step.tool_name, step_input)
            return StepResult(
                success=execution.success,
                output=execution.output if execution.success else None,
                error=execution.error,
                execution_time=(time.perf_counter() - step_start) * 1000,
                attempt=attempts
            )

        def before_sleep(retry_state) -> None:
            status.retries = retry_state.attempt_number
            logger.info(
                f"Step {step.id} attempt {retry_state.attempt_number} failed, "
                f"retrying in {retry_state.next_action.sleep:.2f}s"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base),
            retry=retry_if_result(lambda step_result: not step_result.success),
            before_sleep=before_sleep,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return await retrying(attempt)

    async def _should_execute_step(self, step: WorkflowStep, context: Dict[str, Any], execution_id: str) -> bool:
        if step.condition is None:
            return True

        condition = step.condition
        try:
            value = self.evaluator.evaluate(condition.expression, self._condition_names(context))
        except ExpressionError as e:
            logger.warning(f"Condition of step {step.id} failed: {e.message}")
            await self.events.emit("condition_error", {
                "execution_id": execution_id,
                "step": step.id,
                "error": e.message,
                "expression": condition.expression
            })
            return False

        if condition.type == ConditionType.SWITCH:
            return any(branch.case == value for branch in condition.branches)
        return bool(value)

    @staticmethod
    def _condition_names(context: Dict[str, Any]) -> Dict[str, Any]:
        """Step outputs by id (when the id is an identifier) plus ``steps`` for all of them."""
        names = {
            step_id: output
            for step_id, output in context.items()
            if step_id.isidentifier() and not keyword.iskeyword(step_id)
        }
        names["steps"] = dict(context)
        return names

    @staticmethod
    def _resolve_step_input(step: WorkflowStep, context: Dict[str, Any]) -> Tuple[Dict[str, Any], List[DataFlowEdge]]:
        """
        Merge static input with values mapped from earlier outputs.

        Raises:
            MappingResolutionError: If a source step has no output or a path does not exist
        """
        resolved = copy.deepcopy(step.input.static)
        edges = []

        for key, mapping in step.input.mappings.items():
            if mapping.step_id not in context:
                raise MappingResolutionError(
                    f"Cannot resolve mapping '{key}': step '{mapping.step_id}' output not found",
                    component="workflow"
                )
            try:
                value = resolve_path(context[mapping.step_id], mapping.output_path)
            except LookupError as e:
                raise MappingResolutionError(
                    f"Failed to resolve mapping '{key}' from step '{mapping.step_id}': "
                    f"invalid path '{mapping.output_path}' ({e})",
                    component="workflow"
                )
            resolved[key] = copy.deepcopy(value)
            edges.append(DataFlowEdge(
                from_step=mapping.step_id,
                to_step=step.id,
                path=mapping.output_path,
                target_param=key
            ))

        return resolved, edges

    @catch_and_log(component="workflow")
    def _record_run(self, workflow_id: str) -> None:
        current = self.workflows.get(workflow_id)
        if current is None:
            return
        workflow = current.model_copy(deep=True)
        workflow.metadata.last_run = datetime.now()
        workflow.metadata.run_count += 1
        self._save_definition(workflow)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def _emit_progress(self, progress: WorkflowProgress) -> None:
        snapshot = progress.model_copy(deep=True)
        self._snapshots[progress.execution_id] = snapshot
        if self.persist_progress:
            self._write_json(
                os.path.join(self.executions_dir, f"{progress.execution_id}.json"),
                snapshot.model_dump_json(indent=2)
            )
        await self.events.emit("progress", snapshot)

    async def get_workflow_progress(self, execution_id: str) -> WorkflowProgress:
        """
        Return the live progress of an execution, falling back to its persisted snapshot.

        Raises:
            ExecutionNotFoundError: If the execution is unknown
        """
        progress = self.executions.get(execution_id)
        if progress is not None:
            return progress

        path = os.path.join(self.executions_dir, f"{execution_id}.json")
        if self.persist_progress and os.path.exists(path):
            with ErrorContext("workflow", f"Failed to read progress of {execution_id}", StorageError):
                with open(path, "r") as f:
                    return WorkflowProgress.model_validate(json.load(f))

        raise ExecutionNotFoundError(f"Execution '{execution_id}' not found", component="workflow")

    def get_progress(self, execution_id: str) -> Optional[WorkflowProgress]:
        """Return the last emitted progress snapshot, or None."""
        return self._snapshots.get(execution_id)

    def clear_progress(self, execution_id: str) -> None:
        """Forget an execution's progress in memory and on disk."""
        self._snapshots.pop(execution_id, None)
        self.executions.pop(execution_id, None)
        path = os.path.join(self.executions_dir, f"{execution_id}.json")
        with ErrorContext("workflow", f"Failed to remove progress of {execution_id}", StorageError):
            if os.path.exists(path):
                os.remove(path)
