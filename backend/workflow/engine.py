"""Workflow Execution Engine: runs workflows step by step.

The engine owns every ``Execution`` for its lifetime:

- admits new executions against a concurrency cap (fail fast, no queue)
- merges workflow defaults with caller variables
- walks the steps in order, delegating each to the StepInterpreter
- checks the wall-clock budget and cancellation at every step boundary
- applies step outputs to the execution's variable scope
- finalizes status and retires the execution into a bounded history

Step policy:
    conditions false          -> "skipped" result, keep going
    unsuccessful result       -> stop unless stop_on_failure is False
    step raised (status=error) -> record in errors, stop unless optional

Timeouts and cancellation are cooperative: a step that is already running
is never interrupted, the next boundary check ends the execution.
"""

import asyncio
import time
import traceback
from collections import deque
from typing import Any, Optional, Union
from uuid import uuid4

import structlog

from core.constants import (
    ConditionalResultPolicy,
    ExecutionStatus,
    LoopOutputPolicy,
    ManualStepPolicy,
    StepStatus,
)
from core.exceptions import CapacityExceededError, ExecutionTimeoutError
from workflow.conditions import evaluate_conditions
from workflow.events import EngineEvent, EventBus, ExecutionEvent, StepEvent
from workflow.execution import Execution, ExecutionOptions, StepContext, StepResult
from workflow.interfaces import ModeProvider, PermissionAuthority, ToolBackend
from workflow.interpreter import DEFAULT_MAX_ITERATIONS, StepInterpreter
from workflow.manual import ManualStepGate
from workflow.models import Workflow

logger = structlog.get_logger(__name__)

DEFAULT_MODE = "default"


def _generate_execution_id() -> str:
    return f"exec_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class WorkflowEngine:
    """Main workflow execution engine."""

    DEFAULT_MAX_CONCURRENT_EXECUTIONS = 5
    DEFAULT_TIMEOUT = 300.0  # seconds
    DEFAULT_HISTORY_SIZE = 100

    def __init__(
        self,
        tool_backend: ToolBackend,
        permission_authority: Optional[PermissionAuthority] = None,
        mode_provider: Optional[ModeProvider] = None,
        events: Optional[EventBus] = None,
        max_concurrent_executions: int = DEFAULT_MAX_CONCURRENT_EXECUTIONS,
        default_timeout: float = DEFAULT_TIMEOUT,
        history_size: int = DEFAULT_HISTORY_SIZE,
        command_tool_name: str = "execute_command",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        loop_output_policy: LoopOutputPolicy = LoopOutputPolicy.ISOLATE,
        manual_step_policy: ManualStepPolicy = ManualStepPolicy.AUTO,
        conditional_result_policy: ConditionalResultPolicy = ConditionalResultPolicy.NEST,
    ):
        self.events = events or EventBus()
        self._modes = mode_provider
        self._manual_gate = ManualStepGate()
        self._interpreter = StepInterpreter(
            tool_backend=tool_backend,
            permission_authority=permission_authority,
            events=self.events,
            manual_gate=self._manual_gate,
            command_tool_name=command_tool_name,
            max_iterations=max_iterations,
            loop_output_policy=loop_output_policy,
            manual_step_policy=manual_step_policy,
            conditional_result_policy=conditional_result_policy,
        )
        self._max_concurrent = max_concurrent_executions
        self._default_timeout = default_timeout
        self._active: dict[str, Execution] = {}
        # Most recent first; deque drops the oldest past maxlen
        self._history: deque[Execution] = deque(maxlen=history_size)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def max_concurrent_executions(self) -> int:
        return self._max_concurrent

    # ─── Submission ──────────────────────────────────────────────

    async def execute_workflow(
        self,
        workflow: Union[Workflow, dict],
        options: Union[ExecutionOptions, dict, None] = None,
    ) -> Execution:
        """Run a workflow to completion and return the finished execution.

        Raises:
            CapacityExceededError: the running cap is reached; nothing is created
            ValidationError: the workflow dict is malformed
        """
        workflow = self._coerce_workflow(workflow)
        execution = self._admit(workflow, self._coerce_options(options))
        await self._run(workflow, execution)
        return execution

    def start_workflow(
        self,
        workflow: Union[Workflow, dict],
        options: Union[ExecutionOptions, dict, None] = None,
    ) -> Execution:
        """Admit a workflow and run it in a background task.

        Must be called from inside a running event loop. Returns the
        execution while it is still running.
        """
        workflow = self._coerce_workflow(workflow)
        loop = asyncio.get_running_loop()
        execution = self._admit(workflow, self._coerce_options(options))

        task = loop.create_task(self._run(workflow, execution))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution.id, None))
        return execution

    @staticmethod
    def _coerce_workflow(workflow: Union[Workflow, dict]) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        return Workflow.from_dict(workflow)

    @staticmethod
    def _coerce_options(options: Union[ExecutionOptions, dict, None]) -> ExecutionOptions:
        if options is None:
            return ExecutionOptions()
        if isinstance(options, ExecutionOptions):
            return options
        return ExecutionOptions(**options)

    def _admit(self, workflow: Workflow, options: ExecutionOptions) -> Execution:
        """Create and register an execution, or refuse when at capacity."""
        if len(self._active) >= self._max_concurrent:
            logger.warning(
                "Execution rejected, concurrency limit reached",
                workflow_id=workflow.id,
                limit=self._max_concurrent,
            )
            raise CapacityExceededError(self._max_concurrent)

        mode = self._modes.current_mode() if self._modes else DEFAULT_MODE
        execution = Execution(
            id=_generate_execution_id(),
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            total_steps=len(workflow.steps),
            variables={**workflow.variables, **(options.variables or {})},
            metadata={
                "triggered_by": options.triggered_by,
                "user_id": options.user_id,
                "mode": mode,
                "timeout": options.timeout or self._default_timeout,
            },
        )
        self._active[execution.id] = execution
        return execution

    # ─── Driver ──────────────────────────────────────────────────

    async def _run(self, workflow: Workflow, execution: Execution) -> None:
        with structlog.contextvars.bound_contextvars(
            execution_id=execution.id, workflow_id=workflow.id
        ):
            logger.info("Execution started", workflow_name=workflow.name, total_steps=execution.total_steps)
            try:
                await self.events.emit(ExecutionEvent(EngineEvent.EXECUTION_STARTED, execution))
                summary = await self._run_steps(workflow, execution)

                if execution.status == ExecutionStatus.CANCELLED:
                    return
                execution.summary = summary
                execution.finish(
                    ExecutionStatus.COMPLETED if summary["success"] else ExecutionStatus.FAILED
                )
                logger.info(
                    "Execution finished",
                    status=execution.status.value,
                    duration_ms=execution.duration_ms,
                )
                await self.events.emit(ExecutionEvent(EngineEvent.EXECUTION_COMPLETED, execution))

            except asyncio.CancelledError:
                if execution.is_active:
                    execution.error = "Execution task was cancelled"
                    execution.finish(ExecutionStatus.CANCELLED)
                    logger.info("Execution task cancelled")
                raise

            except Exception as e:
                if execution.status == ExecutionStatus.CANCELLED:
                    return
                execution.error = str(e)
                execution.traceback = traceback.format_exc()
                execution.finish(ExecutionStatus.ERROR)
                logger.error("Execution aborted", error=str(e), exc_info=not isinstance(e, ExecutionTimeoutError))
                await self.events.emit(ExecutionEvent(EngineEvent.EXECUTION_FAILED, execution))

            finally:
                self._retire(execution)

    async def _run_steps(self, workflow: Workflow, execution: Execution) -> dict[str, Any]:
        """Walk the workflow's steps in order and return a summary."""
        results = execution.results

        for index, step in enumerate(workflow.steps):
            if execution.cancel_requested:
                logger.info("Execution cancelled, not starting further steps", step_index=index)
                break
            if execution.elapsed() > execution.timeout:
                raise ExecutionTimeoutError(execution.timeout)

            execution.advance_to(index + 1)
            await self.events.emit(StepEvent(EngineEvent.STEP_STARTED, execution, step, index))

            try:
                if step.conditions and not evaluate_conditions(step.conditions, execution.variables):
                    result = StepResult.skipped(index)
                else:
                    context = StepContext.for_execution(execution, index)
                    result = await self._interpreter.interpret(step, context)
            except Exception as e:
                result = StepResult.from_error(index, str(e))

            if execution.cancel_requested:
                break
            results.append(result)

            if result.status == StepStatus.SKIPPED:
                logger.info("Step skipped, conditions not met", step_index=index, step=step.label)
                await self.events.emit(
                    StepEvent(EngineEvent.STEP_COMPLETED, execution, step, index, step_result=result)
                )
                continue

            if result.status == StepStatus.ERROR:
                execution.errors.append({"step_index": index, "error": result.error})
                await self.events.emit(
                    StepEvent(EngineEvent.STEP_FAILED, execution, step, index, step_result=result, error=result.error)
                )
                if not step.optional:
                    logger.error("Step failed, stopping execution", step_index=index, error=result.error)
                    break
                logger.warning("Optional step failed, continuing", step_index=index, error=result.error)
                continue

            execution.merge_outputs(result.outputs)
            await self.events.emit(
                StepEvent(EngineEvent.STEP_COMPLETED, execution, step, index, step_result=result)
            )

            if not result.success and step.stop_on_failure is not False:
                logger.warning("Step unsuccessful, stopping execution", step_index=index, error=result.error)
                break

        return {
            "success": all(r.counts_as_success for r in results),
            "total_steps": len(workflow.steps),
            "completed_steps": sum(1 for r in results if r.success),
            "skipped_steps": sum(1 for r in results if r.status == StepStatus.SKIPPED),
            "failed_steps": sum(1 for r in results if not r.counts_as_success),
        }

    def _retire(self, execution: Execution) -> None:
        """Move an execution from the active set into history, once."""
        if self._active.pop(execution.id, None) is None:
            return
        self._history.appendleft(execution)

    # ─── Control ─────────────────────────────────────────────────

    async def cancel(self, execution_id: str) -> bool:
        """Cancel an active execution.

        Marks it cancelled and retires it immediately. A step already in
        flight keeps running, but no further step starts and its result is
        not recorded.

        Returns:
            True if an active execution was found
        """
        execution = self._active.get(execution_id)
        if execution is None:
            return False

        execution.cancel_requested = True
        execution.finish(ExecutionStatus.CANCELLED)
        self._retire(execution)
        self._manual_gate.release(execution_id)
        logger.info("Execution cancelled", execution_id=execution_id)
        await self.events.emit(ExecutionEvent(EngineEvent.EXECUTION_CANCELLED, execution))
        return True

    def acknowledge_manual_step(
        self,
        execution_id: str,
        approved: bool = True,
        note: Optional[str] = None,
        token: Optional[str] = None,
    ) -> bool:
        """Resolve a manual step waiting for an operator."""
        if execution_id not in self._active:
            return False
        return self._manual_gate.acknowledge(execution_id, approved=approved, note=note, token=token)

    def pending_manual_steps(self, execution_id: str) -> list[dict]:
        return self._manual_gate.pending_for(execution_id)

    async def shutdown(self) -> None:
        """Cancel background executions started with start_workflow."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ─── Queries ─────────────────────────────────────────────────

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        """Look up an execution, active first, then history."""
        execution = self._active.get(execution_id)
        if execution is not None:
            return execution
        return next((e for e in self._history if e.id == execution_id), None)

    def get_active_executions(self) -> list[Execution]:
        return list(self._active.values())

    def get_history(self, limit: Optional[int] = None) -> list[Execution]:
        """Finished executions, most recent first."""
        history = list(self._history)
        return history if limit is None else history[:limit]

    def clear_history(self) -> None:
        self._history.clear()

    def get_stats(self) -> dict[str, int]:
        history = self._history
        return {
            "active_executions": len(self._active),
            "max_concurrent_executions": self._max_concurrent,
            "total_executions": len(history),
            "successful_executions": sum(1 for e in history if e.status == ExecutionStatus.COMPLETED),
            "failed_executions": sum(
                1 for e in history if e.status in (ExecutionStatus.FAILED, ExecutionStatus.ERROR)
            ),
            "cancelled_executions": sum(1 for e in history if e.status == ExecutionStatus.CANCELLED),
        }


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine wired from settings."""
    global _engine
    if _engine is None:
        from app.config import get_settings
        from core.modes import get_mode_manager
        from tasks.registry import get_task_registry

        settings = get_settings()
        modes = get_mode_manager()
        _engine = WorkflowEngine(
            tool_backend=get_task_registry(),
            permission_authority=modes,
            mode_provider=modes,
            max_concurrent_executions=settings.MAX_CONCURRENT_EXECUTIONS,
            default_timeout=settings.EXECUTION_TIMEOUT_SECONDS,
            history_size=settings.EXECUTION_HISTORY_SIZE,
            command_tool_name=settings.COMMAND_TOOL_NAME,
            max_iterations=settings.LOOP_MAX_ITERATIONS,
            loop_output_policy=LoopOutputPolicy(settings.LOOP_OUTPUT_POLICY),
            manual_step_policy=ManualStepPolicy(settings.MANUAL_STEP_POLICY),
            conditional_result_policy=ConditionalResultPolicy(settings.CONDITIONAL_RESULT_POLICY),
        )
    return _engine


def reset_workflow_engine() -> None:
    """Drop the singleton (used by tests and app shutdown)."""
    global _engine
    _engine = None
