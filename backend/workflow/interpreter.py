"""Step interpreter: runs one workflow step of any of the seven types.

Each strategy receives a ``StepContext`` and returns a ``StepResult`` whose
``outputs`` are the variables the step wants to publish. The interpreter
never applies outputs itself; the engine merges them into the execution.

``interpret`` never raises for step-level failures: any exception from a
strategy becomes a result with ``status=error`` so the engine always sees a
uniform contract.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.constants import (
    BranchTaken,
    ConditionalResultPolicy,
    LoopOutputPolicy,
    ManualStepPolicy,
    StepStatus,
)
from core.exceptions import (
    InvalidLoopItemsError,
    ToolNotFoundError,
    ToolNotPermittedError,
    UnknownStepTypeError,
    ValidationError,
)
from workflow.conditions import evaluate_conditions
from workflow.events import EventBus, ManualStepEvent
from workflow.execution import StepContext, StepResult
from workflow.interfaces import PermissionAuthority, ToolBackend
from workflow.manual import ManualStepGate
from workflow.models import (
    CommandStep,
    ConditionalStep,
    DelayStep,
    LoopStep,
    ManualStep,
    ParallelStep,
    Step,
    ToolStep,
)
from workflow.variables import extract_outputs, resolve_variables

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 100


def _completed(context: StepContext, success: bool, **kwargs: Any) -> StepResult:
    return StepResult(
        step_index=context.step_index,
        status=StepStatus.COMPLETED if success else StepStatus.FAILED,
        success=success,
        **kwargs,
    )


def _parse_delay_ms(value: Any) -> float:
    """Accept numbers and numeric strings; reject anything else."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid delay value: {value!r}")
    if isinstance(value, (int, float)):
        delay = float(value)
    elif isinstance(value, str):
        try:
            delay = float(value.strip())
        except ValueError:
            raise ValidationError(f"Invalid delay value: {value!r}")
    else:
        raise ValidationError(f"Invalid delay value: {value!r}")
    if delay < 0:
        raise ValidationError(f"Delay must not be negative: {value!r}")
    return delay


class StepInterpreter:
    """Dispatches a step to its strategy by variant."""

    def __init__(
        self,
        tool_backend: ToolBackend,
        permission_authority: Optional[PermissionAuthority] = None,
        events: Optional[EventBus] = None,
        manual_gate: Optional[ManualStepGate] = None,
        command_tool_name: str = "execute_command",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        loop_output_policy: LoopOutputPolicy = LoopOutputPolicy.ISOLATE,
        manual_step_policy: ManualStepPolicy = ManualStepPolicy.AUTO,
        conditional_result_policy: ConditionalResultPolicy = ConditionalResultPolicy.NEST,
    ):
        self._tools = tool_backend
        self._permissions = permission_authority
        self._events = events or EventBus()
        self._manual_gate = manual_gate or ManualStepGate()
        self._command_tool_name = command_tool_name
        self._max_iterations = max_iterations
        self._loop_output_policy = LoopOutputPolicy(loop_output_policy)
        self._manual_step_policy = ManualStepPolicy(manual_step_policy)
        self._conditional_result_policy = ConditionalResultPolicy(conditional_result_policy)
        self._strategies: dict[type, Callable[[Any, StepContext], Awaitable[StepResult]]] = {
            ToolStep: self._execute_tool,
            CommandStep: self._execute_command,
            ConditionalStep: self._execute_conditional,
            LoopStep: self._execute_loop,
            ParallelStep: self._execute_parallel,
            DelayStep: self._execute_delay,
            ManualStep: self._execute_manual,
        }

    @property
    def manual_gate(self) -> ManualStepGate:
        return self._manual_gate

    async def interpret(self, step: Step, context: StepContext) -> StepResult:
        """Run a step and return its result. Step errors never propagate."""
        started = time.monotonic()
        try:
            strategy = self._strategies.get(type(step))
            if strategy is None:
                raise UnknownStepTypeError(step.type_tag)
            result = await strategy(step, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Step raised an error",
                execution_id=context.execution_id,
                step_index=context.step_index,
                step_type=step.type_tag,
                error=str(e),
            )
            result = StepResult.from_error(context.step_index, str(e))

        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def interpret_nested(self, step: Step, context: StepContext) -> StepResult:
        """Run a branch, loop body or parallel sub-step, honoring its pre-check."""
        if step.conditions and not evaluate_conditions(step.conditions, context.variables):
            return StepResult.skipped(context.step_index)
        return await self.interpret(step, context)

    # ─── Tool & command ──────────────────────────────────────────

    def _check_permission(self, tool_name: str, parameters: dict, mode: str) -> None:
        if self._permissions is None:
            return
        # FileRestrictionError propagates with its own message
        if not self._permissions.is_tool_allowed(tool_name, parameters, mode):
            raise ToolNotPermittedError.for_mode(tool_name, mode)

    async def _invoke_tool(self, tool_name: str, parameters: dict, context: StepContext) -> dict:
        if not self._tools.has_tool(tool_name):
            raise ToolNotFoundError(tool_name)
        self._check_permission(tool_name, parameters, context.mode)

        raw = await self._tools.execute_tool(tool_name, parameters)
        if not isinstance(raw, dict):
            raw = {"success": bool(raw), "result": raw}
        return raw

    async def _execute_tool(self, step: ToolStep, context: StepContext) -> StepResult:
        parameters = resolve_variables(step.parameters, context.variables)
        raw = await self._invoke_tool(step.tool_name, parameters, context)
        success = bool(raw.get("success"))
        return _completed(
            context,
            success,
            outputs=extract_outputs(step.outputs, raw),
            error=None if success else raw.get("error") or f"Tool '{step.tool_name}' failed",
            details={"tool": step.tool_name, "parameters": parameters, "raw_result": raw},
        )

    async def _execute_command(self, step: CommandStep, context: StepContext) -> StepResult:
        command = resolve_variables(step.command, context.variables)
        parameters: dict[str, Any] = {"command": command}
        if step.working_directory:
            parameters["cwd"] = resolve_variables(step.working_directory, context.variables)

        raw = await self._invoke_tool(self._command_tool_name, parameters, context)
        success = bool(raw.get("success"))
        return _completed(
            context,
            success,
            outputs=extract_outputs(step.outputs, raw),
            error=None if success else raw.get("error") or f"Command failed: {command}",
            details={"command": command, "raw_result": raw},
        )

    # ─── Control flow ────────────────────────────────────────────

    async def _execute_conditional(self, step: ConditionalStep, context: StepContext) -> StepResult:
        condition_met = evaluate_conditions(step.condition, context.variables)

        if condition_met and step.then_step is not None:
            branch, target = BranchTaken.THEN, step.then_step
        elif not condition_met and step.else_step is not None:
            branch, target = BranchTaken.ELSE, step.else_step
        else:
            return _completed(
                context,
                True,
                details={"condition_met": condition_met, "branch_taken": BranchTaken.NONE.value},
            )

        branch_result = await self.interpret_nested(target, context.derive())
        details = {
            "condition_met": condition_met,
            "branch_taken": branch.value,
            "branch_result": branch_result,
        }
        if self._conditional_result_policy == ConditionalResultPolicy.NEST:
            return _completed(context, True, details=details)
        return _completed(
            context,
            branch_result.counts_as_success,
            outputs=dict(branch_result.outputs),
            error=branch_result.error,
            details=details,
        )

    async def _execute_loop(self, step: LoopStep, context: StepContext) -> StepResult:
        items = resolve_variables(step.items, context.variables)
        if isinstance(items, tuple):
            items = list(items)
        if not isinstance(items, list):
            raise InvalidLoopItemsError(type(items).__name__)
        if step.step is None:
            raise ValidationError("Loop step requires a 'step' body")

        limit = max(0, step.max_iterations or self._max_iterations)
        iterations: list[dict[str, Any]] = []
        propagated: dict[str, Any] = {}

        for index, item in enumerate(items[:limit]):
            if context.is_cancelled():
                logger.info(
                    "Loop stopped, execution cancelled",
                    execution_id=context.execution_id,
                    step_index=context.step_index,
                    iteration=index,
                )
                return _completed(
                    context,
                    False,
                    error="Execution cancelled",
                    details={"iterations": iterations, "total_iterations": len(iterations), "cancelled": True},
                )
            iteration_context = context.derive({
                step.item_variable: item,
                step.index_variable: index,
            })
            result = await self.interpret_nested(step.step, iteration_context)
            iterations.append({"index": index, "item": item, "result": result})

            if result.success and self._loop_output_policy == LoopOutputPolicy.PROPAGATE:
                propagated.update(result.outputs)

            if not result.counts_as_success and step.stop_on_failure:
                logger.info(
                    "Loop stopped on failing iteration",
                    execution_id=context.execution_id,
                    step_index=context.step_index,
                    iteration=index,
                )
                break

        success = all(it["result"].counts_as_success for it in iterations)
        failed = next((it for it in iterations if not it["result"].counts_as_success), None)
        return _completed(
            context,
            success,
            outputs=propagated,
            error=None if failed is None else f"Iteration {failed['index']}: {failed['result'].error}",
            details={"iterations": iterations, "total_iterations": len(iterations)},
        )

    async def _execute_parallel(self, step: ParallelStep, context: StepContext) -> StepResult:
        snapshot = context.derive()
        outcomes = await asyncio.gather(
            *(self.interpret_nested(sub, snapshot.derive()) for sub in step.steps),
            return_exceptions=True,
        )

        results: list[StepResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                outcome = StepResult.from_error(context.step_index, str(outcome))
            results.append(outcome)

        success = all(r.counts_as_success for r in results)
        errors = [r.error for r in results if r.error]
        return _completed(
            context,
            success,
            error=None if success else "; ".join(errors) or "Parallel branch failed",
            details={"results": results, "parallel_steps": len(step.steps)},
        )

    # ─── Delay & manual ──────────────────────────────────────────

    async def _execute_delay(self, step: DelayStep, context: StepContext) -> StepResult:
        delay_ms = _parse_delay_ms(resolve_variables(step.delay, context.variables))
        await asyncio.sleep(delay_ms / 1000)
        return _completed(context, True, details={"delay_ms": delay_ms})

    async def _execute_manual(self, step: ManualStep, context: StepContext) -> StepResult:
        instructions = resolve_variables(step.instructions or step.description, context.variables)

        if self._manual_step_policy == ManualStepPolicy.AUTO:
            await self._events.emit(ManualStepEvent(
                execution_id=context.execution_id,
                step=step,
                step_index=context.step_index,
                instructions=instructions,
            ))
            return _completed(context, True, details={"manual": True, "instructions": instructions})

        pending = self._manual_gate.open(context.execution_id, context.step_index)
        await self._events.emit(ManualStepEvent(
            execution_id=context.execution_id,
            step=step,
            step_index=context.step_index,
            instructions=instructions,
            token=pending.token,
        ))
        logger.info(
            "Waiting for manual step acknowledgement",
            execution_id=context.execution_id,
            step_index=context.step_index,
            token=pending.token,
        )
        decision = await self._manual_gate.wait(pending)

        details = {
            "manual": True,
            "instructions": instructions,
            "token": pending.token,
            "note": decision.note,
        }
        if decision.approved:
            return _completed(context, True, details=details)
        return _completed(
            context,
            False,
            error=decision.note or "Manual step rejected",
            details=details,
        )
