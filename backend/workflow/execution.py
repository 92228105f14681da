"""Runtime state of a workflow execution.

``Execution`` is the authoritative record owned by the engine.
``StepContext`` is the value object a step strategy runs against: it owns a
private copy of the variable scope, so loop iterations and parallel branches
never alias the execution's mutable state.
"""

import copy
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from core.constants import ExecutionStatus, StepStatus, TriggerType


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StepResult:
    """Structured outcome of interpreting one step."""

    step_index: int
    status: StepStatus
    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0
    timestamp: str = field(default_factory=_utcnow_iso)
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skipped(cls, step_index: int, reason: str = "conditions not met") -> "StepResult":
        return cls(
            step_index=step_index,
            status=StepStatus.SKIPPED,
            success=False,
            details={"reason": reason},
        )

    @classmethod
    def from_error(cls, step_index: int, error: str, duration_ms: int = 0) -> "StepResult":
        return cls(
            step_index=step_index,
            status=StepStatus.ERROR,
            success=False,
            error=error,
            duration_ms=duration_ms,
        )

    @property
    def counts_as_success(self) -> bool:
        """Successful or explicitly skipped."""
        return self.success or self.status == StepStatus.SKIPPED

    def to_dict(self) -> dict:
        return {
            "step_index": self.step_index,
            "status": self.status.value,
            "success": self.success,
            "outputs": self.outputs,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            **{k: _serialize(v) for k, v in self.details.items()},
        }


def _serialize(value: Any) -> Any:
    if isinstance(value, StepResult):
        return value.to_dict()
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


@dataclass
class ExecutionOptions:
    """Caller-supplied options for a single run."""

    variables: dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None  # seconds
    triggered_by: str = TriggerType.MANUAL.value
    user_id: Optional[str] = None


@dataclass
class Execution:
    """One runtime instance of a workflow."""

    id: str
    workflow_id: str
    workflow_name: str
    total_steps: int
    variables: dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    current_step: int = 0
    results: list[StepResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    summary: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    traceback: Optional[str] = None
    # Monotonic clock reading used for timeout checks
    start_monotonic: float = field(default_factory=time.monotonic, repr=False)
    cancel_requested: bool = field(default=False, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    @property
    def timeout(self) -> float:
        return self.metadata.get("timeout", 0)

    def elapsed(self) -> float:
        """Seconds since the execution started."""
        return time.monotonic() - self.start_monotonic

    def advance_to(self, step_number: int) -> None:
        """Move the step cursor forward; it never goes backwards."""
        if step_number <= self.current_step or step_number > self.total_steps:
            raise ValueError(
                f"Invalid step cursor {step_number} (current {self.current_step}, total {self.total_steps})"
            )
        self.current_step = step_number

    def merge_outputs(self, outputs: Optional[dict[str, Any]]) -> None:
        """Shallow-merge step outputs into the scope (append/overwrite only)."""
        if outputs:
            self.variables.update(outputs)

    def finish(self, status: ExecutionStatus) -> None:
        self.status = status
        self.ended_at = _utcnow_iso()
        self.duration_ms = int(self.elapsed() * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "variables": self.variables,
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "metadata": dict(self.metadata),
            "summary": self.summary,
            "error": self.error,
        }


@dataclass
class StepContext:
    """Everything a step strategy may read while it runs."""

    execution_id: str
    step_index: int
    variables: dict[str, Any]
    mode: str
    is_cancelled: Callable[[], bool] = lambda: False

    @classmethod
    def for_execution(cls, execution: Execution, step_index: int) -> "StepContext":
        return cls(
            execution_id=execution.id,
            step_index=step_index,
            variables=copy.copy(execution.variables),
            mode=execution.metadata.get("mode", ""),
            is_cancelled=lambda: execution.cancel_requested,
        )

    def derive(self, extra: Optional[dict[str, Any]] = None) -> "StepContext":
        """Fresh context with a copied scope, optionally extended."""
        variables = copy.copy(self.variables)
        if extra:
            variables.update(extra)
        return StepContext(
            execution_id=self.execution_id,
            step_index=self.step_index,
            variables=variables,
            mode=self.mode,
            is_cancelled=self.is_cancelled,
        )
