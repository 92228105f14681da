"""Execution and workflow run schemas."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional


class WorkflowSubmitRequest(BaseModel):
    """Request to run a workflow definition."""

    workflow: dict[str, Any] = Field(description="Workflow definition (id, name, steps, variables)")
    variables: dict[str, Any] = Field(default_factory=dict, description="Caller variables, override workflow defaults")
    timeout: Optional[float] = Field(default=None, gt=0, description="Wall-clock budget in seconds")
    triggered_by: str = Field(default="api", description="What triggered the run (manual, api, schedule, event)")
    user_id: Optional[str] = Field(default=None, description="User that submitted the run")


class StepResultResponse(BaseModel):
    """Outcome of a single top-level step."""

    model_config = ConfigDict(extra="allow")

    step_index: int
    status: str
    success: bool
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0
    timestamp: str


class ExecutionResponse(BaseModel):
    """Execution run information response."""

    id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow ID")
    workflow_name: str = Field(description="Workflow name")
    status: str = Field(description="Execution status (running, completed, failed, error, cancelled)")
    started_at: str = Field(description="Execution start timestamp")
    ended_at: Optional[str] = Field(default=None, description="Execution end timestamp")
    duration_ms: Optional[int] = Field(default=None, description="Execution duration in milliseconds")
    current_step: int = Field(description="1-based index of the last step started")
    total_steps: int = Field(description="Number of top-level steps")
    variables: dict[str, Any] = Field(default_factory=dict)
    results: List[StepResultResponse] = Field(default_factory=list)
    errors: List[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    summary: Optional[dict[str, Any]] = None
    error: Optional[str] = Field(default=None, description="Error message if the execution aborted")


class ExecutionListResponse(BaseModel):
    """List of executions."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Number of executions returned")


class ExecutionStatsResponse(BaseModel):
    """Aggregate engine counters."""

    active_executions: int
    max_concurrent_executions: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    cancelled_executions: int


class ManualStepAckRequest(BaseModel):
    """Operator decision for a manual step awaiting acknowledgement."""

    approved: bool = True
    note: Optional[str] = None
    token: Optional[str] = Field(default=None, description="Specific pending step to resolve")
