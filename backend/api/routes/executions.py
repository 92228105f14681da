"""Workflow execution submission and management endpoints."""

from fastapi import APIRouter, Depends, Query, status as http_status
from typing import Optional

import structlog

from api.schemas.execution import (
    ExecutionListResponse,
    ExecutionResponse,
    ExecutionStatsResponse,
    ManualStepAckRequest,
    WorkflowSubmitRequest,
)
from app.dependencies import get_engine
from core.exceptions import NotFoundError
from workflow.engine import WorkflowEngine
from workflow.execution import Execution, ExecutionOptions

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["executions"])


def _execution_to_response(ex: Execution) -> ExecutionResponse:
    """Convert a runtime Execution to response schema."""
    return ExecutionResponse(**ex.to_dict())


@router.post("/", response_model=ExecutionResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def submit_execution(
    request: WorkflowSubmitRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionResponse:
    """
    Admit a workflow and run it in the background.

    Returns 429 when the concurrency cap is reached and 422 when the
    workflow definition is malformed.
    """
    execution = engine.start_workflow(
        request.workflow,
        ExecutionOptions(
            variables=request.variables,
            timeout=request.timeout,
            triggered_by=request.triggered_by,
            user_id=request.user_id,
        ),
    )
    logger.info("Execution submitted", execution_id=execution.id, workflow_id=execution.workflow_id)
    return _execution_to_response(execution)


@router.get("/active", response_model=ExecutionListResponse)
async def list_active_executions(engine: WorkflowEngine = Depends(get_engine)) -> ExecutionListResponse:
    executions = engine.get_active_executions()
    return ExecutionListResponse(
        executions=[_execution_to_response(ex) for ex in executions],
        total=len(executions),
    )


@router.get("/history", response_model=ExecutionListResponse)
async def list_execution_history(
    limit: Optional[int] = Query(50, ge=1, description="Maximum entries, most recent first"),
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionListResponse:
    executions = engine.get_history(limit)
    return ExecutionListResponse(
        executions=[_execution_to_response(ex) for ex in executions],
        total=len(executions),
    )


@router.delete("/history", status_code=http_status.HTTP_204_NO_CONTENT)
async def clear_execution_history(engine: WorkflowEngine = Depends(get_engine)) -> None:
    engine.clear_history()
    logger.info("Execution history cleared")


@router.get("/stats", response_model=ExecutionStatsResponse)
async def get_execution_stats(engine: WorkflowEngine = Depends(get_engine)) -> ExecutionStatsResponse:
    return ExecutionStatsResponse(**engine.get_stats())


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionResponse:
    """Get an active or finished execution by ID."""
    execution = engine.get_execution(execution_id)
    if execution is None:
        raise NotFoundError(f"Execution '{execution_id}' not found")
    return _execution_to_response(execution)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionResponse:
    """Cancel a running execution."""
    if not await engine.cancel(execution_id):
        raise NotFoundError(f"No active execution '{execution_id}'")
    return _execution_to_response(engine.get_execution(execution_id))


@router.get("/{execution_id}/manual")
async def list_pending_manual_steps(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    return {"execution_id": execution_id, "pending": engine.pending_manual_steps(execution_id)}


@router.post("/{execution_id}/manual/acknowledge")
async def acknowledge_manual_step(
    execution_id: str,
    request: ManualStepAckRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    """Approve or reject a manual step that is waiting for an operator."""
    resolved = engine.acknowledge_manual_step(
        execution_id,
        approved=request.approved,
        note=request.note,
        token=request.token,
    )
    if not resolved:
        raise NotFoundError(f"No pending manual step for execution '{execution_id}'")
    return {"execution_id": execution_id, "approved": request.approved, "resolved": True}
