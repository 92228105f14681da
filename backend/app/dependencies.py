"""FastAPI dependency injection functions."""

from workflow.engine import WorkflowEngine, get_workflow_engine


def get_engine() -> WorkflowEngine:
    """
    Provide the workflow engine to API endpoints.

    Tests override this dependency with an engine wired to fake tools.
    """
    return get_workflow_engine()
