"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- A scripted in-memory tool backend (no subprocesses needed)
- Permission authorities that allow or deny everything
- A WorkflowEngine wired to the fakes
- FastAPI test client (httpx.AsyncClient) using the same engine
"""

import asyncio
import os
from typing import Any, AsyncGenerator, Callable, Optional, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.events import EventBus  # noqa: E402


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

ToolHandler = Union[dict, Callable[[dict], Any]]


class FakeToolBackend:
    """Tool backend answering from a table of handlers.

    A handler is either a fixed result dict or a (sync or async) callable
    receiving the resolved parameters. Every call is recorded.
    """

    def __init__(self, handlers: Optional[dict[str, ToolHandler]] = None):
        self.handlers: dict[str, ToolHandler] = dict(handlers or {})
        self.calls: list[tuple[str, dict]] = []

    def add(self, name: str, handler: ToolHandler) -> None:
        self.handlers[name] = handler

    def has_tool(self, name: str) -> bool:
        return name in self.handlers

    async def execute_tool(self, name: str, parameters: dict) -> dict:
        self.calls.append((name, parameters))
        handler = self.handlers[name]
        if callable(handler):
            result = handler(parameters)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return dict(handler)

    def called(self, name: str) -> list[dict]:
        return [params for tool, params in self.calls if tool == name]


class AllowAll:
    def is_tool_allowed(self, name: str, parameters: dict, mode: str) -> bool:
        return True


class DenyTools:
    def __init__(self, *denied: str):
        self.denied = set(denied)

    def is_tool_allowed(self, name: str, parameters: dict, mode: str) -> bool:
        return name not in self.denied


class FixedMode:
    def __init__(self, mode: str = "code"):
        self.mode = mode

    def current_mode(self) -> str:
        return self.mode


def echo_tool(parameters: dict) -> dict:
    return {"success": True, "echo": parameters.get("value"), "parameters": parameters}


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tools() -> FakeToolBackend:
    """Backend with a few stock tools every test can use."""
    return FakeToolBackend({
        "echo": echo_tool,
        "ok": {"success": True},
        "fail": {"success": False, "error": "tool failed"},
        "execute_command": lambda p: {
            "success": True,
            "exit_code": 0,
            "stdout": f"ran: {p['command']}",
            "stderr": "",
        },
    })


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(tools, events) -> WorkflowEngine:
    """Engine with permissive permissions and a fixed mode."""
    return WorkflowEngine(
        tool_backend=tools,
        permission_authority=AllowAll(),
        mode_provider=FixedMode("code"),
        events=events,
    )


@pytest.fixture
def make_engine(tools, events) -> Callable[..., WorkflowEngine]:
    """Factory for engines with non-default options."""

    def _make(**kwargs: Any) -> WorkflowEngine:
        kwargs.setdefault("tool_backend", tools)
        kwargs.setdefault("permission_authority", AllowAll())
        kwargs.setdefault("mode_provider", FixedMode("code"))
        kwargs.setdefault("events", events)
        return WorkflowEngine(**kwargs)

    return _make


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(engine):
    """Create a FastAPI app instance wired to the test engine."""
    from app.dependencies import get_engine
    from app.main import create_app

    test_app = create_app()
    test_app.dependency_overrides[get_engine] = lambda: engine

    yield test_app

    await engine.shutdown()
    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
