"""Lifecycle events emitted by the workflow engine.

Observers register a callback per event kind:

    bus = EventBus()
    bus.on(EngineEvent.STEP_COMPLETED, lambda e: print(e.step_result.status))

Callbacks may be plain functions or coroutines. Each execution emits from a
single driver coroutine and ``emit`` awaits callbacks in registration
order, so events of one execution arrive in causal order. Events from
different executions may interleave.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class EngineEvent(str, Enum):
    """Every notification the engine produces."""

    EXECUTION_STARTED = "execution_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    MANUAL_STEP_REQUIRED = "manual_step_required"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"


@dataclass(frozen=True)
class ExecutionEvent:
    """Payload for execution-level events."""

    event: EngineEvent
    execution: Any


@dataclass(frozen=True)
class StepEvent:
    """Payload for step-level events."""

    event: EngineEvent
    execution: Any
    step: Any
    step_index: int
    step_result: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ManualStepEvent:
    """Payload asking an operator to act on a manual step."""

    execution_id: str
    step: Any
    step_index: int
    instructions: Optional[str]
    token: Optional[str] = None
    event: EngineEvent = EngineEvent.MANUAL_STEP_REQUIRED


Payload = Union[ExecutionEvent, StepEvent, ManualStepEvent]
Callback = Callable[[Payload], Union[None, Awaitable[None]]]


class EventBus:
    """Callback registry keyed by event kind."""

    def __init__(self):
        self._subscribers: dict[EngineEvent, list[Callback]] = defaultdict(list)

    def on(self, event: EngineEvent, callback: Callback) -> Callable[[], None]:
        """Register a callback. Returns a function that unregisters it."""
        self._subscribers[EngineEvent(event)].append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: EngineEvent, callback: Callback) -> bool:
        """Remove a callback. Returns True if it was registered."""
        callbacks = self._subscribers.get(EngineEvent(event), [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def subscriber_count(self, event: EngineEvent) -> int:
        return len(self._subscribers.get(EngineEvent(event), []))

    async def emit(self, payload: Payload) -> None:
        """Deliver a payload to every callback registered for its kind.

        A failing callback is logged and does not affect the others.
        """
        for callback in list(self._subscribers.get(payload.event, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Event callback failed",
                    event_name=payload.event.value,
                    error=str(e),
                )
