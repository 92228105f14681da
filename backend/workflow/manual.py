"""Pending acknowledgements for manual steps.

Used when manual steps run with ``ManualStepPolicy.AWAIT``: the interpreter
registers a token, announces it, and waits until an operator acknowledges
it. Tokens live in memory only.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4


@dataclass
class ManualDecision:
    """Operator response to a pending manual step."""

    approved: bool
    note: Optional[str] = None
    cancelled: bool = False


@dataclass
class _Pending:
    token: str
    execution_id: str
    step_index: int
    future: asyncio.Future = field(repr=False)


class ManualStepGate:
    """Tracks manual steps waiting for an operator."""

    def __init__(self):
        self._pending: dict[str, _Pending] = {}

    def open(self, execution_id: str, step_index: int) -> _Pending:
        """Register a new pending acknowledgement."""
        future = asyncio.get_running_loop().create_future()
        pending = _Pending(
            token=f"manual_{uuid4().hex[:12]}",
            execution_id=execution_id,
            step_index=step_index,
            future=future,
        )
        self._pending[pending.token] = pending
        return pending

    async def wait(self, pending: _Pending) -> ManualDecision:
        try:
            return await pending.future
        finally:
            self._pending.pop(pending.token, None)

    def pending_for(self, execution_id: str) -> list[dict]:
        return [
            {"token": p.token, "step_index": p.step_index}
            for p in self._pending.values()
            if p.execution_id == execution_id
        ]

    def acknowledge(
        self,
        execution_id: str,
        approved: bool = True,
        note: Optional[str] = None,
        token: Optional[str] = None,
    ) -> bool:
        """Resolve a pending step (the oldest one when no token is given)."""
        for pending in list(self._pending.values()):
            if pending.execution_id != execution_id:
                continue
            if token is not None and pending.token != token:
                continue
            if pending.future.done():
                continue
            pending.future.set_result(ManualDecision(approved=approved, note=note))
            return True
        return False

    def release(self, execution_id: str, note: str = "Execution cancelled") -> int:
        """Fail every pending step of an execution. Returns how many."""
        released = 0
        for pending in list(self._pending.values()):
            if pending.execution_id == execution_id and not pending.future.done():
                pending.future.set_result(
                    ManualDecision(approved=False, note=note, cancelled=True)
                )
                released += 1
        return released
