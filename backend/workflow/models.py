"""Workflow definition model.

A workflow is an ordered list of steps plus default variables. Steps form a
closed union of seven variants; anything else parses into ``UnknownStep`` so
the interpreter can reject it when it is reached rather than when the
workflow is loaded.

Definitions arrive as plain dicts already normalized by the loader:

{
    "id": "deploy",
    "name": "Deploy",
    "variables": {"environment": "staging"},
    "steps": [
        {"type": "command", "command": "make build", "outputs": {"log": "stdout"}},
        {
            "type": "conditional",
            "condition": [{"variable": "environment", "operator": "==", "value": "prod"}],
            "then": {"type": "manual", "instructions": "Approve release"}
        },
        {
            "type": "loop",
            "items": "{{hosts}}",
            "itemVariable": "host",
            "step": {"type": "tool", "toolName": "ping", "parameters": {"host": "{{host}}"}}
        }
    ]
}

Both camelCase and snake_case keys are accepted.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union
from uuid import uuid4

from core.constants import (
    DEFAULT_INDEX_VARIABLE,
    DEFAULT_ITEM_VARIABLE,
    StepType,
)
from core.exceptions import ValidationError


@dataclass(frozen=True)
class Condition:
    """A single predicate: ``variable operator value``."""

    variable: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> "Condition":
        if isinstance(data, Condition):
            return data
        if not isinstance(data, dict) or "variable" not in data:
            raise ValidationError(f"Invalid condition: {data!r}")
        return cls(
            variable=str(data["variable"]),
            operator=str(data.get("operator", "exists")),
            value=data.get("value"),
        )


@dataclass
class StepBase:
    """Fields shared by every step variant."""

    step_type: ClassVar[str] = ""

    name: Optional[str] = None
    description: Optional[str] = None
    conditions: list[Condition] = field(default_factory=list)
    optional: bool = False
    # None means "not specified": the controller stops on failure by default
    stop_on_failure: Optional[bool] = None

    @property
    def type_tag(self) -> str:
        return self.step_type

    @property
    def label(self) -> str:
        return self.name or self.type_tag


@dataclass
class ToolStep(StepBase):
    step_type: ClassVar[str] = StepType.TOOL.value

    tool_name: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)


@dataclass
class CommandStep(StepBase):
    step_type: ClassVar[str] = StepType.COMMAND.value

    command: str = ""
    working_directory: Optional[str] = None
    outputs: dict[str, str] = field(default_factory=dict)


@dataclass
class ConditionalStep(StepBase):
    step_type: ClassVar[str] = StepType.CONDITIONAL.value

    condition: list[Condition] = field(default_factory=list)
    then_step: Optional["Step"] = None
    else_step: Optional["Step"] = None


@dataclass
class LoopStep(StepBase):
    step_type: ClassVar[str] = StepType.LOOP.value

    items: Any = None
    item_variable: str = DEFAULT_ITEM_VARIABLE
    index_variable: str = DEFAULT_INDEX_VARIABLE
    max_iterations: Optional[int] = None
    step: Optional["Step"] = None


@dataclass
class ParallelStep(StepBase):
    step_type: ClassVar[str] = StepType.PARALLEL.value

    steps: list["Step"] = field(default_factory=list)


@dataclass
class DelayStep(StepBase):
    step_type: ClassVar[str] = StepType.DELAY.value

    # Milliseconds; number or numeric string, may be a placeholder
    delay: Any = 0


@dataclass
class ManualStep(StepBase):
    step_type: ClassVar[str] = StepType.MANUAL.value

    instructions: Optional[str] = None


@dataclass
class UnknownStep(StepBase):
    """A step whose type tag is not one of the seven variants."""

    tag: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def type_tag(self) -> str:
        return self.tag


Step = Union[
    ToolStep,
    CommandStep,
    ConditionalStep,
    LoopStep,
    ParallelStep,
    DelayStep,
    ManualStep,
    UnknownStep,
]


# ─── Parsing ──────────────────────────────────────────────────

def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first key present in ``data``."""
    for key in keys:
        if key in data:
            return data[key]
    return default


def _parse_conditions(raw: Any) -> list[Condition]:
    if raw is None:
        return []
    if isinstance(raw, (dict, Condition)):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"Conditions must be a list, got {type(raw).__name__}")
    return [Condition.from_dict(c) for c in raw]


def _parse_optional_step(raw: Any) -> Optional["Step"]:
    if raw is None:
        return None
    return parse_step(raw)


def _common_fields(data: dict) -> dict[str, Any]:
    stop = _pick(data, "stopOnFailure", "stop_on_failure")
    return {
        "name": data.get("name"),
        "description": data.get("description"),
        "conditions": _parse_conditions(data.get("conditions")),
        "optional": bool(data.get("optional", False)),
        "stop_on_failure": None if stop is None else bool(stop),
    }


def parse_step(data: Any) -> Step:
    """Build a step variant from its dict form."""
    if isinstance(data, StepBase):
        return data
    if not isinstance(data, dict):
        raise ValidationError(f"Step must be an object, got {type(data).__name__}")

    tag = str(data.get("type", ""))
    common = _common_fields(data)

    if tag == StepType.TOOL.value:
        return ToolStep(
            tool_name=str(_pick(data, "toolName", "tool_name", "tool", default="")),
            parameters=dict(data.get("parameters") or {}),
            outputs=dict(data.get("outputs") or {}),
            **common,
        )
    if tag == StepType.COMMAND.value:
        return CommandStep(
            command=data.get("command", ""),
            working_directory=_pick(data, "workingDirectory", "working_directory", "cwd"),
            outputs=dict(data.get("outputs") or {}),
            **common,
        )
    if tag == StepType.CONDITIONAL.value:
        return ConditionalStep(
            condition=_parse_conditions(data.get("condition")),
            then_step=_parse_optional_step(data.get("then")),
            else_step=_parse_optional_step(data.get("else")),
            **common,
        )
    if tag == StepType.LOOP.value:
        max_iterations = _pick(data, "maxIterations", "max_iterations")
        return LoopStep(
            items=data.get("items"),
            item_variable=_pick(data, "itemVariable", "item_variable", default=DEFAULT_ITEM_VARIABLE),
            index_variable=_pick(data, "indexVariable", "index_variable", default=DEFAULT_INDEX_VARIABLE),
            max_iterations=int(max_iterations) if max_iterations is not None else None,
            step=_parse_optional_step(data.get("step")),
            **common,
        )
    if tag == StepType.PARALLEL.value:
        raw_steps = data.get("steps") or []
        if not isinstance(raw_steps, list):
            raise ValidationError("Parallel step 'steps' must be a list")
        return ParallelStep(steps=[parse_step(s) for s in raw_steps], **common)
    if tag == StepType.DELAY.value:
        return DelayStep(delay=data.get("delay", 0), **common)
    if tag == StepType.MANUAL.value:
        return ManualStep(instructions=data.get("instructions"), **common)

    return UnknownStep(tag=tag, raw=dict(data), **common)


@dataclass(frozen=True)
class Workflow:
    """Immutable workflow definition handed to the engine."""

    id: str
    name: str
    steps: tuple = ()
    variables: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Workflow":
        """Build a workflow from its normalized dict form."""
        if not isinstance(data, dict):
            raise ValidationError("Workflow definition must be an object")
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list):
            raise ValidationError("Workflow definition requires a 'steps' list")
        variables = data.get("variables") or {}
        if not isinstance(variables, dict):
            raise ValidationError("Workflow 'variables' must be an object")

        workflow_id = str(data.get("id") or f"wf_{uuid4().hex[:12]}")
        return cls(
            id=workflow_id,
            name=str(data.get("name") or workflow_id),
            steps=tuple(parse_step(s) for s in raw_steps),
            variables=dict(variables),
        )
