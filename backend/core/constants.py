"""Constants and enums for the workflow execution engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Status of a single interpreted step."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class StepType(str, Enum):
    """Type tags of the seven step variants."""

    TOOL = "tool"
    COMMAND = "command"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    PARALLEL = "parallel"
    DELAY = "delay"
    MANUAL = "manual"


class BranchTaken(str, Enum):
    """Which branch a conditional step followed."""

    THEN = "then"
    ELSE = "else"
    NONE = "none"


class TriggerType(str, Enum):
    """How an execution was started."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    API = "api"
    EVENT = "event"


class LoopOutputPolicy(str, Enum):
    """Whether outputs produced inside loop iterations reach the parent scope."""

    ISOLATE = "isolate"
    PROPAGATE = "propagate"


class ConditionalResultPolicy(str, Enum):
    """How a conditional step reports the branch it ran.

    NEST always succeeds and keeps the branch result under ``branch_result``;
    branch outputs stay inside the branch. ADOPT takes the branch's success
    and outputs as the conditional's own.
    """

    NEST = "nest"
    ADOPT = "adopt"


class ManualStepPolicy(str, Enum):
    """How manual steps behave.

    AUTO completes immediately after notifying the operator channel.
    AWAIT suspends the execution until the step is acknowledged.
    """

    AUTO = "auto"
    AWAIT = "await"


class ConditionOperator(str, Enum):
    """Operators understood by the condition evaluator."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


# Symbolic aliases accepted alongside the named operators
OPERATOR_ALIASES = {
    "==": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    ">": ConditionOperator.GREATER_THAN,
    "<": ConditionOperator.LESS_THAN,
}

DEFAULT_ITEM_VARIABLE = "item"
DEFAULT_INDEX_VARIABLE = "index"
