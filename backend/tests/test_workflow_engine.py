"""Tests for the workflow execution engine."""

import asyncio
from collections import defaultdict

import pytest

from conftest import FakeToolBackend
from core.constants import ConditionalResultPolicy, ExecutionStatus, ManualStepPolicy, StepStatus
from core.exceptions import CapacityExceededError, ValidationError
from workflow.engine import WorkflowEngine
from workflow.events import EngineEvent
from workflow.execution import ExecutionOptions


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


def workflow(*steps, **extra):
    return {"id": extra.pop("id", "wf-test"), "name": "Test Workflow", "steps": list(steps), **extra}


def tool(name, /, **fields):
    return {"type": "tool", "toolName": name, **fields}


@pytest.fixture
def gates():
    """asyncio.Events keyed by name, used by the blocking tool."""
    return defaultdict(asyncio.Event)


@pytest.fixture
def blocking_tools(tools, gates):
    async def block(parameters):
        await gates[parameters["key"]].wait()
        return {"success": True, "key": parameters["key"]}

    tools.add("block", block)
    return tools


@pytest.mark.unit
class TestSequencing:
    """Steps run in order and outputs flow forward."""

    async def test_runs_steps_in_order(self, engine, tools):
        execution = await engine.execute_workflow(workflow(
            tool("echo", parameters={"value": 1}),
            tool("echo", parameters={"value": 2}),
            tool("echo", parameters={"value": 3}),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        assert [p["value"] for p in tools.called("echo")] == [1, 2, 3]
        assert [r.step_index for r in execution.results] == [0, 1, 2]
        assert execution.current_step == 3
        assert execution.summary == {
            "success": True,
            "total_steps": 3,
            "completed_steps": 3,
            "skipped_steps": 0,
            "failed_steps": 0,
        }
        assert execution.ended_at is not None
        assert execution.duration_ms is not None

    async def test_outputs_feed_later_steps(self, engine, tools):
        execution = await engine.execute_workflow(workflow(
            tool("echo", parameters={"value": "v1"}, outputs={"first": "echo"}),
            tool("echo", parameters={"value": "{{first}}-next"}, outputs={"second": "echo"}),
        ))

        assert tools.called("echo")[1] == {"value": "v1-next"}
        assert execution.variables["first"] == "v1"
        assert execution.variables["second"] == "v1-next"

    async def test_caller_variables_override_defaults(self, engine, tools):
        definition = workflow(tool("echo", parameters={"value": "{{env}}/{{region}}"}), variables={"env": "dev", "region": "eu"})
        execution = await engine.execute_workflow(definition, {"variables": {"env": "prod"}})

        assert tools.called("echo") == [{"value": "prod/eu"}]
        assert execution.variables["env"] == "prod"

    async def test_empty_workflow_completes(self, engine):
        execution = await engine.execute_workflow(workflow())
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.results == []
        assert execution.current_step == 0

    async def test_metadata(self, engine):
        execution = await engine.execute_workflow(
            workflow(), ExecutionOptions(triggered_by="api", user_id="u-1")
        )
        assert execution.metadata == {"triggered_by": "api", "user_id": "u-1", "mode": "code", "timeout": 300.0}
        assert execution.id.startswith("exec_")

    async def test_default_mode_without_provider(self, tools):
        engine = WorkflowEngine(tool_backend=tools)
        execution = await engine.execute_workflow(workflow(tool("ok")))
        assert execution.metadata["mode"] == "default"

    async def test_malformed_workflow_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.execute_workflow({"name": "no steps"})
        assert engine.get_active_executions() == []
        assert engine.get_history() == []


@pytest.mark.unit
class TestFailurePolicy:
    async def test_stops_on_failure_by_default(self, engine, tools):
        execution = await engine.execute_workflow(workflow(tool("ok"), tool("fail"), tool("echo")))

        assert execution.status == ExecutionStatus.FAILED
        assert len(execution.results) == 2
        assert execution.results[1].status == StepStatus.FAILED
        assert tools.called("echo") == []
        assert execution.errors == []

    async def test_stop_on_failure_false_continues(self, engine, tools):
        execution = await engine.execute_workflow(workflow(tool("fail", stopOnFailure=False), tool("echo")))

        assert len(execution.results) == 2
        assert len(tools.called("echo")) == 1
        assert execution.status == ExecutionStatus.FAILED
        assert execution.summary["failed_steps"] == 1

    async def test_error_stops_and_is_recorded(self, engine, tools):
        execution = await engine.execute_workflow(workflow(tool("missing"), tool("echo")))

        assert len(execution.results) == 1
        assert execution.results[0].status == StepStatus.ERROR
        assert execution.errors == [{"step_index": 0, "error": "Tool 'missing' not found"}]
        assert execution.status == ExecutionStatus.FAILED
        assert tools.called("echo") == []

    async def test_optional_error_continues(self, engine, tools):
        execution = await engine.execute_workflow(workflow(tool("missing", optional=True), tool("echo")))

        assert len(execution.results) == 2
        assert len(execution.errors) == 1
        assert execution.results[1].success is True
        # the optional error still counts against overall success
        assert execution.status == ExecutionStatus.FAILED

    async def test_unknown_step_type_is_step_error(self, engine):
        execution = await engine.execute_workflow(workflow({"type": "teleport"}))
        assert execution.results[0].status == StepStatus.ERROR
        assert execution.errors[0]["error"] == "Unknown step type: teleport"


@pytest.mark.unit
class TestConditionsAndControlFlow:
    async def test_unmet_conditions_skip_step(self, engine, tools):
        execution = await engine.execute_workflow(workflow(
            tool("echo", parameters={"value": 1}, conditions=[{"variable": "deploy", "operator": "==", "value": True}]),
            tool("ok"),
        ), {"variables": {"deploy": False}})

        assert execution.results[0].status == StepStatus.SKIPPED
        assert execution.results[0].success is False
        assert tools.called("echo") == []
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.summary["skipped_steps"] == 1

    async def test_conditions_see_earlier_outputs(self, engine, tools):
        execution = await engine.execute_workflow(workflow(
            tool("echo", parameters={"value": "ready"}, outputs={"state": "echo"}),
            tool("ok", conditions=[{"variable": "state", "operator": "==", "value": "ready"}]),
        ))
        assert execution.results[1].status == StepStatus.COMPLETED
        assert len(tools.called("ok")) == 1

    async def test_conditional_branch_outputs_stay_in_branch(self, engine):
        execution = await engine.execute_workflow(workflow(
            {
                "type": "conditional",
                "condition": [{"variable": "env", "operator": "==", "value": "prod"}],
                "then": tool("echo", parameters={"value": "careful"}, outputs={"mode": "echo"}),
            },
        ), {"variables": {"env": "prod"}})
        assert "mode" not in execution.variables
        assert execution.results[0].details["branch_result"].outputs == {"mode": "careful"}

    async def test_failing_branch_does_not_stop_workflow(self, engine, tools):
        execution = await engine.execute_workflow(workflow(
            {"type": "conditional", "condition": [], "then": tool("fail")},
            tool("echo", parameters={"value": "after"}),
        ))
        assert execution.results[0].success is True
        assert execution.status == ExecutionStatus.COMPLETED
        assert tools.called("echo") == [{"value": "after"}]

    async def test_adopted_branch_outputs_reach_scope(self, make_engine):
        engine = make_engine(conditional_result_policy=ConditionalResultPolicy.ADOPT)
        execution = await engine.execute_workflow(workflow(
            {
                "type": "conditional",
                "condition": [],
                "then": tool("echo", parameters={"value": "careful"}, outputs={"mode": "echo"}),
            },
        ))
        assert execution.variables["mode"] == "careful"

    async def test_loop_outputs_do_not_leak(self, engine, tools):
        execution = await engine.execute_workflow(workflow(
            {
                "type": "loop",
                "items": "{{files}}",
                "itemVariable": "file",
                "step": tool("echo", parameters={"value": "{{file}}"}, outputs={"last": "echo"}),
            },
        ), {"variables": {"files": ["a", "b"]}})

        assert execution.status == ExecutionStatus.COMPLETED
        assert [p["value"] for p in tools.called("echo")] == ["a", "b"]
        assert "last" not in execution.variables
        assert "file" not in execution.variables

    async def test_parallel_joins_before_next_step(self, engine, tools):
        order = []

        async def slow(parameters):
            await asyncio.sleep(0.01)
            order.append(parameters["value"])
            return {"success": True}

        tools.add("slow", slow)
        tools.add("after", lambda p: order.append("after") or {"success": True})

        execution = await engine.execute_workflow(workflow(
            {"type": "parallel", "steps": [tool("slow", parameters={"value": i}) for i in range(3)]},
            tool("after"),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        assert sorted(order[:3]) == [0, 1, 2]
        assert order[3] == "after"


    async def test_parallel_throwing_branch(self, engine, tools):
        def boom(parameters):
            raise RuntimeError("branch exploded")

        tools.add("boom", boom)
        execution = await engine.execute_workflow(workflow(
            {
                "type": "parallel",
                "steps": [tool("echo", parameters={"value": "fine"}, outputs={"v": "echo"}), tool("boom")],
            },
        ))

        parallel = execution.results[0]
        assert parallel.success is False
        branches = parallel.details["results"]
        assert len(branches) == 2
        assert branches[0].success is True
        assert branches[0].outputs == {"v": "fine"}
        assert branches[1].status == StepStatus.ERROR
        assert branches[1].error == "branch exploded"
        assert "v" not in execution.variables
        assert execution.status == ExecutionStatus.FAILED


@pytest.mark.unit
class TestTimeout:
    async def test_timeout_between_steps(self, engine, tools):
        execution = await engine.execute_workflow(
            workflow({"type": "delay", "delay": 60}, tool("ok")),
            {"timeout": 0.02},
        )

        assert execution.status == ExecutionStatus.ERROR
        assert "timed out" in execution.error
        assert len(execution.results) == 1
        assert tools.called("ok") == []
        assert engine.get_history()[0] is execution

    async def test_timeout_emits_execution_failed(self, engine, events):
        seen = []
        events.on(EngineEvent.EXECUTION_FAILED, seen.append)

        await engine.execute_workflow(workflow({"type": "delay", "delay": 30}, tool("ok")), {"timeout": 0.01})

        assert len(seen) == 1
        assert seen[0].execution.status == ExecutionStatus.ERROR


@pytest.mark.unit
class TestConcurrency:
    async def test_sixth_execution_rejected_until_one_finishes(self, make_engine, blocking_tools, gates):
        engine = make_engine(max_concurrent_executions=5)
        started = [
            engine.start_workflow(workflow(tool("block", parameters={"key": str(i)})))
            for i in range(5)
        ]
        assert len(engine.get_active_executions()) == 5

        with pytest.raises(CapacityExceededError) as exc_info:
            await engine.execute_workflow(workflow(tool("ok")))
        assert exc_info.value.status_code == 429
        assert len(engine.get_active_executions()) == 5
        assert engine.get_history() == []

        gates["0"].set()
        await wait_until(lambda: not started[0].is_active)
        await wait_until(lambda: len(engine.get_active_executions()) == 4)

        execution = await engine.execute_workflow(workflow(tool("ok")))
        assert execution.status == ExecutionStatus.COMPLETED

        for key in "1234":
            gates[key].set()
        await wait_until(lambda: not engine.get_active_executions())
        assert engine.get_stats()["successful_executions"] == 6


@pytest.mark.unit
class TestHistory:
    async def test_bounded_most_recent_first(self, engine):
        executions = [await engine.execute_workflow(workflow(tool("ok"), id=f"wf-{i}")) for i in range(101)]

        history = engine.get_history()
        assert len(history) == 100
        assert history[0] is executions[-1]
        assert history[-1] is executions[1]
        assert engine.get_execution(executions[0].id) is None

    async def test_limit_and_clear(self, engine):
        for i in range(3):
            await engine.execute_workflow(workflow(id=f"wf-{i}"))

        assert [e.workflow_id for e in engine.get_history(2)] == ["wf-2", "wf-1"]
        engine.clear_history()
        assert engine.get_history() == []

    async def test_get_execution_active_then_history(self, engine, blocking_tools, gates):
        execution = engine.start_workflow(workflow(tool("block", parameters={"key": "k"})))
        assert engine.get_execution(execution.id) is execution
        assert engine.get_active_executions() == [execution]

        gates["k"].set()
        await wait_until(lambda: not execution.is_active)
        assert engine.get_execution(execution.id) is execution
        assert engine.get_history() == [execution]

    async def test_stats(self, engine):
        await engine.execute_workflow(workflow(tool("ok")))
        await engine.execute_workflow(workflow(tool("fail")))
        await engine.execute_workflow(workflow({"type": "delay", "delay": 20}, tool("ok")), {"timeout": 0.005})

        assert engine.get_stats() == {
            "active_executions": 0,
            "max_concurrent_executions": 5,
            "total_executions": 3,
            "successful_executions": 1,
            "failed_executions": 2,
            "cancelled_executions": 0,
        }


@pytest.mark.unit
class TestCancel:
    async def test_cancel_running_execution(self, engine, blocking_tools, gates):
        execution = engine.start_workflow(workflow(tool("block", parameters={"key": "c"}), tool("ok")))
        await wait_until(lambda: blocking_tools.called("block"))

        assert await engine.cancel(execution.id) is True
        assert execution.status == ExecutionStatus.CANCELLED
        assert engine.get_active_executions() == []
        assert engine.get_history() == [execution]

        gates["c"].set()
        for _ in range(10):
            await asyncio.sleep(0.001)

        # the in-flight step finished but is not recorded, nothing else runs
        assert execution.results == []
        assert blocking_tools.called("ok") == []
        assert execution.status == ExecutionStatus.CANCELLED
        assert engine.get_history() == [execution]
        assert engine.get_stats()["cancelled_executions"] == 1

    async def test_cancel_stops_remaining_loop_iterations(self, engine, blocking_tools, gates):
        execution = engine.start_workflow(workflow({
            "type": "loop",
            "items": ["a", "b", "c", "d"],
            "step": tool("block", parameters={"key": "loop-{{item}}"}),
        }))
        await wait_until(lambda: blocking_tools.called("block"))

        assert await engine.cancel(execution.id) is True
        for key in "abcd":
            gates[f"loop-{key}"].set()
        for _ in range(20):
            await asyncio.sleep(0.001)

        assert blocking_tools.called("block") == [{"key": "loop-a"}]
        assert execution.status == ExecutionStatus.CANCELLED
        await engine.shutdown()

    async def test_cancel_unknown_or_finished(self, engine):
        assert await engine.cancel("exec_missing") is False
        execution = await engine.execute_workflow(workflow(tool("ok")))
        assert await engine.cancel(execution.id) is False
        assert execution.status == ExecutionStatus.COMPLETED

    async def test_cancel_emits_event(self, engine, events, blocking_tools, gates):
        seen = []
        events.on(EngineEvent.EXECUTION_CANCELLED, seen.append)
        execution = engine.start_workflow(workflow(tool("block", parameters={"key": "e"})))
        await wait_until(lambda: blocking_tools.called("block"))

        await engine.cancel(execution.id)
        gates["e"].set()
        await engine.shutdown()

        assert [e.execution.id for e in seen] == [execution.id]

    async def test_shutdown_cancels_background_runs(self, engine, blocking_tools):
        execution = engine.start_workflow(workflow(tool("block", parameters={"key": "s"})))
        await wait_until(lambda: blocking_tools.called("block"))

        await engine.shutdown()

        assert execution.status == ExecutionStatus.CANCELLED
        assert engine.get_active_executions() == []


@pytest.mark.unit
class TestManualSteps:
    async def test_await_policy_blocks_until_acknowledged(self, make_engine, tools):
        engine = make_engine(manual_step_policy=ManualStepPolicy.AWAIT)
        execution = engine.start_workflow(workflow({"type": "manual", "instructions": "approve"}, tool("ok")))
        await wait_until(lambda: engine.pending_manual_steps(execution.id))

        assert execution.is_active
        assert tools.called("ok") == []

        token = engine.pending_manual_steps(execution.id)[0]["token"]
        assert engine.acknowledge_manual_step(execution.id, approved=True, token=token) is True
        await wait_until(lambda: not execution.is_active)

        assert execution.status == ExecutionStatus.COMPLETED
        assert len(tools.called("ok")) == 1

    async def test_rejection_fails_execution(self, make_engine):
        engine = make_engine(manual_step_policy=ManualStepPolicy.AWAIT)
        execution = engine.start_workflow(workflow({"type": "manual"}))
        await wait_until(lambda: engine.pending_manual_steps(execution.id))

        engine.acknowledge_manual_step(execution.id, approved=False, note="not today")
        await wait_until(lambda: not execution.is_active)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.results[0].error == "not today"

    async def test_cancel_releases_pending_manual_step(self, make_engine):
        engine = make_engine(manual_step_policy=ManualStepPolicy.AWAIT)
        execution = engine.start_workflow(workflow({"type": "manual"}))
        await wait_until(lambda: engine.pending_manual_steps(execution.id))

        await engine.cancel(execution.id)
        await wait_until(lambda: not engine.pending_manual_steps(execution.id))

        assert execution.status == ExecutionStatus.CANCELLED
        assert engine.acknowledge_manual_step(execution.id) is False

    async def test_auto_policy_emits_notification(self, engine, events):
        seen = []
        events.on(EngineEvent.MANUAL_STEP_REQUIRED, seen.append)

        execution = await engine.execute_workflow(workflow({"type": "manual", "instructions": "look at {{x}}"}), {"variables": {"x": "it"}})

        assert execution.status == ExecutionStatus.COMPLETED
        assert seen[0].instructions == "look at it"
        assert seen[0].execution_id == execution.id


@pytest.mark.unit
class TestEvents:
    async def test_lifecycle_order(self, engine, events):
        seen = []
        for event in EngineEvent:
            events.on(event, lambda payload: seen.append(payload.event.value))

        await engine.execute_workflow(workflow(
            tool("ok"),
            tool("ok", conditions=[{"variable": "never", "operator": "exists"}]),
            tool("missing", optional=True),
        ))

        assert seen == [
            "execution_started",
            "step_started", "step_completed",
            "step_started", "step_completed",
            "step_started", "step_failed",
            "execution_completed",
        ]

    async def test_step_event_carries_result(self, engine, events):
        seen = []
        events.on(EngineEvent.STEP_COMPLETED, seen.append)

        execution = await engine.execute_workflow(workflow(tool("ok", name="first")))

        assert seen[0].step.label == "first"
        assert seen[0].step_index == 0
        assert seen[0].step_result is execution.results[0]

    async def test_observer_failure_does_not_break_execution(self, engine, events):
        def broken(payload):
            raise RuntimeError("observer bug")

        events.on(EngineEvent.STEP_STARTED, broken)
        execution = await engine.execute_workflow(workflow(tool("ok")))
        assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.unit
class TestSerialization:
    async def test_to_dict_nests_results(self, engine):
        execution = await engine.execute_workflow(workflow(
            {"type": "parallel", "steps": [tool("ok"), tool("echo", parameters={"value": 1})]},
        ))
        data = execution.to_dict()

        assert data["status"] == "completed"
        assert data["results"][0]["status"] == "completed"
        branch_results = data["results"][0]["results"]
        assert [r["success"] for r in branch_results] == [True, True]
        assert data["results"][0]["parallel_steps"] == 2

    async def test_fake_backend_isolated_per_engine(self):
        first = WorkflowEngine(tool_backend=FakeToolBackend({"ok": {"success": True}}))
        second = WorkflowEngine(tool_backend=FakeToolBackend())

        ok = await first.execute_workflow(workflow(tool("ok")))
        missing = await second.execute_workflow(workflow(tool("ok")))

        assert ok.status == ExecutionStatus.COMPLETED
        assert missing.status == ExecutionStatus.FAILED
