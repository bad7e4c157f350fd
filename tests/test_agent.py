"""
Tests for the execution loop and the agent service.
"""

import threading
import time

import pytest
from unittest.mock import MagicMock

from kortex.agent import AgentService, ExecutionLoop
from kortex.embeddings import Embedder
from kortex.errors import ElementNotFound, PlannerError
from kortex.memory_store import MemoryStore
from kortex.planner import Planner, ReplayPlanner
from kortex.storage import SessionStore
from kortex.types import (
    ActionName,
    ActionRecord,
    MemoryFragment,
    MessageRole,
    PlannerResponse,
    StatusLevel,
    TaskState,
    ToolCall,
)


class ScriptedPlanner(Planner):
    """Yields a fixed list of decisions and remembers what it observed."""

    def __init__(self, decisions, on_decision=None):
        self.decisions = list(decisions)
        self.on_decision = on_decision
        self.instructions = []
        self.observed = []

    def plan(self, goal, instruction):
        self.instructions.append(instruction)
        for decision in self.decisions:
            if self.on_decision is not None:
                self.on_decision(decision)
            if isinstance(decision, Exception):
                raise decision
            yield decision

    def observe(self, call, result):
        self.observed.append((call.name, result))


class FakeEmbedder(Embedder):
    def embed(self, text):
        return [1.0, 0.0]


@pytest.fixture
def contract():
    c = MagicMock()
    c.invoke.side_effect = lambda name, args: f"{name} ok"
    return c


@pytest.fixture
def events():
    return []


def make_loop(contract, planner, events, **kwargs):
    return ExecutionLoop(contract, planner, status_sink=events.append, **kwargs)


def levels(events):
    return [e.level for e in events]


class TestExecutionLoop:
    """Tests for the task state machine."""

    def test_completes_with_outputs(self, contract, events):
        planner = ScriptedPlanner([
            ToolCall(name="navigate", args={"url": "example.com"}, call_id="1"),
            ToolCall(name="get_snapshot", args={}, call_id="2"),
            PlannerResponse(text="The heading is Example Domain"),
        ])
        loop = make_loop(contract, planner, events)

        result = loop.run("Open example.com")

        assert result.state is TaskState.COMPLETED
        assert result.success
        assert result.actions_taken == 2
        assert result.final_answer == "The heading is Example Domain"
        assert loop.state is TaskState.COMPLETED
        assert planner.observed == [("navigate", "navigate ok"), ("get_snapshot", "get_snapshot ok")]
        assert levels(events) == [
            StatusLevel.USER, StatusLevel.PLANNING,
            StatusLevel.ACTION, StatusLevel.ACTION,
            StatusLevel.RESPONSE, StatusLevel.COMPLETE,
        ]

    def test_action_failure_fails_task_without_retry(self, contract, events):
        contract.invoke.side_effect = ElementNotFound("#missing", 10000)
        planner = ScriptedPlanner([
            ToolCall(name="click", args={"selector": "#missing"}),
            ToolCall(name="click", args={"selector": "#other"}),
        ])
        loop = make_loop(contract, planner, events)

        result = loop.run("Click it")

        assert result.state is TaskState.FAILED
        assert "#missing" in result.error
        assert contract.invoke.call_count == 1
        assert events[-1].level is StatusLevel.ERROR
        assert StatusLevel.COMPLETE not in levels(events)

    def test_planner_error_fails_task(self, contract, events):
        planner = ScriptedPlanner([PlannerError("stream broke")])
        result = make_loop(contract, planner, events).run("goal")

        assert result.state is TaskState.FAILED
        assert result.error == "stream broke"

    def test_unexpected_error_fails_task(self, contract, events):
        planner = ScriptedPlanner([RuntimeError("boom")])
        result = make_loop(contract, planner, events).run("goal")

        assert result.state is TaskState.FAILED
        assert "RuntimeError" in result.error

    def test_state_while_acting(self, contract, events):
        planner = ScriptedPlanner([ToolCall(name="get_snapshot", args={})])
        loop = make_loop(contract, planner, events)
        seen = []
        contract.invoke.side_effect = lambda name, args: seen.append(loop.state) or "ok"

        loop.run("goal")
        assert seen == [TaskState.ACTING]

    def test_cancel_before_first_decision(self, contract, events):
        cancel = threading.Event()
        cancel.set()
        planner = ScriptedPlanner([ToolCall(name="get_snapshot", args={})])

        result = make_loop(contract, planner, events).run("goal", cancel=cancel)

        assert result.state is TaskState.FAILED
        contract.invoke.assert_not_called()

    def test_cancel_after_contract_call(self, contract, events):
        cancel = threading.Event()

        def invoke(name, args):
            cancel.set()
            return "ok"

        contract.invoke.side_effect = invoke
        planner = ScriptedPlanner([
            ToolCall(name="click", args={"selector": "#a"}),
            ToolCall(name="click", args={"selector": "#b"}),
        ])

        result = make_loop(contract, planner, events).run("goal", cancel=cancel)

        assert result.state is TaskState.FAILED
        assert result.actions_taken == 1
        assert contract.invoke.call_count == 1
        assert "cancel" in result.error.lower()

    def test_password_text_not_in_status(self, contract, events):
        planner = ScriptedPlanner([
            ToolCall(name="type", args={"selector": "#password", "text": "hunter2"}),
        ])
        make_loop(contract, planner, events).run("log in")

        assert all("hunter2" not in e.message for e in events)
        contract.invoke.assert_called_once_with("type", {"selector": "#password", "text": "hunter2"})

    def test_broken_sink_does_not_fail_task(self, contract):
        planner = ScriptedPlanner([PlannerResponse(text="hi")])
        sink = MagicMock(side_effect=RuntimeError("transport gone"))
        result = ExecutionLoop(contract, planner, status_sink=sink).run("goal")
        assert result.success

    def test_tasks_are_mutually_exclusive(self, contract):
        events = []
        lock = threading.Lock()

        def sink(event):
            with lock:
                events.append((threading.current_thread().name, event.level))

        def slow(decision):
            time.sleep(0.01)

        def planner():
            return ScriptedPlanner(
                [ToolCall(name="get_snapshot", args={}) for _ in range(5)] + [PlannerResponse(text="done")],
                on_decision=slow,
            )

        loop = ExecutionLoop(contract, planner(), status_sink=sink)
        second_planner = planner()

        def run_second():
            loop.planner = second_planner
            loop.run("second")

        t1 = threading.Thread(target=lambda: loop.run("first"), name="t1")
        t1.start()
        time.sleep(0.005)
        t2 = threading.Thread(target=run_second, name="t2")
        t2.start()
        t1.join()
        t2.join()

        names = [name for name, _ in events]
        # Each task's events form one contiguous block
        switches = sum(1 for a, b in zip(names, names[1:]) if a != b)
        assert switches == 1
        assert len(events) == 2 * 9


class TestMemoryIntegration:
    """Tests for retrieval and outcome memory."""

    @pytest.fixture
    def memory(self, tmp_path):
        store = MemoryStore(tmp_path / "kortex.db")
        yield store
        store.close()

    def test_retrieved_context_in_instruction(self, contract, events, memory):
        memory.save(MemoryFragment(content="Login lives at /signin", embedding=(1.0, 0.0)))
        memory.save(MemoryFragment(content="Unrelated", embedding=(0.0, 1.0)))
        planner = ScriptedPlanner([PlannerResponse(text="ok")])

        make_loop(
            contract, planner, events,
            memory_store=memory, embedder=FakeEmbedder(), memory_context_limit=1,
        ).run("log in")

        instruction = planner.instructions[0]
        assert "Context from memory:" in instruction
        assert "Login lives at /signin" in instruction
        assert "Unrelated" not in instruction

    def test_no_retrieval_without_embedder(self, contract, events, memory):
        memory.save(MemoryFragment(content="note", embedding=(1.0, 0.0)))
        planner = ScriptedPlanner([PlannerResponse(text="ok")])

        make_loop(contract, planner, events, memory_store=memory).run("goal")
        assert "Context from memory:" not in planner.instructions[0]

    def test_outcome_remembered(self, contract, events, memory):
        planner = ScriptedPlanner([PlannerResponse(text="Found it")])
        result = make_loop(
            contract, planner, events,
            memory_store=memory, embedder=FakeEmbedder(), remember_outcomes=True,
        ).run("find pricing")

        assert result.success
        saved = memory.recent(1)[0]
        assert "find pricing" in saved.content
        assert "Found it" in saved.content
        assert saved.tags["kind"] == "task_outcome"

    def test_outcome_not_remembered_by_default(self, contract, events, memory):
        planner = ScriptedPlanner([PlannerResponse(text="Found it")])
        make_loop(contract, planner, events, memory_store=memory, embedder=FakeEmbedder()).run("goal")
        assert memory.count() == 0

    def test_dimension_mismatch_fails_task(self, contract, events, memory):
        memory.save(MemoryFragment(content="3d", embedding=(1.0, 0.0, 0.0)))
        planner = ScriptedPlanner([PlannerResponse(text="ok")])

        result = make_loop(
            contract, planner, events, memory_store=memory, embedder=FakeEmbedder(),
        ).run("goal")
        assert result.state is TaskState.FAILED


class TestSessionPersistence:
    """Tests for conversation persistence."""

    def test_messages_persisted(self, contract, events, tmp_path):
        store = SessionStore(tmp_path / "kortex.db")
        planner = ScriptedPlanner([
            ToolCall(name="navigate", args={"url": "example.com"}, call_id="c1"),
            PlannerResponse(text="Done"),
        ])

        result = make_loop(contract, planner, events, session_store=store).run("open example")
        messages = store.get_messages(result.session_id)
        store.close()

        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.TOOL, MessageRole.MODEL]
        assert messages[0].content == "open example"
        assert messages[1].tool_call_id == "c1"
        assert messages[1].tool_result == "navigate ok"


class TestReplayPlanner:
    """Tests for replaying a recorded trace."""

    def test_replays_records_in_order(self, contract, events):
        records = [
            ActionRecord(tool=ActionName.NAVIGATE, args={"url": "example.com"}),
            ActionRecord(tool=ActionName.CLICK, args={"selector": "#go"}),
        ]
        result = make_loop(contract, ReplayPlanner(records), events).run("replay")

        assert result.success
        assert [c.args[0] for c in contract.invoke.call_args_list] == ["navigate", "click"]
        assert result.final_answer == "Replayed 2 recorded actions"


class TestAgentService:
    """Tests for the worker service."""

    def make_service(self, contract, decisions=None, **kwargs):
        planner = ScriptedPlanner(decisions or [PlannerResponse(text="done")])
        loop = ExecutionLoop(contract, planner)
        return AgentService(loop=loop, **kwargs)

    def wait_for(self, predicate, timeout=5):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def test_requires_exactly_one_loop_source(self, contract):
        with pytest.raises(ValueError):
            AgentService()

    def test_submit_acknowledges_and_runs(self, contract):
        service = self.make_service(contract)
        service.start()
        try:
            ack = service.submit("do something")
            assert ack.accepted
            assert ack.task_id
            assert self.wait_for(lambda: len(service.results) == 1)
            assert service.results[0].success
        finally:
            service.stop()

    def test_empty_goal_rejected(self, contract):
        service = self.make_service(contract)
        service.start()
        try:
            ack = service.submit("   ")
            assert not ack.accepted
        finally:
            service.stop()

    def test_submit_before_start_rejected(self, contract):
        service = self.make_service(contract)
        assert not service.submit("goal").accepted

    def test_submit_after_stop_rejected(self, contract):
        service = self.make_service(contract)
        service.start()
        service.stop()
        assert not service.submit("goal").accepted

    def test_full_queue_rejected(self, contract):
        gate = threading.Event()
        contract.invoke.side_effect = lambda name, args: gate.wait(5) and "ok"
        service = self.make_service(
            contract,
            decisions=[ToolCall(name="get_snapshot", args={})],
            queue_size=1,
        )
        service.start()
        try:
            assert service.submit("first").accepted
            assert self.wait_for(lambda: contract.invoke.call_count == 1)
            assert service.submit("second").accepted
            ack = service.submit("third")
            assert not ack.accepted
            assert "busy" in ack.message.lower()
        finally:
            gate.set()
            service.stop()

    def test_tasks_run_in_submission_order(self, contract):
        order = []
        service = self.make_service(contract, on_result=lambda r: order.append(r.goal))
        service.start()
        try:
            for goal in ("a", "b", "c"):
                assert service.submit(goal).accepted
            assert self.wait_for(lambda: len(order) == 3)
        finally:
            service.stop()
        assert order == ["a", "b", "c"]

    def test_loop_factory_runs_in_worker_thread(self, contract):
        threads = {}
        stopped = threading.Event()

        def factory():
            threads["build"] = threading.current_thread().name
            return ExecutionLoop(contract, ScriptedPlanner([PlannerResponse(text="ok")]))

        def on_stop():
            threads["stop"] = threading.current_thread().name
            stopped.set()

        service = AgentService(loop_factory=factory, on_stop=on_stop)
        service.start()
        service.stop()

        assert stopped.is_set()
        assert threads["build"] == threads["stop"] == "kortex-agent"

    def test_factory_failure_raised_from_start(self):
        def factory():
            raise RuntimeError("no browser")

        service = AgentService(loop_factory=factory)
        with pytest.raises(Exception, match="no browser"):
            service.start()
        assert not service.submit("goal").accepted

    def test_stop_fails_pending_goals(self, contract):
        gate = threading.Event()
        contract.invoke.side_effect = lambda name, args: gate.wait(5) and "ok"
        events = []
        finished = []
        planner = ScriptedPlanner([ToolCall(name="get_snapshot", args={})])
        loop = ExecutionLoop(contract, planner, status_sink=events.append)
        service = AgentService(loop=loop, on_result=lambda r: finished.append((r.goal, r.state)))
        service.start()

        assert service.submit("A").accepted
        assert self.wait_for(lambda: contract.invoke.call_count == 1)
        assert service.submit("B").accepted

        stopper = threading.Thread(target=service.stop)
        stopper.start()
        assert self.wait_for(lambda: ("B", TaskState.FAILED) in finished)
        gate.set()
        stopper.join()

        assert sorted(finished) == [("A", TaskState.FAILED), ("B", TaskState.FAILED)]
        b_result = next(r for r in service.results if r.goal == "B")
        assert b_result.error == "Agent service stopped before the task ran"
        assert any(
            e.level is StatusLevel.ERROR and "stopped before the task ran" in e.message
            for e in events
        )
