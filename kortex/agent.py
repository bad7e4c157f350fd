"""
Agent execution loop for Kortex.

ExecutionLoop drives one task at a time from goal to final state.
AgentService owns the worker thread that runs tasks in order and answers
submissions immediately with an Acknowledgment.
"""

import logging
import queue
import threading
import uuid
from typing import Callable, Optional

from .contract import ActionContract
from .errors import CancellationError, KortexError
from .planner import Planner, build_instruction, describe_call
from .types import (
    Acknowledgment,
    MemoryFragment,
    MessageRole,
    PlannerResponse,
    StatusEvent,
    StatusLevel,
    TaskResult,
    TaskState,
    ToolCall,
)
from .utils import redact_args, truncate_text


logger = logging.getLogger(__name__)


StatusSink = Callable[[StatusEvent], None]


class ExecutionLoop:
    """State machine for a single task.

    IDLE -> PLANNING -> ACTING -> ... -> COMPLETED | FAILED. Errors are
    reported and end the task; nothing is retried.
    """

    def __init__(
        self,
        contract: ActionContract,
        planner: Planner,
        status_sink: Optional[StatusSink] = None,
        memory_store=None,
        embedder=None,
        session_store=None,
        memory_context_limit: int = 3,
        remember_outcomes: bool = False,
    ):
        """Initialize the loop.

        Args:
            contract: Action contract the planner's tool calls go through
            planner: Decision source
            status_sink: Receives status events; events are only logged when None
            memory_store: MemoryStore for retrieval and outcome memory
            embedder: Embedder for the goal; retrieval needs both this and memory_store
            session_store: SessionStore that persists the conversation
            memory_context_limit: Fragments folded into the instruction
            remember_outcomes: Save a fragment for every completed task
        """
        self.contract = contract
        self.planner = planner
        self.status_sink = status_sink
        self.memory_store = memory_store
        self.embedder = embedder
        self.session_store = session_store
        self.memory_context_limit = memory_context_limit
        self.remember_outcomes = remember_outcomes

        self.state = TaskState.IDLE
        self._task_lock = threading.Lock()

    def emit(self, level: StatusLevel, message: str) -> None:
        """Send a status event to the sink."""
        logger.debug(f"[{level.value}] {message}")
        if self.status_sink is None:
            return
        try:
            self.status_sink(StatusEvent(level=level, message=message))
        except Exception as e:
            # Sink failures never reach the task
            logger.error(f"Status sink failed: {type(e).__name__}: {e}")

    def _set_state(self, state: TaskState) -> None:
        logger.debug(f"Task state: {self.state.value} -> {state.value}")
        self.state = state

    def retrieve_context(self, goal: str) -> list[MemoryFragment]:
        """Fragments relevant to ``goal``, or [] when retrieval is not configured."""
        if self.memory_store is None or self.embedder is None:
            return []
        if self.memory_context_limit <= 0:
            return []
        query = self.embedder.embed(goal)
        fragments = self.memory_store.search(query, self.memory_context_limit)
        logger.debug(f"Retrieved {len(fragments)} memory fragments for goal")
        return fragments

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise CancellationError()

    def run(self, goal: str, cancel: Optional[threading.Event] = None) -> TaskResult:
        """Run one task to completion.

        Holds the task lock for the whole task, so concurrent callers run
        strictly one after another.

        Args:
            goal: Natural-language goal
            cancel: Set to abort at the next decision boundary

        Returns:
            TaskResult with state COMPLETED or FAILED
        """
        with self._task_lock:
            self._set_state(TaskState.IDLE)
            result = TaskResult(goal=goal, state=TaskState.IDLE)
            self.emit(StatusLevel.USER, goal)

            decisions = None
            try:
                session_id = self._start_session(goal)
                result.session_id = session_id

                self._set_state(TaskState.PLANNING)
                self.emit(StatusLevel.PLANNING, "Thinking...")
                instruction = build_instruction(self.retrieve_context(goal))

                decisions = iter(self.planner.plan(goal, instruction))
                while True:
                    self._check_cancel(cancel)
                    try:
                        decision = next(decisions)
                    except StopIteration:
                        break

                    if isinstance(decision, ToolCall):
                        self._act(decision, result, session_id, cancel)
                    elif isinstance(decision, PlannerResponse):
                        result.outputs.append(decision.text)
                        self.emit(StatusLevel.RESPONSE, decision.text)
                        self._log_message(session_id, MessageRole.MODEL, decision.text)
                    else:
                        raise KortexError(f"Planner emitted an unknown decision: {decision!r}")

                self._set_state(TaskState.COMPLETED)
                result.state = TaskState.COMPLETED
                if self.remember_outcomes:
                    self._remember(result)
                self.emit(StatusLevel.COMPLETE, "Task completed")

            except KortexError as e:
                self._fail(result, str(e))
            except Exception as e:
                logger.exception("Unexpected error while running task")
                self._fail(result, f"Unexpected error: {type(e).__name__}: {e}")
            finally:
                if decisions is not None and hasattr(decisions, "close"):
                    decisions.close()

            return result

    def _act(
        self,
        call: ToolCall,
        result: TaskResult,
        session_id: Optional[str],
        cancel: Optional[threading.Event],
    ) -> None:
        self._set_state(TaskState.ACTING)
        shown = ToolCall(name=call.name, args=redact_args(call.name, call.args), call_id=call.call_id)
        self.emit(StatusLevel.ACTION, describe_call(shown))

        output = self.contract.invoke(call.name, call.args)
        result.actions_taken += 1
        self._check_cancel(cancel)

        self.planner.observe(call, output)
        self._log_message(
            session_id,
            MessageRole.TOOL,
            describe_call(shown),
            tool_call_id=call.call_id,
            tool_result=output,
        )
        self._set_state(TaskState.PLANNING)

    def _fail(self, result: TaskResult, error: str) -> None:
        self._set_state(TaskState.FAILED)
        result.state = TaskState.FAILED
        result.error = error
        self.emit(StatusLevel.ERROR, error)

    def _start_session(self, goal: str) -> Optional[str]:
        if self.session_store is None:
            return None
        session = self.session_store.create_session(context=goal)
        self.session_store.add_message(session.id, MessageRole.USER, goal)
        return session.id

    def _log_message(self, session_id: Optional[str], role: MessageRole, content: str, **kwargs) -> None:
        if self.session_store is None or session_id is None:
            return
        self.session_store.add_message(session_id, role, content, **kwargs)

    def _remember(self, result: TaskResult) -> None:
        if self.memory_store is None or self.embedder is None:
            return
        outcome = result.final_answer or f"completed after {result.actions_taken} actions"
        content = truncate_text(f"Goal: {result.goal}\nOutcome: {outcome}", 2000)
        tags = {"kind": "task_outcome"}
        if result.session_id:
            tags["session_id"] = result.session_id
        self.memory_store.save(
            MemoryFragment(content=content, embedding=self.embedder.embed(content), tags=tags)
        )


class AgentService:
    """Single worker thread that owns the browser and runs tasks in order.

    Playwright's sync API is bound to the thread that started it, so the
    browser is created by ``on_start`` inside the worker and torn down by
    ``on_stop`` there as well.

    Usage:
        service = AgentService(loop_factory=build_loop)
        service.start()
        ack = service.submit("Find the pricing page on example.com")
        ...
        service.stop()
    """

    _STOP = object()

    def __init__(
        self,
        loop: Optional[ExecutionLoop] = None,
        loop_factory: Optional[Callable[[], ExecutionLoop]] = None,
        on_stop: Optional[Callable[[], None]] = None,
        on_result: Optional[Callable[[TaskResult], None]] = None,
        queue_size: int = 16,
    ):
        """Initialize the service.

        Args:
            loop: Ready-made execution loop
            loop_factory: Builds the loop inside the worker thread (use for Playwright)
            on_stop: Called in the worker thread when it exits
            on_result: Called with each TaskResult
            queue_size: Maximum number of pending goals
        """
        if (loop is None) == (loop_factory is None):
            raise ValueError("Provide exactly one of loop or loop_factory")
        self._loop = loop
        self._loop_factory = loop_factory
        self._on_stop = on_stop
        self._on_result = on_result

        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._start_error: Optional[BaseException] = None
        self._accepting = False
        self._state_lock = threading.Lock()
        self.cancel_event = threading.Event()
        self.results: list[TaskResult] = []

    @property
    def loop(self) -> Optional[ExecutionLoop]:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and self._accepting

    def start(self, timeout: Optional[float] = 60) -> None:
        """Start the worker and wait until its loop is built.

        Raises:
            RuntimeError: If already started
            KortexError: If the loop factory failed
        """
        with self._state_lock:
            if self._thread is not None:
                raise RuntimeError("Agent service already started")
            self._thread = threading.Thread(target=self._worker, name="kortex-agent", daemon=True)
            self._thread.start()

        if not self._ready.wait(timeout):
            raise KortexError("Agent service did not start in time")
        if self._start_error is not None:
            raise KortexError(f"Agent service failed to start: {self._start_error}") from self._start_error
        with self._state_lock:
            self._accepting = True
        if self._loop is not None:
            self._loop.emit(StatusLevel.INIT, "Kortex Core Online")

    def submit(self, goal: str) -> Acknowledgment:
        """Queue a goal. Returns immediately."""
        goal = (goal or "").strip()
        if not goal:
            return Acknowledgment(accepted=False, message="Goal cannot be empty")
        with self._state_lock:
            if not self._accepting:
                return Acknowledgment(accepted=False, message="Agent service is not running")
            task_id = str(uuid.uuid4())
            try:
                self._queue.put_nowait((task_id, goal))
            except queue.Full:
                return Acknowledgment(accepted=False, message="Agent is busy, try again later")
        logger.info(f"Accepted task {task_id}: {truncate_text(goal, 80)}")
        return Acknowledgment(accepted=True, message="Command received. Processing...", task_id=task_id)

    def cancel(self) -> None:
        """Abort the task currently running, if any."""
        self.cancel_event.set()

    def stop(self, timeout: Optional[float] = 30) -> None:
        """Stop accepting goals, cancel the running task and join the worker."""
        with self._state_lock:
            self._accepting = False
            thread = self._thread
        if thread is None:
            return
        self.cancel_event.set()
        # Pending goals fail so the stop marker is reached
        pending = []
        while True:
            try:
                pending.append(self._queue.get_nowait())
            except queue.Empty:
                break
        self._queue.put(self._STOP)
        for item in pending:
            if item is not self._STOP:
                self._abandon(*item)
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Agent worker did not stop in time")

    def _worker(self) -> None:
        try:
            if self._loop is None:
                self._loop = self._loop_factory()
        except Exception as e:
            logger.error(f"Failed to build execution loop: {type(e).__name__}: {e}")
            self._start_error = e
            self._ready.set()
            self._run_on_stop()
            return
        self._ready.set()

        try:
            while True:
                item = self._queue.get()
                if item is self._STOP:
                    break
                task_id, goal = item
                if not self._accepting:
                    self._abandon(task_id, goal)
                    continue
                self.cancel_event.clear()
                logger.debug(f"Running task {task_id}")
                self._deliver(self._loop.run(goal, cancel=self.cancel_event))
        finally:
            self._run_on_stop()

    def _deliver(self, result: TaskResult) -> None:
        self.results.append(result)
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception as e:
                logger.error(f"Result callback failed: {type(e).__name__}: {e}")

    def _abandon(self, task_id: str, goal: str) -> None:
        """Fail an accepted goal that will never run."""
        error = "Agent service stopped before the task ran"
        logger.info(f"Failing task {task_id}: service is stopping")
        if self._loop is not None:
            self._loop.emit(StatusLevel.ERROR, f"{error}: {truncate_text(goal, 80)}")
        self._deliver(TaskResult(goal=goal, state=TaskState.FAILED, error=error))

    def _run_on_stop(self) -> None:
        if self._on_stop is None:
            return
        try:
            self._on_stop()
        except Exception as e:
            logger.error(f"Shutdown hook failed: {type(e).__name__}: {e}")

    def __enter__(self) -> "AgentService":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
