"""
Planners for Kortex.

A planner turns a goal into a stream of decisions: tool calls against the
action contract, or plain text responses. The execution loop feeds every
tool result back through ``observe`` before asking for the next decision.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Iterable, Iterator, Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from .errors import PlannerError
from .types import ActionRecord, Decision, MemoryFragment, PlannerResponse, ToolCall


logger = logging.getLogger(__name__)


SYSTEM_INSTRUCTION = """You are Kortex, the Autonomous Interface Layer. Your goal is to navigate websites for users.
You MUST use the highlight tool to show the user where you are looking before you click. Speak simply.
Call get_snapshot to read the page; use the selectors it returns for click, type and highlight."""


def build_instruction(fragments: Iterable[MemoryFragment] = ()) -> str:
    """System instruction, with retrieved memory appended when there is any."""
    context = "\n".join(f"- {fragment.content}" for fragment in fragments if fragment.content)
    if not context:
        return SYSTEM_INSTRUCTION
    return f"{SYSTEM_INSTRUCTION}\n\nContext from memory:\n{context}"


class Planner(ABC):
    """Source of decisions for one task at a time."""

    @abstractmethod
    def plan(self, goal: str, instruction: str) -> Iterator[Decision]:
        """Yield decisions until the planner has nothing more to do.

        Raises:
            PlannerError: If the planner fails or emits an invalid decision
        """

    def observe(self, call: ToolCall, result: str) -> None:
        """Receive the result of a tool call yielded by plan()."""


class LangChainPlanner(Planner):
    """Tool-calling planner on any OpenAI-compatible chat endpoint.

    Each step sends the full conversation; tool calls in the reply are
    yielded one by one, and a reply without tool calls ends the task.
    """

    def __init__(
        self,
        config,
        tool_specs: list[dict[str, Any]],
        llm: Optional[Any] = None,
    ):
        """Initialize the planner.

        Args:
            config: KortexConfig (endpoint, model, api_key, max_steps)
            tool_specs: Function specs from ActionContract.tool_specs()
            llm: Chat model override; a ChatOpenAI is created when None
        """
        self.config = config
        self.max_steps = config.max_steps
        if llm is None:
            llm = ChatOpenAI(
                base_url=config.model_endpoint,
                api_key=config.api_key or "not-required",
                model=config.model.strip(),
                temperature=0.1,
                max_tokens=1000,
                request_timeout=120,
            )
        self.llm = llm.bind_tools(tool_specs)
        self.messages: list = []
        self._pending: dict[str, ToolCall] = {}

    def _invoke(self) -> AIMessage:
        try:
            return self.llm.invoke(self.messages)
        except Exception as e:
            raise PlannerError(f"LLM call failed: {type(e).__name__}: {e}") from e

    def plan(self, goal: str, instruction: str) -> Iterator[Decision]:
        self.messages = [SystemMessage(content=instruction), HumanMessage(content=goal)]
        self._pending = {}

        for step in range(1, self.max_steps + 1):
            logger.debug(f"Planner step {step}/{self.max_steps}")
            reply = self._invoke()
            self.messages.append(reply)

            text = reply.content if isinstance(reply.content, str) else _join_content(reply.content)
            tool_calls = getattr(reply, "tool_calls", None) or []

            if not tool_calls:
                if text.strip():
                    yield PlannerResponse(text=text.strip())
                return

            if text.strip():
                yield PlannerResponse(text=text.strip())

            for tc in tool_calls:
                call = ToolCall(
                    name=tc.get("name", ""),
                    args=dict(tc.get("args") or {}),
                    call_id=tc.get("id") or str(uuid.uuid4()),
                )
                self._pending[call.call_id] = call
                yield call
                if call.call_id in self._pending:
                    # The loop did not report back; keep the transcript well-formed
                    self.observe(call, "No result")

        raise PlannerError(f"Step limit of {self.max_steps} reached without a final response")

    def observe(self, call: ToolCall, result: str) -> None:
        self._pending.pop(call.call_id, None)
        self.messages.append(ToolMessage(content=result, tool_call_id=call.call_id))


def _join_content(content: Any) -> str:
    """Flatten list-style message content into text."""
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class ReplayPlanner(Planner):
    """Re-issues a recorded trace, ignoring the goal.

    Usage:
        planner = ReplayPlanner(read_records("flight_recorder.jsonl"))
    """

    def __init__(self, records: Iterable[ActionRecord]):
        self.records = list(records)
        self.results: list[str] = []

    def plan(self, goal: str, instruction: str) -> Iterator[Decision]:
        self.results = []
        for index, record in enumerate(self.records, start=1):
            yield ToolCall(name=record.tool.value, args=dict(record.args), call_id=f"replay-{index}")
        yield PlannerResponse(text=f"Replayed {len(self.records)} recorded actions")

    def observe(self, call: ToolCall, result: str) -> None:
        self.results.append(result)


def describe_call(call: ToolCall) -> str:
    """One-line rendering of a tool call for status events."""
    return f"{call.name}({json.dumps(call.args, ensure_ascii=False, default=str)})"
