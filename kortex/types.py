"""
Type definitions for Kortex.

Provides typed dataclasses for the structures shared across the browser
session, flight recorder, memory store and execution loop.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ActionName(str, Enum):
    """The five operations a planner may invoke."""
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    HIGHLIGHT = "highlight"
    GET_SNAPSHOT = "get_snapshot"


@dataclass
class AccessibilityNode:
    """Compressed representation of one visible DOM element.

    Attributes:
        role: Explicit ARIA role, else the lowercase tag name
        name: Label or visible text, whitespace-collapsed and truncated
        selector: CSS selector that re-targets this element
        children: Visible child nodes in document order
    """
    role: str
    name: str
    selector: str
    children: list["AccessibilityNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dict, omitting empty children.

        Built iteratively so that deep trees do not exhaust the call stack.
        """
        root: dict[str, Any] = {}
        stack = [(self, root)]
        while stack:
            node, out = stack.pop()
            out["role"] = node.role
            out["name"] = node.name
            out["selector"] = node.selector
            if node.children:
                out["children"] = [{} for _ in node.children]
                stack.extend(zip(node.children, out["children"]))
        return root

    def iter_nodes(self):
        """Yield this node and all descendants in pre-order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class ActionRecord:
    """One entry of the flight recorder trace."""
    tool: ActionName
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"tool": self.tool.value, "args": dict(self.args)}


@dataclass(frozen=True)
class MemoryFragment:
    """A piece of long-term memory.

    Immutable: the store assigns ``id`` and ``created_at`` by returning a
    new instance from ``save``.
    """
    content: str
    embedding: tuple[float, ...]
    tags: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.embedding, tuple):
            object.__setattr__(self, "embedding", tuple(float(x) for x in self.embedding))


class MessageRole(str, Enum):
    """Who produced a message."""
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


@dataclass(frozen=True)
class Session:
    """A conversation grouping."""
    id: str
    context: str
    created_at: datetime


@dataclass(frozen=True)
class Message:
    """One message of a session."""
    id: str
    session_id: str
    role: MessageRole
    content: str
    created_at: datetime
    tool_call_id: Optional[str] = None
    tool_result: Optional[str] = None


class StatusLevel(str, Enum):
    """Levels of status events streamed to the transport."""
    INIT = "INIT"
    USER = "USER"
    PLANNING = "PLANNING"
    ACTION = "ACTION"
    RESPONSE = "RESPONSE"
    ERROR = "ERROR"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True)
class StatusEvent:
    """A human-readable status update."""
    level: StatusLevel
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, str]:
        return {"level": self.level.value, "message": self.message}


@dataclass(frozen=True)
class Acknowledgment:
    """Immediate reply to a goal submission."""
    accepted: bool
    message: str
    task_id: Optional[str] = None


class TaskState(str, Enum):
    """Lifecycle of one task."""
    IDLE = "idle"
    PLANNING = "planning"
    ACTING = "acting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskResult:
    """Outcome of one task."""
    goal: str
    state: TaskState
    outputs: list[str] = field(default_factory=list)
    actions_taken: int = 0
    error: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state is TaskState.COMPLETED

    @property
    def final_answer(self) -> Optional[str]:
        return self.outputs[-1] if self.outputs else None


@dataclass(frozen=True)
class ToolCall:
    """Planner decision naming an action contract operation."""
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass(frozen=True)
class PlannerResponse:
    """Planner decision that is plain output text."""
    text: str


Decision = Union[ToolCall, PlannerResponse]
