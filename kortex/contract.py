"""
Action contract for Kortex.

The fixed vocabulary a planner can use to affect the browser. Every call
is recorded in the flight recorder before it reaches the browser.
"""

import logging
import threading
from typing import Any, Callable, Optional, Union

from .errors import PlannerError
from .flight_recorder import FlightRecorder
from .tool_schemas import ACTION_SCHEMAS, parse_action_name, tool_spec, validate_action_args
from .types import ActionName


logger = logging.getLogger(__name__)


class ActionContract:
    """Routes planner tool calls to a browser session.

    Usage:
        contract = ActionContract(session, recorder)
        result = contract.invoke("navigate", {"url": "example.com"})
    """

    def __init__(self, session: Any, recorder: Optional[FlightRecorder] = None):
        """Initialize the contract.

        Args:
            session: BrowserSession (or any object with the same operations)
            recorder: Flight recorder; calls are not traced when None
        """
        self.session = session
        self.recorder = recorder
        self._lock = threading.Lock()

        self._handlers: dict[ActionName, Callable[[Any], str]] = {
            ActionName.NAVIGATE: lambda req: self.session.navigate(req.url),
            ActionName.CLICK: lambda req: self.session.click(req.selector),
            ActionName.TYPE: lambda req: self.session.type_text(req.selector, req.text),
            ActionName.HIGHLIGHT: lambda req: self.session.highlight(req.selector, req.message),
            ActionName.GET_SNAPSHOT: lambda req: self.session.get_snapshot(),
        }

    @property
    def names(self) -> list[str]:
        """Operation names, in contract order."""
        return [action.value for action in ACTION_SCHEMAS]

    def tool_specs(self) -> list[dict[str, Any]]:
        """Function specs for all operations, for binding to an LLM."""
        return [tool_spec(action) for action in ACTION_SCHEMAS]

    def invoke(self, name: Union[ActionName, str], args: Optional[dict[str, Any]] = None) -> str:
        """Record and execute one operation.

        Args:
            name: Operation name
            args: Operation arguments

        Returns:
            The operation's text result

        Raises:
            PlannerError: If the name is unknown or the arguments are invalid
            BrowserError: If the browser could not perform the operation
        """
        action = name if isinstance(name, ActionName) else parse_action_name(str(name))
        if action is None:
            raise PlannerError(f"Unknown tool: {name}")
        args = dict(args or {})

        with self._lock:
            if self.recorder is not None:
                self.recorder.record(action, args)

            is_valid, request, error = validate_action_args(action, args)
            if not is_valid:
                raise PlannerError(f"Invalid arguments for {action.value}: {error}")

            logger.debug(f"Invoking {action.value} {args}")
            return self._handlers[action](request)
