"""
Error taxonomy for Kortex.

Action contract errors propagate to the execution loop, which reports them
and fails the task. Flight recorder write errors never leave the recorder.
"""


class KortexError(Exception):
    """Base class for all Kortex errors."""


class BrowserError(KortexError):
    """The browser session failed to perform an operation."""


class SessionNotReady(BrowserError):
    """The browser session was used before init() or after close()."""

    def __init__(self, message: str = "Browser session not initialized"):
        super().__init__(message)


class NavigationError(BrowserError):
    """A page load did not settle in time."""

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        message = f"Could not navigate to {url}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ElementNotFound(BrowserError):
    """A selector did not resolve to an actionable element within the wait budget."""

    def __init__(self, selector: str, timeout_ms: int = 0):
        self.selector = selector
        self.timeout_ms = timeout_ms
        message = f"Element not found: {selector}"
        if timeout_ms:
            message += f" (waited {timeout_ms}ms)"
        super().__init__(message)


class StorageError(KortexError):
    """The persistence layer failed (I/O, corruption, unavailable backend)."""


class DimensionMismatchError(KortexError, ValueError):
    """A stored embedding and the query vector have different dimensionality."""

    def __init__(self, expected: int, actual: int, fragment_id: str = ""):
        self.expected = expected
        self.actual = actual
        self.fragment_id = fragment_id
        where = f" (fragment {fragment_id})" if fragment_id else ""
        super().__init__(
            f"Embedding dimension mismatch{where}: query has {expected}, stored has {actual}"
        )


class EmbedderUnavailable(KortexError):
    """The embedding model cannot be loaded."""


class PlannerError(KortexError):
    """The external planner failed, its stream errored, or it emitted an invalid decision."""


class CancellationError(KortexError):
    """The task was aborted by the caller's cancellation signal."""

    def __init__(self, message: str = "Task cancelled by caller"):
        super().__init__(message)
