# errors.py
# Typed error taxonomy. Every failure that crosses a component boundary is one
# of these. Raw subprocess, transport and JSON errors never escape.

from mcp_workflow.models import MissingAuth, ToolCallErrorKind


class WorkflowError(Exception):
    """Base class. `retryable` tells the Observer whether a retry may succeed."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class RegistryError(WorkflowError, ValueError):
    """Raised when a tool server catalog is inconsistent."""


class NameNotFoundError(WorkflowError, LookupError):
    """Raised when a tool server name cannot be resolved unambiguously."""

    def __init__(self, raw_name: str, candidates: tuple[str, ...] = ()) -> None:
        self.raw_name = raw_name
        self.candidates = candidates
        if candidates:
            message = f"Tool server {raw_name!r} is ambiguous: {', '.join(candidates)}."
        else:
            message = f"Tool server {raw_name!r} is not in the registry."
        super().__init__(message)


class ConnectError(WorkflowError):
    """Spawn or handshake failure. Retryable with backoff."""

    retryable = True

    def __init__(self, canonical_name: str, message: str, attempts: int = 1, retryable: bool = True) -> None:
        self.canonical_name = canonical_name
        self.reason = message
        self.attempts = attempts
        self.retryable = retryable
        super().__init__(f"Could not connect to {canonical_name!r} after {attempts} attempt(s): {message}")


class ToolCallError(WorkflowError):
    """
    A failed tool invocation.

    NOT_FOUND and INVALID_INPUT are fatal for the step; REMOTE_FAILURE and
    TIMEOUT may be retried under the retry budget.
    """

    def __init__(self, kind: ToolCallErrorKind, message: str, tool_name: str = "") -> None:
        self.error_kind = ToolCallErrorKind(kind)
        self.tool_name = tool_name
        self.retryable = self.error_kind in (ToolCallErrorKind.REMOTE_FAILURE, ToolCallErrorKind.TIMEOUT)
        super().__init__(message)

    @property
    def kind(self) -> str:
        return self.error_kind.value


class PlanParseError(WorkflowError):
    """Raised when planner output cannot be parsed into a step. Retryable, capped."""

    retryable = True

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class AuthRequiredError(WorkflowError):
    """Raised pre-execution when credentials are missing. Fatal for the whole task."""

    def __init__(self, missing: list[MissingAuth]) -> None:
        self.missing = list(missing)
        names = ", ".join(m.canonical_name for m in self.missing)
        super().__init__(f"Authentication required for: {names}.")


class LoopDetectedError(WorkflowError):
    """Raised when the same tool call repeats past the loop threshold. Always fatal."""

    def __init__(self, signature: tuple[str, str], count: int) -> None:
        self.signature = signature
        self.count = count
        server, tool = signature
        super().__init__(
            f"Loop detected: {server}.{tool} was called {count} times with identical input."
        )


class EventOrderError(WorkflowError, RuntimeError):
    """Raised when an event would break the stream's ordering contract."""
