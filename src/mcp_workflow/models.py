# models.py
# Data contracts for the MCP workflow engine and connection pool.
# No business logic lives here, only schema and validation.

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


class ToolCallErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    REMOTE_FAILURE = "remote_failure"
    TIMEOUT = "timeout"


class LoopPhase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    OBSERVING = "observing"
    TERMINATING = "terminating"


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AUTH_REQUIRED = "auth_required"


# ---------------------------------------------------------------------------
# Tool server catalog
# ---------------------------------------------------------------------------


class SpawnSpec(BaseModel):
    """
    How to reach a tool server. stdio servers are spawned from `command`;
    http servers are reached at `url`. `env`, `args`, `url` and `headers`
    are templates, see auth.build_spawn_config.
    """

    model_config = ConfigDict(frozen=True)

    command: str = ""
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)


class ToolServerDescriptor(BaseModel):
    """One catalog entry. Immutable after load."""

    model_config = ConfigDict(frozen=True)

    canonical_name: str = Field(..., min_length=1)
    aliases: frozenset[str] = frozenset()
    spawn: SpawnSpec
    category: str = ""
    description: str = ""
    auth_schema: dict[str, str] = Field(
        default_factory=dict,
        description="Credential parameter name → human-readable description.",
    )
    transport: Literal["stdio", "http"] = "stdio"

    @model_validator(mode="after")
    def _reachable(self) -> "ToolServerDescriptor":
        if self.transport == "stdio" and not self.spawn.command:
            raise ValueError(f"stdio server {self.canonical_name!r} needs a command.")
        if self.transport == "http" and not self.spawn.url:
            raise ValueError(f"http server {self.canonical_name!r} needs a url.")
        return self

    @property
    def requires_auth(self) -> bool:
        return bool(self.auth_schema)


class ToolInfo(BaseModel):
    """A tool discovered on a live session."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class SpawnConfig(BaseModel):
    """A fully resolved spawn configuration: credentials substituted, ready to exec."""

    model_config = ConfigDict(frozen=True)

    transport: Literal["stdio", "http"] = "stdio"
    command: str = ""
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthRecord(BaseModel):
    """Per-user credentials for one tool server. Written by an external auth flow."""

    user_id: str
    canonical_name: str
    credentials: dict[str, str] = Field(default_factory=dict)
    verified: bool = True
    verified_at: datetime | None = None


class MissingAuth(BaseModel):
    canonical_name: str
    auth_schema: dict[str, str] = Field(default_factory=dict)


class AuthCheck(BaseModel):
    satisfied: bool
    missing: list[MissingAuth] = Field(default_factory=list)


class AuthContext(BaseModel):
    """Credentials bound to one (user, tool server) pair. Never rendered or logged."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    credentials: dict[str, str] = Field(default_factory=dict, repr=False)
    fingerprint: str


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class PoolStatusEntry(BaseModel):
    name: str
    user_id: str | None
    state: SessionState
    tool_count: int
    last_used_at: datetime
    ref_count: int


# ---------------------------------------------------------------------------
# Normalized tool output (tagged union)
# ---------------------------------------------------------------------------


class TextOutput(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class JsonOutput(BaseModel):
    kind: Literal["json"] = "json"
    data: Any


class BinaryOutput(BaseModel):
    kind: Literal["binary"] = "binary"
    mime_type: str = "application/octet-stream"
    size: int = 0


class EmptyOutput(BaseModel):
    kind: Literal["empty"] = "empty"


ToolOutput = Annotated[
    Union[TextOutput, JsonOutput, BinaryOutput, EmptyOutput],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class WorkflowStep(BaseModel):
    """A single tool call in a workflow."""

    step_number: int = Field(..., ge=1, description="1-based step index.")
    canonical_name: str = Field(..., description="Tool server, resolved through the registry.")
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""


class WorkflowPlan(BaseModel):
    """A precomputed plan produced by external task analysis."""

    goal: str = ""
    steps: list[WorkflowStep] = Field(..., min_length=1)


class ExecutionRecord(BaseModel):
    """Immutable log entry for one execution attempt. Retries add new records."""

    model_config = ConfigDict(frozen=True)

    step_number: int
    attempt: int = Field(..., ge=1)
    step: WorkflowStep
    request: dict[str, Any]
    success: bool
    output: ToolOutput | None = None
    error: str | None = None
    error_kind: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _one_outcome(self) -> "ExecutionRecord":
        if self.success and self.error is not None:
            raise ValueError("A successful record cannot carry an error.")
        if not self.success and self.error is None:
            raise ValueError("A failed record must carry an error.")
        return self


class StepResult(BaseModel):
    success: bool
    output: ToolOutput | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False


class WorkflowState(BaseModel):
    """Per-task loop state. Mutated only by the Executor and the Observer."""

    model_config = ConfigDict(validate_assignment=True)

    task_id: str
    user_id: str
    goal: str = ""
    dynamic: bool = False
    max_iterations: int = Field(10, ge=1)
    current_iteration: int = Field(0, ge=0)
    execution_history: list[ExecutionRecord] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    parse_errors: int = 0
    retries: int = 0
    is_complete: bool = False
    pending_plan: list[WorkflowStep] = Field(default_factory=list)
    phase: LoopPhase = LoopPhase.PLANNING
    status: WorkflowStatus = WorkflowStatus.RUNNING
    final_output: Any = None
    error: str | None = None

    def attempts_for(self, step_number: int) -> int:
        return sum(1 for record in self.execution_history if record.step_number == step_number)

    @model_validator(mode="after")
    def _iteration_cap(self) -> "WorkflowState":
        if self.current_iteration > self.max_iterations:
            raise ValueError(
                f"current_iteration {self.current_iteration} exceeds max_iterations {self.max_iterations}."
            )
        return self


# ---------------------------------------------------------------------------
# Events and results
# ---------------------------------------------------------------------------


EventType = Literal[
    "execution_start",
    "step_start",
    "step_complete",
    "step_error",
    "workflow_complete",
    "workflow_error",
    "auth_required",
]


class WorkflowEvent(BaseModel):
    """One entry of the ordered event stream. JSON-encodable with a discriminated `event`."""

    model_config = ConfigDict(frozen=True)

    event: EventType
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), ensure_ascii=False)


class WorkflowResult(BaseModel):
    """Terminal structured result handed to external persistence."""

    task_id: str
    success: bool
    status: WorkflowStatus
    steps: list[ExecutionRecord] = Field(default_factory=list)
    final_output: Any = None
    error: str | None = None
    missing_auth: list[MissingAuth] = Field(default_factory=list)
