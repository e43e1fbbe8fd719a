# events.py
# The ordered per-task event stream.
#
#   execution_start
#   (step_start  step_complete | step_error)*
#   workflow_complete | workflow_error
#
# or a lone auth_required when the AuthGate refuses the task. The stream
# enforces this grammar itself and raises EventOrderError on any violation.
# Consumers iterate with `async for`, register a callback, or read `events`.

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from mcp_workflow.errors import EventOrderError
from mcp_workflow.models import (
    EventType,
    MissingAuth,
    StepResult,
    WorkflowEvent,
    WorkflowResult,
    WorkflowStep,
)
from mcp_workflow.results import output_summary

logger = logging.getLogger(__name__)

EventCallback = Callable[[WorkflowEvent], None]

_TERMINAL = ("workflow_complete", "workflow_error", "auth_required")
_STEP_END = ("step_complete", "step_error")


class EventStream:
    def __init__(self, task_id: str, callback: EventCallback | None = None) -> None:
        self.task_id = task_id
        self.events: list[WorkflowEvent] = []
        self._callback = callback
        self._queue: asyncio.Queue[WorkflowEvent | None] = asyncio.Queue()
        self._started = False
        self._closed = False
        self._open_step: int | None = None
        self._last_step = 0
        self._result: WorkflowResult | None = None
        self._done = asyncio.Event()

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def open_step(self) -> int | None:
        return self._open_step

    def _check(self, event: EventType, data: dict[str, Any]) -> None:
        if self._closed:
            raise EventOrderError(f"{event} emitted after the stream was closed.")

        if not self._started:
            if event not in ("execution_start", "auth_required"):
                raise EventOrderError(f"{event} emitted before execution_start.")
            return
        if event in ("execution_start", "auth_required"):
            raise EventOrderError(f"{event} emitted after execution_start.")

        step = data.get("step")
        if event == "step_start":
            if self._open_step is not None:
                raise EventOrderError(f"step_start for step {step} while step {self._open_step} is open.")
            if step is None or step < self._last_step:
                raise EventOrderError(f"step_start for step {step} after step {self._last_step}.")
        elif event in _STEP_END:
            if self._open_step is None or step != self._open_step:
                raise EventOrderError(f"{event} for step {step} but the open step is {self._open_step}.")
        elif self._open_step is not None:
            raise EventOrderError(f"{event} emitted while step {self._open_step} is open.")

    def emit(self, event: EventType, data: dict[str, Any] | None = None) -> WorkflowEvent:
        data = {"task_id": self.task_id, **(data or {})}
        self._check(event, data)

        if event == "execution_start":
            self._started = True
        elif event == "step_start":
            self._open_step = data["step"]
        elif event in _STEP_END:
            self._last_step = data["step"]
            self._open_step = None

        record = WorkflowEvent(event=event, data=data)
        self.events.append(record)
        self._queue.put_nowait(record)
        if self._callback is not None:
            try:
                self._callback(record)
            except Exception:
                logger.exception("Event callback failed on %s", event)

        if event in _TERMINAL:
            self._closed = True
            self._queue.put_nowait(None)
        return record

    # ------------------------------------------------------------------
    # Typed emitters
    # ------------------------------------------------------------------

    def execution_start(self, user_id: str, mode: str, servers: list[str], total_steps: int | None = None) -> None:
        self.emit(
            "execution_start",
            {"user_id": user_id, "mode": mode, "servers": servers, "total_steps": total_steps},
        )

    def step_start(self, step: WorkflowStep, attempt: int) -> None:
        self.emit(
            "step_start",
            {
                "step": step.step_number,
                "attempt": attempt,
                "canonical_name": step.canonical_name,
                "tool_name": step.tool_name,
                "input": step.input,
                "reasoning": step.reasoning,
            },
        )

    def step_complete(self, step: WorkflowStep, attempt: int, result: StepResult) -> None:
        self.emit(
            "step_complete",
            {
                "step": step.step_number,
                "attempt": attempt,
                "canonical_name": step.canonical_name,
                "tool_name": step.tool_name,
                "output": result.output.model_dump(mode="json") if result.output is not None else None,
                "summary": output_summary(result.output, 200),
            },
        )

    def step_error(self, step: WorkflowStep, attempt: int, result: StepResult) -> None:
        self.emit(
            "step_error",
            {
                "step": step.step_number,
                "attempt": attempt,
                "canonical_name": step.canonical_name,
                "tool_name": step.tool_name,
                "error": result.error,
                "error_kind": result.error_kind,
                "retryable": result.retryable,
            },
        )

    def workflow_complete(self, result: WorkflowResult) -> None:
        self.emit(
            "workflow_complete",
            {"status": result.status.value, "steps": len(result.steps), "final_output": result.final_output},
        )

    def workflow_error(self, result: WorkflowResult) -> None:
        self.emit(
            "workflow_error",
            {"status": result.status.value, "steps": len(result.steps), "error": result.error},
        )

    def auth_required(self, missing: list[MissingAuth]) -> None:
        self.emit("auth_required", {"missing": [m.model_dump() for m in missing]})

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def __aiter__(self) -> AsyncIterator[WorkflowEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def finish(self, result: WorkflowResult) -> None:
        self._result = result
        if not self._closed:
            # Unblock iterators even when no terminal event could be emitted.
            self._closed = True
            self._queue.put_nowait(None)
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def result(self) -> WorkflowResult:
        await self._done.wait()
        if self._result is None:
            raise RuntimeError(f"Event stream for {self.task_id!r} finished without a result.")
        return self._result
