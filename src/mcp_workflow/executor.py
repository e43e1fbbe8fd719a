# executor.py
# Runs exactly one step: resolve, authorize, connect, call, release, normalize.
#
# Every attempt leaves one ExecutionRecord in the task's history. Typed
# failures come back as a failed StepResult; the Observer decides what
# happens next.

import logging
from datetime import datetime, timezone
from typing import Any

from mcp_workflow.auth import AuthGate
from mcp_workflow.errors import WorkflowError
from mcp_workflow.models import ExecutionRecord, StepResult, ToolOutput, WorkflowState, WorkflowStep
from mcp_workflow.pool import ConnectionPool
from mcp_workflow.resolver import NameResolver
from mcp_workflow.results import normalize_result

logger = logging.getLogger(__name__)


def _request(step: WorkflowStep) -> dict[str, Any]:
    return {"canonical_name": step.canonical_name, "tool_name": step.tool_name, "input": step.input}


class Executor:
    def __init__(self, resolver: NameResolver, auth_gate: AuthGate, pool: ConnectionPool) -> None:
        self._resolver = resolver
        self._auth_gate = auth_gate
        self._pool = pool

    async def run(self, step: WorkflowStep, user_id: str, state: WorkflowState | None = None) -> StepResult:
        started_at = datetime.now(timezone.utc)
        try:
            canonical_name = self._resolver.resolve(step.canonical_name)
            if canonical_name != step.canonical_name:
                step = step.model_copy(update={"canonical_name": canonical_name})
            output = await self._dispatch(step, user_id)
        except WorkflowError as exc:
            logger.warning("Step %d (%s.%s) failed: %s", step.step_number, step.canonical_name, step.tool_name, exc)
            result = StepResult(success=False, error=str(exc), error_kind=exc.kind, retryable=exc.retryable)
        else:
            result = StepResult(success=True, output=output)

        if state is not None:
            self._record(state, step, result, started_at)
        return result

    async def _dispatch(self, step: WorkflowStep, user_id: str) -> ToolOutput:
        auth = await self._auth_gate.context_for(user_id, step.canonical_name)
        connected = await self._pool.ensure_connected(step.canonical_name, auth)
        try:
            raw = await self._pool.call_tool(connected.session, step.tool_name, step.input)
        finally:
            self._pool.release(connected.session)
        return normalize_result(raw)

    def _record(self, state: WorkflowState, step: WorkflowStep, result: StepResult, started_at: datetime) -> None:
        state.execution_history.append(
            ExecutionRecord(
                step_number=step.step_number,
                attempt=state.attempts_for(step.step_number) + 1,
                step=step,
                request=_request(step),
                success=result.success,
                output=result.output,
                error=result.error,
                error_kind=result.error_kind,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )
        )
