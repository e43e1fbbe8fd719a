# observer.py
# The loop controller. Owns every WorkflowState transition after a step runs:
# continue, retry, replan, complete or fail.
#
#   PLANNING -> EXECUTING -> OBSERVING -> PLANNING | TERMINATING
#
# Terminal statuses are COMPLETED, FAILED and CANCELLED.

import logging
from collections import Counter
from typing import Any

from mcp_workflow.errors import LoopDetectedError, PlanParseError
from mcp_workflow.fingerprint import step_signature
from mcp_workflow.models import LoopPhase, StepResult, WorkflowState, WorkflowStatus, WorkflowStep
from mcp_workflow.results import output_value

logger = logging.getLogger(__name__)


class Observer:
    def __init__(self, retry_budget: int = 3, loop_threshold: int = 3, max_parse_errors: int = 3) -> None:
        self.retry_budget = retry_budget
        self.loop_threshold = loop_threshold
        self.max_parse_errors = max_parse_errors

    # ------------------------------------------------------------------
    # Before a step
    # ------------------------------------------------------------------

    def can_iterate(self, state: WorkflowState) -> bool:
        return state.current_iteration < state.max_iterations

    def admit(self, state: WorkflowState, step: WorkflowStep) -> int:
        """
        Return the attempt number the step is about to run as.

        A retry is the same call re-issued under its step number right after
        that call failed; it is governed by the retry budget. Every other call
        is checked for repetition: one whose signature already ran
        `loop_threshold` times, counting every executed attempt, raises
        LoopDetectedError. A dynamic replan after a failure is a new call
        under the old step number, so it is checked too.
        """
        attempt = state.attempts_for(step.step_number) + 1
        signature = step_signature(step.canonical_name, step.tool_name, step.input)
        if attempt > 1 and self._last_failed_signature(state, step.step_number) == signature:
            return attempt

        seen = Counter(
            step_signature(r.step.canonical_name, r.step.tool_name, r.step.input)
            for r in state.execution_history
        )
        if seen[signature] >= self.loop_threshold:
            raise LoopDetectedError((step.canonical_name, step.tool_name), seen[signature] + 1)
        return attempt

    @staticmethod
    def _last_failed_signature(state: WorkflowState, step_number: int) -> str | None:
        for record in reversed(state.execution_history):
            if record.step_number == step_number:
                if record.success:
                    return None
                return step_signature(record.step.canonical_name, record.step.tool_name, record.step.input)
        return None

    def begin_iteration(self, state: WorkflowState) -> None:
        state.current_iteration += 1
        state.phase = LoopPhase.EXECUTING

    # ------------------------------------------------------------------
    # After a step
    # ------------------------------------------------------------------

    def observe(self, state: WorkflowState, step: WorkflowStep, result: StepResult) -> None:
        state.phase = LoopPhase.OBSERVING

        if result.success:
            if not state.dynamic and state.pending_plan:
                state.pending_plan.pop(0)
            state.final_output = output_value(result.output)
            state.phase = LoopPhase.PLANNING
            return

        message = f"Step {step.step_number} ({step.canonical_name}.{step.tool_name}): {result.error}"
        state.errors.append(message)

        if not result.retryable:
            self.fail(state, message)
            return

        failures = sum(
            1 for r in state.execution_history if r.step_number == step.step_number and not r.success
        )
        if failures > self.retry_budget:
            self.fail(state, f"Retry budget of {self.retry_budget} exhausted. {message}")
            return

        state.retries += 1
        state.phase = LoopPhase.PLANNING
        logger.info("Retrying step %d (%d/%d)", step.step_number, failures, self.retry_budget)

    def on_parse_error(self, state: WorkflowState, exc: PlanParseError) -> None:
        state.parse_errors += 1
        state.errors.append(f"Planner output rejected: {exc}")
        logger.warning("Planner output rejected (%d/%d): %s", state.parse_errors, self.max_parse_errors, exc)
        if state.parse_errors >= self.max_parse_errors:
            self.fail(state, f"Planner failed {state.parse_errors} times: {exc}")
        else:
            state.phase = LoopPhase.PLANNING

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def complete(self, state: WorkflowState, final_answer: Any = None) -> None:
        if final_answer is not None:
            state.final_output = final_answer
        state.is_complete = True
        state.status = WorkflowStatus.COMPLETED
        state.phase = LoopPhase.TERMINATING

    def fail(self, state: WorkflowState, error: str) -> None:
        state.error = error
        state.status = WorkflowStatus.FAILED
        state.phase = LoopPhase.TERMINATING

    def cancel(self, state: WorkflowState) -> None:
        state.error = "Cancelled."
        state.status = WorkflowStatus.CANCELLED
        state.phase = LoopPhase.TERMINATING
