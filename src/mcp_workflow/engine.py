# engine.py
# The inbound interface: start, await and cancel workflow tasks.
#
# Each task runs the plan-execute-observe loop in its own background task and
# reports through an EventStream. The Planner proposes, the Executor runs, the
# Observer decides; this module only sequences them and emits events.
#
# Pre-execution order is fixed: resolve every server name, run the AuthGate
# over all of them, and only then emit execution_start or spawn anything.

import asyncio
import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from mcp_workflow.auth import AuthGate
from mcp_workflow.config import Settings
from mcp_workflow.errors import LoopDetectedError, NameNotFoundError, PlanParseError, WorkflowError
from mcp_workflow.events import EventCallback, EventStream
from mcp_workflow.executor import Executor
from mcp_workflow.llm import LLM
from mcp_workflow.models import (
    MissingAuth,
    PoolStatusEntry,
    StepResult,
    WorkflowPlan,
    WorkflowResult,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)
from mcp_workflow.observer import Observer
from mcp_workflow.planner import Done, Planner, ToolCatalog
from mcp_workflow.pool import ConnectionPool
from mcp_workflow.registry import ToolServerRegistry
from mcp_workflow.resolver import NameResolver

logger = logging.getLogger(__name__)


@dataclass
class _Task:
    state: WorkflowState
    stream: EventStream
    plan: WorkflowPlan | None = None
    servers: list[str] = field(default_factory=list)
    cancelled: bool = False
    runner: asyncio.Task[None] | None = None


class WorkflowEngine:
    """
    Example:
        engine = WorkflowEngine(registry, pool, AuthGate(registry, store), llm=OpenAICompletion(model))
        stream = engine.start_execution("task-1", "user-1", goal="Star the repo", servers=["github"])
        async for event in stream:
            print(event.to_json())
        result = await stream.result()
    """

    def __init__(
        self,
        registry: ToolServerRegistry,
        pool: ConnectionPool,
        auth_gate: AuthGate,
        *,
        llm: LLM | None = None,
        planner: Planner | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._registry = registry
        self._pool = pool
        self._auth_gate = auth_gate
        self._resolver = NameResolver(registry)
        self._planner = planner or Planner(llm, self._resolver, timeout=self._settings.planner_timeout)
        self._executor = Executor(self._resolver, auth_gate, pool)
        self._observer = Observer(
            retry_budget=self._settings.retry_budget,
            loop_threshold=self._settings.loop_threshold,
            max_parse_errors=self._settings.max_parse_errors,
        )
        self._tasks: dict[str, _Task] = {}

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------

    def start_execution(
        self,
        task_id: str,
        user_id: str,
        plan: WorkflowPlan | None = None,
        goal: str | None = None,
        servers: Iterable[str] | None = None,
        callback: EventCallback | None = None,
    ) -> EventStream:
        """
        Start a task in the background and return its event stream.

        With a plan the loop runs deterministically over its steps. Without
        one, `goal` and the candidate `servers` drive dynamic planning.
        """
        if task_id in self._tasks:
            raise ValueError(f"Task {task_id!r} is already running.")
        if plan is None and not (goal and servers):
            raise ValueError("Provide a plan, or a goal together with candidate servers.")

        state = WorkflowState(
            task_id=task_id,
            user_id=user_id,
            goal=goal or (plan.goal if plan else ""),
            dynamic=plan is None,
            max_iterations=self._settings.max_iterations,
        )
        task = _Task(state=state, stream=EventStream(task_id, callback), plan=plan, servers=list(servers or ()))
        self._tasks[task_id] = task
        task.runner = asyncio.create_task(self._drive(task), name=f"workflow-{task_id}")
        return task.stream

    async def execute(
        self,
        task_id: str,
        user_id: str,
        plan: WorkflowPlan | None = None,
        goal: str | None = None,
        servers: Iterable[str] | None = None,
        callback: EventCallback | None = None,
    ) -> WorkflowResult:
        stream = self.start_execution(task_id, user_id, plan=plan, goal=goal, servers=servers, callback=callback)
        return await stream.result()

    def cancel(self, task_id: str) -> bool:
        """Request cancellation. Honored between steps; False if the task is unknown or finished."""
        task = self._tasks.get(task_id)
        if task is None or task.stream.done:
            return False
        task.cancelled = True
        logger.info("Cancellation requested for %s", task_id)
        return True

    def get_pool_status(self) -> list[PoolStatusEntry]:
        return self._pool.status()

    async def manual_cleanup(self) -> list[str]:
        """Evict every idle pooled session now, regardless of TTL."""
        return await self._pool.sweep_idle(now=math.inf)

    # ------------------------------------------------------------------
    # Task driver
    # ------------------------------------------------------------------

    async def _drive(self, task: _Task) -> None:
        state, stream = task.state, task.stream
        result: WorkflowResult | None = None
        try:
            result = await self._run(task)
        except asyncio.CancelledError:
            self._observer.cancel(state)
            result = self._result(state)
            self._close_stream(stream, result)
            raise
        except Exception as exc:
            logger.exception("Task %s crashed", state.task_id)
            self._observer.fail(state, f"{type(exc).__name__}: {exc}")
            result = self._result(state)
            self._close_stream(stream, result)
        finally:
            self._tasks.pop(state.task_id, None)
            stream.finish(result or self._result(state))

    def _close_stream(self, stream: EventStream, result: WorkflowResult) -> None:
        if stream.closed:
            return
        if stream.open_step is not None:
            stream.emit(
                "step_error",
                {"step": stream.open_step, "error": result.error, "error_kind": "aborted", "retryable": False},
            )
        if stream.events:
            stream.workflow_error(result)

    async def _run(self, task: _Task) -> WorkflowResult:
        state, stream = task.state, task.stream

        try:
            servers = self._prepare(task)
        except NameNotFoundError as exc:
            stream.execution_start(state.user_id, self._mode(state), task.servers)
            self._observer.fail(state, str(exc))
            return self._terminate(state, stream)

        check = await self._auth_gate.check(state.user_id, servers)
        if not check.satisfied:
            logger.info("Task %s refused: missing auth for %s", state.task_id,
                        [m.canonical_name for m in check.missing])
            state.status = WorkflowStatus.AUTH_REQUIRED
            state.error = f"Authentication required for: {', '.join(m.canonical_name for m in check.missing)}."
            stream.auth_required(check.missing)
            return self._result(state, check.missing)

        stream.execution_start(state.user_id, self._mode(state), servers, len(state.pending_plan) or None)

        catalog: ToolCatalog | None = None
        if state.dynamic:
            catalog = await self._build_catalog(state.user_id, servers)
            if not catalog:
                self._observer.fail(state, "None of the candidate tool servers could be reached.")
                return self._terminate(state, stream)

        await self._loop(task, catalog)
        return self._terminate(state, stream)

    def _prepare(self, task: _Task) -> list[str]:
        """Resolve every server name up front. Plan steps are rewritten to canonical names."""
        state = task.state
        if task.plan is not None:
            steps = [
                step.model_copy(update={"canonical_name": self._resolver.resolve(step.canonical_name)})
                for step in task.plan.steps
            ]
            state.pending_plan = steps
            return list(dict.fromkeys(step.canonical_name for step in steps))
        return list(dict.fromkeys(self._resolver.resolve(name) for name in task.servers))

    async def _build_catalog(self, user_id: str, servers: list[str]) -> ToolCatalog:
        catalog = ToolCatalog()
        for name in servers:
            try:
                auth = await self._auth_gate.context_for(user_id, name)
                connected = await self._pool.ensure_connected(name, auth)
            except WorkflowError as exc:
                logger.warning("Skipping %s for planning: %s", name, exc)
                continue
            try:
                catalog.add(self._registry[name], self._pool.list_tools(connected.session))
            finally:
                self._pool.release(connected.session)
        return catalog

    async def _loop(self, task: _Task, catalog: ToolCatalog | None) -> None:
        state, stream, observer = task.state, task.stream, self._observer

        while state.status is WorkflowStatus.RUNNING:
            if task.cancelled:
                observer.cancel(state)
                break

            try:
                decision = await self._planner.next_step(state, catalog)
            except PlanParseError as exc:
                observer.on_parse_error(state, exc)
                continue

            if isinstance(decision, Done):
                observer.complete(state, decision.final_answer)
                break
            if not observer.can_iterate(state):
                observer.fail(state, f"Reached the iteration limit ({state.max_iterations}) with work remaining.")
                break
            try:
                attempt = observer.admit(state, decision)
            except LoopDetectedError as exc:
                state.errors.append(str(exc))
                observer.fail(state, str(exc))
                break

            observer.begin_iteration(state)
            result = await self._step(stream, state, decision, attempt)
            observer.observe(state, decision, result)

    async def _step(self, stream: EventStream, state: WorkflowState, step: WorkflowStep, attempt: int) -> StepResult:
        stream.step_start(step, attempt)
        result = await self._executor.run(step, state.user_id, state)
        if result.success:
            stream.step_complete(step, attempt, result)
        else:
            stream.step_error(step, attempt, result)
        return result

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _mode(self, state: WorkflowState) -> str:
        return "dynamic" if state.dynamic else "plan"

    def _terminate(self, state: WorkflowState, stream: EventStream) -> WorkflowResult:
        result = self._result(state)
        if result.success:
            stream.workflow_complete(result)
        else:
            stream.workflow_error(result)
        logger.info("Task %s finished: %s", state.task_id, state.status.value)
        return result

    def _result(self, state: WorkflowState, missing: list[MissingAuth] | None = None) -> WorkflowResult:
        return WorkflowResult(
            task_id=state.task_id,
            success=state.status is WorkflowStatus.COMPLETED,
            status=state.status,
            steps=list(state.execution_history),
            final_output=state.final_output,
            error=state.error,
            missing_auth=missing or [],
        )
