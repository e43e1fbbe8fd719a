# planner.py
# Produces the next workflow step.
#
# Deterministic mode reads the head of a precomputed plan. Dynamic mode makes
# exactly one LLM call per iteration, scoped to the task's tool servers, and
# parses the reply defensively: fences, prose-wrapped JSON, objects, arrays.
# Malformed output surfaces as PlanParseError, never as a raw JSON exception.

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from mcp_workflow.errors import NameNotFoundError, PlanParseError
from mcp_workflow.llm import LLM, CompletionOptions
from mcp_workflow.models import ToolInfo, ToolServerDescriptor, WorkflowState, WorkflowStep
from mcp_workflow.resolver import NameResolver
from mcp_workflow.results import output_summary

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Done:
    """The planner has nothing left to do."""

    final_answer: Any = None
    reasoning: str = ""


@dataclass
class ToolCatalog:
    """The task-relevant tool servers and their discovered tools."""

    servers: dict[str, tuple[ToolServerDescriptor, list[ToolInfo]]] = field(default_factory=dict)

    def add(self, descriptor: ToolServerDescriptor, tools: list[ToolInfo]) -> None:
        self.servers[descriptor.canonical_name] = (descriptor, list(tools))

    def __contains__(self, canonical_name: object) -> bool:
        return canonical_name in self.servers

    def __bool__(self) -> bool:
        return bool(self.servers)

    def render(self) -> str:
        blocks: list[str] = []
        for name, (descriptor, tools) in self.servers.items():
            lines = [f"### {name}: {descriptor.description or 'tool server'}"]
            for tool in tools:
                schema = json.dumps(tool.input_schema, ensure_ascii=False) if tool.input_schema else "{}"
                lines.append(f"- {tool.name}: {tool.description or 'no description'}\n  input schema: {schema}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

PLANNER_SYSTEM_PROMPT = """\
You are a planning agent that completes a task by calling tools on MCP tool servers, \
one call at a time. You see the results of every previous call before choosing the next.

Respond with ONLY a JSON object, no prose:

{
  "canonical_name": "<tool server name exactly as listed>",
  "tool_name": "<tool name exactly as listed>",
  "input": {<arguments matching the tool's input schema>},
  "reasoning": "<one sentence: why this call>"
}

When the task is complete, or cannot progress further, respond with:

{"done": true, "final_answer": "<answer for the user>"}

Rules:
  - Use only the servers and tools listed below.
  - Never repeat a call that already succeeded with the same input.
  - If a call failed, choose a different tool or different input.\
"""


def _format_history(state: WorkflowState) -> str:
    if not state.execution_history:
        return "(nothing executed yet)"
    lines: list[str] = []
    for record in state.execution_history:
        step = record.step
        status = "ok" if record.success else f"FAILED ({record.error_kind}): {record.error}"
        lines.append(
            f"-- Step {record.step_number} attempt {record.attempt}: "
            f"{step.canonical_name}.{step.tool_name} {json.dumps(step.input, ensure_ascii=False)}"
        )
        lines.append(f"   Result: {output_summary(record.output, 400) if record.success else status}")
    return "\n".join(lines)


def build_planner_prompt(state: WorkflowState, catalog: ToolCatalog) -> str:
    return (
        f"## Task\n{state.goal}\n\n"
        f"## Iteration\n{state.current_iteration + 1} of {state.max_iterations}\n\n"
        f"## Execution history\n{_format_history(state)}\n\n"
        f"## Available tool servers\n{catalog.render()}"
    )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def strip_fences(text: str) -> str:
    match = _FENCE.search(text)
    return match.group(1).strip() if match else text.strip()


def extract_json(text: str) -> Any:
    """
    Pull the first JSON value out of model output.

    Tries the whole (fence-stripped) text first, then every '{' / '['
    position in order, so prose before or after the payload is tolerated.
    """
    body = strip_fences(text)
    if not body:
        raise PlanParseError("Planner returned an empty response.", text)
    try:
        return json.loads(body, strict=False)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder(strict=False)
    for match in re.finditer(r"[\{\[]", body):
        try:
            value, _ = decoder.raw_decode(body, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, (dict, list)):
            return value
    raise PlanParseError("Planner output contains no parseable JSON.", text)


def _coerce_input(value: Any, raw: str) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                return {"text": value}
            if isinstance(parsed, dict):
                return parsed
        return {"text": value}
    raise PlanParseError(f"Step input must be an object, got {type(value).__name__}.", raw)


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_step_payload(
    text: str,
    step_number: int,
    resolver: NameResolver | None = None,
    allowed: ToolCatalog | None = None,
) -> WorkflowStep | Done:
    """
    Parse one planner reply into a WorkflowStep or Done.

    Accepts a bare object, an array (first element is used), or a
    {"steps": [...]} wrapper, optionally inside markdown fences or prose.
    """
    payload = extract_json(text)
    if isinstance(payload, dict) and isinstance(payload.get("steps"), list):
        payload = payload["steps"]
    if isinstance(payload, list):
        if not payload:
            raise PlanParseError("Planner returned an empty step list.", text)
        payload = payload[0]
    if not isinstance(payload, dict):
        raise PlanParseError(f"Expected a JSON object, got {type(payload).__name__}.", text)

    if payload.get("done") is True or payload.get("isComplete") is True:
        return Done(
            final_answer=_first(payload, "final_answer", "finalAnswer", "answer"),
            reasoning=str(payload.get("reasoning", "")),
        )

    server = _first(payload, "canonical_name", "mcpName", "mcp", "server")
    tool = _first(payload, "tool_name", "tool", "action")
    if not isinstance(server, str) or not isinstance(tool, str):
        raise PlanParseError("Step must name a tool server and a tool.", text)

    if resolver is not None:
        try:
            server = resolver.resolve(server)
        except NameNotFoundError as exc:
            raise PlanParseError(str(exc), text) from exc
    if allowed is not None and server not in allowed:
        raise PlanParseError(f"Tool server {server!r} is not available to this task.", text)

    return WorkflowStep(
        step_number=step_number,
        canonical_name=server,
        tool_name=tool,
        input=_coerce_input(payload.get("input", payload.get("args")), text),
        reasoning=str(payload.get("reasoning", "")),
    )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


def next_step_number(state: WorkflowState) -> int:
    """Completed steps + 1. A failed step keeps its number while it is retried."""
    return sum(1 for record in state.execution_history if record.success) + 1


class Planner:
    """
    Chooses the next step. Never mutates WorkflowState: in deterministic mode
    the Observer pops the plan head once the step reaches a final outcome.
    """

    def __init__(
        self,
        llm: LLM | None = None,
        resolver: NameResolver | None = None,
        *,
        timeout: float = 60.0,
    ) -> None:
        self._llm = llm
        self._resolver = resolver
        self._timeout = timeout

    async def next_step(self, state: WorkflowState, catalog: ToolCatalog | None = None) -> WorkflowStep | Done:
        if not state.dynamic:
            if not state.pending_plan:
                return Done()
            return state.pending_plan[0]

        if self._llm is None:
            raise ValueError("Dynamic planning requires an LLM.")
        if not catalog:
            raise PlanParseError("No tool servers are available to plan with.")

        prompt = build_planner_prompt(state, catalog)
        options = CompletionOptions(system=PLANNER_SYSTEM_PROMPT)
        try:
            reply = await asyncio.wait_for(self._llm.complete(prompt, options), self._timeout)
        except asyncio.TimeoutError as exc:
            raise PlanParseError(f"Planner call timed out after {self._timeout}s.") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise PlanParseError(f"Planner call failed: {exc}") from exc

        decision = parse_step_payload(reply, next_step_number(state), self._resolver, catalog)
        if isinstance(decision, WorkflowStep):
            logger.info("Planned step %d: %s.%s", decision.step_number, decision.canonical_name, decision.tool_name)
        return decision
