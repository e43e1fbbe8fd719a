import asyncio

import pytest

from conftest import FAKE_TOOLS, FakeLLM
from mcp_workflow.errors import PlanParseError
from mcp_workflow.models import WorkflowState, WorkflowStep
from mcp_workflow.planner import (
    Done,
    Planner,
    ToolCatalog,
    build_planner_prompt,
    extract_json,
    parse_step_payload,
)
from mcp_workflow.resolver import NameResolver

STEP = {"canonical_name": "echo-mcp", "tool_name": "echo", "input": {"text": "hi"}}


def _catalog(registry, *names):
    catalog = ToolCatalog()
    for name in names:
        catalog.add(registry[name], FAKE_TOOLS)
    return catalog


# ---------------------------------------------------------------------------
# Parser resilience
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "reply",
    [
        '{"canonical_name": "echo-mcp", "tool_name": "echo", "input": {"text": "hi"}}',
        '```json\n{"canonical_name": "echo-mcp", "tool_name": "echo", "input": {"text": "hi"}}\n```',
        '[{"canonical_name": "echo-mcp", "tool_name": "echo", "input": {"text": "hi"}}]',
        '{"steps": [{"canonical_name": "echo-mcp", "tool_name": "echo", "input": {"text": "hi"}}]}',
        'Sure! Here is the next step:\n{"mcpName": "echo", "action": "echo", "input": {"text": "hi"}}\nLet me know.',
        '```\n[{"server": "Echo_MCP", "tool": "echo", "args": "{\\"text\\": \\"hi\\"}"}]\n```',
    ],
)
def test_equivalent_replies_parse_to_the_same_step(reply, registry):
    step = parse_step_payload(reply, 1, NameResolver(registry))
    assert step == WorkflowStep(step_number=1, **STEP)


def test_done_marker():
    decision = parse_step_payload('{"done": true, "final_answer": "42"}', 3)
    assert decision == Done(final_answer="42")
    assert parse_step_payload('{"isComplete": true, "finalAnswer": "ok"}', 1).final_answer == "ok"


@pytest.mark.parametrize(
    "reply",
    ["", "I cannot help with that.", "{'single': 'quotes'}", "[]", '"just a string"', '{"tool_name": "echo"}'],
)
def test_malformed_replies_raise_plan_parse_error(reply):
    with pytest.raises(PlanParseError):
        parse_step_payload(reply, 1)


def test_unknown_or_out_of_scope_server_is_a_parse_error(registry):
    resolver = NameResolver(registry)
    with pytest.raises(PlanParseError, match="not in the registry"):
        parse_step_payload('{"server": "gitlab", "tool": "x"}', 1, resolver)
    with pytest.raises(PlanParseError, match="not available"):
        parse_step_payload('{"server": "vault", "tool": "whoami"}', 1, resolver, _catalog(registry, "echo-mcp"))


def test_plain_string_input_is_wrapped():
    step = parse_step_payload('{"server": "echo-mcp", "tool": "echo", "input": "hello"}', 1)
    assert step.input == {"text": "hello"}


def test_extract_json_skips_leading_brace_noise():
    assert extract_json('use {curly} braces: {"a": 1}') == {"a": 1}


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

async def test_deterministic_mode_peeks_plan_head():
    step = WorkflowStep(step_number=1, **STEP)
    state = WorkflowState(task_id="t", user_id="u", pending_plan=[step])
    planner = Planner()

    assert await planner.next_step(state) == step
    assert state.pending_plan == [step]

    state.pending_plan.clear()
    assert isinstance(await planner.next_step(state), Done)


async def test_dynamic_mode_prompts_with_catalog_only(registry):
    llm = FakeLLM('{"canonical_name": "echo", "tool_name": "echo", "input": {"text": "hi"}}')
    planner = Planner(llm, NameResolver(registry))
    state = WorkflowState(task_id="t", user_id="u", goal="say hi", dynamic=True)

    step = await planner.next_step(state, _catalog(registry, "echo-mcp"))

    assert step.canonical_name == "echo-mcp"
    assert step.step_number == 1
    assert "say hi" in llm.prompts[0]
    assert "echo-mcp" in llm.prompts[0]
    assert "vault-mcp-server" not in llm.prompts[0]


async def test_llm_timeout_is_a_parse_error(registry):
    class SlowLLM:
        async def complete(self, prompt, options=None):
            await asyncio.sleep(1)
            return "{}"

    planner = Planner(SlowLLM(), NameResolver(registry), timeout=0.01)
    state = WorkflowState(task_id="t", user_id="u", dynamic=True)
    with pytest.raises(PlanParseError, match="timed out"):
        await planner.next_step(state, _catalog(registry, "echo-mcp"))


async def test_llm_transport_error_is_a_parse_error(registry):
    planner = Planner(FakeLLM(ConnectionError("reset")), NameResolver(registry))
    state = WorkflowState(task_id="t", user_id="u", dynamic=True)
    with pytest.raises(PlanParseError, match="reset"):
        await planner.next_step(state, _catalog(registry, "echo-mcp"))


def test_prompt_includes_history_and_iteration(registry):
    state = WorkflowState(task_id="t", user_id="u", goal="count", max_iterations=5, current_iteration=2)
    prompt = build_planner_prompt(state, _catalog(registry, "echo-mcp"))
    assert "3 of 5" in prompt
    assert "(nothing executed yet)" in prompt
    assert '"required": ["text"]' in prompt
