# run.py
# Entry point. Config and wiring only, no logic lives here.
#
#   mcp-workflow run "Find trending repos about MCP" --user alice --server github
#   mcp-workflow run --plan plan.json --user alice --credentials creds.json
#   mcp-workflow servers
#
# Credentials are read from a JSON file shaped {"<server>": {"<PARAM>": "..."}}
# and bound to --user. Swap --model for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

from mcp_workflow import display
from mcp_workflow.auth import AuthGate, InMemoryCredentialStore
from mcp_workflow.config import Settings
from mcp_workflow.engine import WorkflowEngine
from mcp_workflow.llm import OpenAICompletion
from mcp_workflow.models import AuthRecord, WorkflowPlan, WorkflowStatus
from mcp_workflow.pool import ConnectionPool
from mcp_workflow.registry import ToolServerRegistry, default_registry
from mcp_workflow.resolver import NameResolver


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcp-workflow", description="Run MCP tool workflows.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a goal or a precomputed plan")
    run.add_argument("goal", nargs="?", default=None, help="Natural-language task")
    run.add_argument("--user", default="local", help="User id the credentials belong to")
    run.add_argument("--server", action="append", default=[], help="Candidate tool server (repeatable)")
    run.add_argument("--plan", type=Path, help="JSON WorkflowPlan to execute step by step")
    run.add_argument("--credentials", type=Path, help="JSON credential file for --user")
    run.add_argument("--model", help="Planner model (overrides MCP_WORKFLOW_MODEL)")
    run.add_argument("--task-id", default=None, help="Task id (default: random)")

    sub.add_parser("servers", help="List the tool server catalog")
    return parser


def load_registry(settings: Settings) -> ToolServerRegistry:
    if settings.registry_path:
        return ToolServerRegistry.load(settings.registry_path)
    return default_registry()


def load_credentials(path: Path | None, user_id: str, resolver: NameResolver) -> InMemoryCredentialStore:
    store = InMemoryCredentialStore()
    if path is None:
        return store
    data = json.loads(path.read_text(encoding="utf-8"))
    for name, credentials in data.items():
        store.put(
            AuthRecord(
                user_id=user_id,
                canonical_name=resolver.resolve(name),
                credentials={key: str(value) for key, value in credentials.items()},
            )
        )
    return store


async def run_task(args: argparse.Namespace, settings: Settings) -> int:
    registry = load_registry(settings)
    store = load_credentials(args.credentials, args.user, NameResolver(registry))
    plan = WorkflowPlan.model_validate_json(args.plan.read_text(encoding="utf-8")) if args.plan else None
    llm = None if plan else OpenAICompletion(settings.model, api_key=settings.api_key, base_url=settings.base_url)

    display.banner(settings.model if llm else "(precomputed plan)", args.user, args.goal or (plan.goal if plan else ""))

    async with ConnectionPool.from_settings(registry, settings) as pool:
        engine = WorkflowEngine(registry, pool, AuthGate(registry, store), llm=llm, settings=settings)
        stream = engine.start_execution(
            args.task_id or uuid.uuid4().hex[:12],
            args.user,
            plan=plan,
            goal=args.goal,
            servers=args.server,
        )
        async for event in stream:
            display.render_event(event)
        result = await stream.result()

        display.final_result(result)
        display.pool_status(engine.get_pool_status())

    if result.status is WorkflowStatus.AUTH_REQUIRED:
        return 2
    return 0 if result.success else 1


def list_servers(settings: Settings) -> int:
    registry = load_registry(settings)
    for descriptor in registry:
        aliases = ", ".join(sorted(descriptor.aliases))
        auth = ", ".join(descriptor.auth_schema) or "-"
        display.console.print(
            f"[bold white]{descriptor.canonical_name}[/bold white] [dim]({descriptor.category})[/dim]"
            f"  aliases: {aliases or '-'}  auth: {auth}"
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    if getattr(args, "model", None):
        settings = settings.model_copy(update={"model": args.model})
    display.configure_logging(settings.log_level)

    if args.command == "servers":
        return list_servers(settings)
    if args.plan is None and not (args.goal and args.server):
        display.halt("Provide --plan, or a goal with at least one --server.")
        return 2
    try:
        return asyncio.run(run_task(args, settings))
    except KeyboardInterrupt:
        display.halt("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
