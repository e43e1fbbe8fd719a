# display.py
# All terminal output for the mcp-workflow CLI.
#
# This module owns presentation entirely. The engine never formats strings;
# the CLI hands each WorkflowEvent to render_event(). Swap this file to
# change the entire UI.
#
# Colour language:
#   cyan    : engine / routing events
#   blue    : tool calls
#   yellow  : auth and retries
#   green   : success
#   red     : failures and halts

import json
import logging
from typing import Any

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from mcp_workflow.models import PoolStatusEntry, SessionState, WorkflowEvent, WorkflowResult

console = Console()

_STATE_STYLE = {
    SessionState.CONNECTING: "yellow",
    SessionState.READY: "green",
    SessionState.DEGRADED: "red",
    SessionState.CLOSED: "dim",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: Any, max_len: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > max_len:
        return escape(text[:max_len]) + "…"
    return escape(text)


def configure_logging(level: str = "INFO") -> None:
    """Route library logging through rich, sharing the display console."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


def banner(model: str, user_id: str, goal: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]MCP Workflow Engine[/bold cyan]\n"
            "[dim]Plan, execute, observe over pooled MCP tool servers[/dim]\n\n"
            f"[dim]Planner model :[/dim] [white]{model}[/white]\n"
            f"[dim]User          :[/dim] [white]{user_id}[/white]\n"
            f"[dim]Goal          :[/dim] [white]{goal}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def _execution_start(data: dict[str, Any]) -> None:
    console.print()
    steps = data.get("total_steps")
    suffix = f", {steps} step(s)" if steps else ""
    console.print(Rule(f"[cyan]EXECUTION: {data.get('mode')} mode{suffix}[/cyan]", style="cyan"))
    console.print(f"  [dim]Servers:[/dim] [white]{', '.join(data.get('servers') or []) or '-'}[/white]")


def _step_start(data: dict[str, Any]) -> None:
    console.print()
    attempt = data.get("attempt", 1)
    retry = f" [yellow](attempt {attempt})[/yellow]" if attempt > 1 else ""
    console.print(
        f"[bold cyan]  STEP {data['step']}[/bold cyan]{retry}  "
        f"[bold blue]{data['canonical_name']}[/bold blue].[white]{data['tool_name']}[/white]"
        f"  [dim]{_mono(data.get('input', {}), 80)}[/dim]"
    )
    if data.get("reasoning"):
        console.print(f"  [magenta]Reason[/magenta]   [dim white]{_mono(data['reasoning'], 160)}[/dim white]")


def _step_complete(data: dict[str, Any]) -> None:
    console.print(f"  [bold green]✓ Result[/bold green]  [white]{_mono(data.get('summary', ''), 140)}[/white]")


def _step_error(data: dict[str, Any]) -> None:
    tag = "retryable" if data.get("retryable") else "fatal"
    console.print(
        f"  [bold red]✗ {data.get('error_kind')}[/bold red] [dim]({tag})[/dim]  "
        f"[white]{_mono(data.get('error', ''), 140)}[/white]"
    )


def _auth_required(data: dict[str, Any]) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold yellow", padding=(0, 1))
    table.add_column("Tool server", style="bold white")
    table.add_column("Parameter", style="yellow")
    table.add_column("Description", style="dim white")
    for missing in data.get("missing", []):
        for key, description in missing["auth_schema"].items():
            table.add_row(missing["canonical_name"], key, description)

    console.print()
    console.print(
        Panel(
            table,
            title=_label("AUTH REQUIRED", "yellow"),
            subtitle="[dim]No step was executed.[/dim]",
            border_style="yellow",
            padding=(0, 1),
        )
    )


def _workflow_complete(data: dict[str, Any]) -> None:
    console.print()
    console.print(Rule(f"[green]COMPLETED after {data.get('steps', 0)} attempt(s)[/green]", style="green"))


def _workflow_error(data: dict[str, Any]) -> None:
    console.print()
    console.print(Rule(f"[red]{str(data.get('status', 'failed')).upper()}[/red]", style="red"))


_RENDERERS = {
    "execution_start": _execution_start,
    "step_start": _step_start,
    "step_complete": _step_complete,
    "step_error": _step_error,
    "auth_required": _auth_required,
    "workflow_complete": _workflow_complete,
    "workflow_error": _workflow_error,
}


def render_event(event: WorkflowEvent) -> None:
    _RENDERERS[event.event](event.data)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


def pool_status(entries: list[PoolStatusEntry]) -> None:
    console.print()
    if not entries:
        console.print("[dim]  Pool is empty.[/dim]")
        return

    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Server", style="bold white")
    table.add_column("User", style="white")
    table.add_column("State", justify="center")
    table.add_column("Tools", justify="right")
    table.add_column("Refs", justify="right")
    table.add_column("Last used", style="dim white")

    for entry in entries:
        style = _STATE_STYLE[entry.state]
        table.add_row(
            entry.name,
            entry.user_id or "[dim]shared[/dim]",
            f"[{style}]{entry.state.value}[/{style}]",
            str(entry.tool_count),
            str(entry.ref_count),
            entry.last_used_at.strftime("%H:%M:%S"),
        )

    console.print(Panel(table, title="[dim]CONNECTION POOL[/dim]", border_style="dim", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: WorkflowResult) -> None:
    if not result.success:
        halt(result.error or result.status.value)
        return
    output = result.final_output
    body = output if isinstance(output, str) else json.dumps(output, indent=2, ensure_ascii=False, default=str)
    console.print()
    console.print(
        Panel(
            f"[white]{escape(body)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
