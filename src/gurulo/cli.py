"""Gurulo CLI: ask questions and let the assistant act on your project.

Usage:
    gurulo ask "why does App.tsx throw a TypeError?"   # One request
    gurulo ask --model large "explain the router"      # Force a tier
    gurulo chat                                        # Interactive session
    gurulo route "გამარჯობა"                           # Show routing only
    gurulo audit                                       # Recent executed actions
    gurulo config                                      # Show configuration
    gurulo config models.large=llama-3.3-70b-versatile # Set a value
"""

import asyncio
import getpass
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from gurulo import __version__
from gurulo.audit_log import AuditLog
from gurulo.config import GURULO_CONFIG, GURULO_DB, GuruloConfig, ensure_gurulo_home
from gurulo.model_client import ConversationTurn
from gurulo.orchestrator import Orchestrator, ProcessResult
from gurulo.query_router import QueryRouter
from gurulo.safety_gate import ActionConfirmation, ConfirmationDecision
from gurulo.tool_calls import describe_action

console = Console()

SEVERITY_STYLES = {"low": "green", "medium": "yellow", "high": "red", "critical": "bold red"}


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "cli"


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


class RichConfirmationProvider:
    """Asks the person at the terminal to approve each action."""

    def __init__(self, out: Console | None = None):
        self.console = out or console

    async def request_confirmation(self, confirmation: ActionConfirmation) -> ConfirmationDecision:
        style = SEVERITY_STYLES.get(confirmation.severity.value, "white")
        params = json.dumps(confirmation.tool_call.parameters, ensure_ascii=False, indent=2)
        self.console.print(Panel(
            f"[bold]{describe_action(confirmation.action)}[/]\n"
            f"Severity: [{style}]{confirmation.severity.value}[/]\n\n{params[:1500]}",
            title=f"Confirm {confirmation.tool_call.tool_name}",
            border_style=style,
        ))
        approved = await asyncio.to_thread(
            Confirm.ask, "Run this action?", default=False, console=self.console
        )
        return ConfirmationDecision(confirmed=bool(approved), confirmed_by=_current_user())


@click.group()
@click.version_option(__version__, prog_name="gurulo")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option(
    "--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
    default=None, help="Config file (default ~/.gurulo/config.json)",
)
@click.pass_context
def cli(ctx, verbose, config_path):
    """Gurulo: a developer assistant that routes, answers and acts with confirmation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path or GURULO_CONFIG
    ctx.obj["db_path"] = (config_path.parent / "gurulo.db") if config_path else GURULO_DB


def _load_config(ctx) -> GuruloConfig:
    return GuruloConfig.load(ctx.obj["config_path"])


def _build_orchestrator(ctx) -> Orchestrator:
    config = _load_config(ctx)
    if config.executor.persist_audit and ctx.obj["db_path"] == GURULO_DB:
        ensure_gurulo_home()
    return Orchestrator.from_config(
        config, confirmation_provider=RichConfirmationProvider(), db_path=ctx.obj["db_path"]
    )


def _print_result(result: ProcessResult, as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps(result.to_dict(), ensure_ascii=False))
        return
    footer = f"{result.policy} · {result.model}"
    if result.model_label:
        footer += f" · {result.model_label}"
    if result.tool_executed:
        status = "ok" if result.tool_executed.success else "not performed"
        footer += f" · {result.tool_executed.tool}: {status}"
    console.print(Panel(
        result.response,
        title="Gurulo",
        subtitle=f"[dim]{footer} · {result.duration_ms}ms[/]",
        border_style="blue" if result.success else "red",
    ))


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--model", "model_override", type=click.Choice(["small", "large"]), default=None,
              help="Force a model tier")
@click.option("--user", "user_id", default=None, help="User id recorded in the audit log")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result")
@click.pass_context
def ask(ctx, message, model_override, user_id, as_json):
    """Send one message through the pipeline."""
    orchestrator = _build_orchestrator(ctx)

    async def _ask():
        try:
            return await orchestrator.process_message(
                " ".join(message), [], user_id or _current_user(), model_override=model_override
            )
        finally:
            await orchestrator.aclose()

    result = _run_async(_ask())
    _print_result(result, as_json)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--user", "user_id", default=None, help="User id recorded in the audit log")
@click.pass_context
def chat(ctx, user_id):
    """Interactive session; history carries across turns. Empty line exits."""
    orchestrator = _build_orchestrator(ctx)
    user = user_id or _current_user()

    async def _chat():
        await orchestrator.start()
        history: list[ConversationTurn] = []
        try:
            while True:
                text = await asyncio.to_thread(Prompt.ask, "[bold green]you[/]", default="", console=console)
                if not text.strip() or text.strip() in ("exit", "quit"):
                    break
                result = await orchestrator.process_message(text, history, user)
                _print_result(result, as_json=False)
                history = [
                    *history,
                    ConversationTurn(role="user", content=text),
                    ConversationTurn(role="assistant", content=result.response),
                ]
        finally:
            await orchestrator.aclose()

    _run_async(_chat())


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--model", "model_override", type=click.Choice(["small", "large"]), default=None)
@click.pass_context
def route(ctx, message, model_override):
    """Show how a message would be routed (no model call)."""
    config = _load_config(ctx)
    decision = QueryRouter(config.router).route(" ".join(message), model_override)
    table = Table(show_header=False, box=None)
    table.add_row("Policy", f"[bold]{decision.policy.value}[/]")
    table.add_row("Model tier", decision.model_tier.value)
    table.add_row("Overridden", "yes" if decision.overridden else "no")
    table.add_row("Reason", decision.reason)
    console.print(Panel(table, title="Routing", border_style="blue"))


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Entries to show")
@click.pass_context
def audit(ctx, limit):
    """List recently executed actions."""
    db_path = ctx.obj["db_path"]
    if not Path(db_path).exists():
        console.print("[dim]No actions recorded yet[/]")
        return
    config = _load_config(ctx)
    entries = AuditLog(capacity=config.executor.audit_capacity, db_path=db_path).recent(limit)
    if not entries:
        console.print("[dim]No actions recorded yet[/]")
        return

    table = Table(title="Audit Log")
    table.add_column("Request", style="dim")
    table.add_column("Tool")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Detail")
    for entry in entries:
        status = "[green]ok[/]" if entry.success else "[red]failed[/]"
        detail = (entry.result if entry.success else entry.error) or ""
        table.add_row(
            entry.request_id,
            entry.tool_name,
            status,
            f"{entry.duration_ms}ms",
            detail.splitlines()[0][:60] if detail else "",
        )
    console.print(table)


@cli.command()
@click.argument("key_value", nargs=-1)
@click.pass_context
def config(ctx, key_value):
    """View or set configuration.

    Examples:
        gurulo config                          # show all
        gurulo config context.token_budget=2000
        gurulo config safety.confirmation_timeout=120
    """
    cfg = _load_config(ctx)
    if not key_value:
        data = asdict(cfg)
        data["models"]["api_key"] = "(set)" if cfg.models.api_key else "(missing)"
        console.print_json(json.dumps(data, ensure_ascii=False))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: gurulo config key=value[/]")
        return
    key, value = (part.strip() for part in kv.split("=", 1))
    if key == "models.api_key":
        console.print("[red]Set the API key with the GROQ_API_KEY environment variable[/]")
        sys.exit(1)
    try:
        cfg.set_value(key, value)
    except KeyError:
        console.print(f"[red]Unknown config key: {key}[/]")
        sys.exit(1)
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/]")
        sys.exit(1)
    cfg.save(ctx.obj["config_path"])
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
