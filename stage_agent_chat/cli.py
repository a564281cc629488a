"""Command line interface for chatting with the stage agent and inspecting conversations."""

import asyncio
import json
import logging
import re
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.table import Table

from .backend import RemoteChatBackend
from .config import Config
from .middleware import (
    ConversationSession,
    TurnOutcome,
    TurnResult,
    create_conversation_session,
)
from .models import ConversationClientState
from .recovery import RecoveryManager
from .storage import DuckDBStorage

# Logging will be configured by the CLI callback (setup_cli_logging)
logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Stage Agent Chat CLI - Streaming planning assistant with conversation recovery",
    rich_markup_mode="rich",
)
console = Console()


def sanitize_input(text: str) -> str:
    """Remove ANSI escape sequences and control characters from typed input."""
    if not text:
        return text

    ansi_pattern = re.compile(
        r"\x1b\[[0-9;]*[a-zA-Z]|\x1b\][^\x07]*\x07|\x1b[PX^_][^\x1b]*\x1b\\"
    )
    sanitized = ansi_pattern.sub("", text)

    # Keep: \n (10), \r (13), \t (9)
    return "".join(char for char in sanitized if ord(char) >= 32 or char in "\n\r\t")


class StreamRenderer:
    """Prints cumulative content snapshots as they arrive.

    Content is cumulative, so only the unseen suffix is printed. When a
    snapshot does not extend what was printed (a retry restarted the
    response), the whole snapshot is printed again on a fresh line.
    """

    def __init__(self, output: Console):
        self.output = output
        self.printed = ""

    def reset(self) -> None:
        self.printed = ""

    def __call__(self, state: ConversationClientState) -> None:
        content = state.content
        if not content or content == self.printed:
            return
        if content.startswith(self.printed):
            self.output.print(rich_escape(content[len(self.printed):]), end="", style="white")
        else:
            self.output.print()
            self.output.print("[dim]↻ response restarted[/dim]")
            self.output.print(rich_escape(content), end="", style="white")
        self.printed = content


@app.callback()
def setup_cli_logging(
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging for all commands",
    ),
):
    """Setup logging for all CLI commands."""
    config = Config.from_env()
    config.setup_cli_logging()
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


def load_stage_data(path: Optional[str]) -> Dict[str, Any]:
    """Read stage data from a JSON file; empty when no path is given."""
    if not path:
        return {}
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise typer.BadParameter("Stage data file must contain a JSON object")
    return data


@asynccontextmanager
async def open_store(config: Config, local: bool, db_path: Optional[str]):
    """Yield the history store selected by the command line flags."""
    if local or db_path:
        storage = DuckDBStorage(db_path or config.db_path)
        try:
            yield storage
        finally:
            storage.close()
    else:
        async with RemoteChatBackend(config) as backend:
            yield backend


def print_turn_result(result: TurnResult, state: ConversationClientState) -> None:
    if result.outcome == TurnOutcome.CANCELLED:
        console.print("\n[yellow]⏹️  Request cancelled[/yellow]")
        return
    if result.outcome == TurnOutcome.FAILED:
        console.print(f"\n[red]❌ {rich_escape(result.error or 'Request failed')}[/red]")
        if result.attempts > 1:
            console.print(f"[dim]   after {result.attempts} attempts[/dim]")
        console.print("[dim]   Type /retry to send the message again[/dim]")
        return
    if result.outcome == TurnOutcome.RECOVERY_FAILED:
        console.print(f"[red]❌ Recovery failed: {rich_escape(result.error or 'unknown error')}[/red]")
        return

    console.print()
    if state.suggestions:
        console.print("[bold cyan]💡 Suggestions:[/bold cyan]")
        for suggestion in state.suggestions:
            console.print(f"   • {rich_escape(suggestion)}")
    if result.attempts > 1:
        console.print(f"[dim]✅ Completed after {result.attempts} attempts[/dim]")


@app.command()
def chat(
    stage_id: str = typer.Argument(help="Wizard stage to chat about"),
    conversation_id: Optional[str] = typer.Option(
        None, "--conversation-id", "-c", help="Resume an existing conversation"
    ),
    stage_data: Optional[str] = typer.Option(
        None, "--stage-data", help="JSON file with the current stage's data"
    ),
    all_stage_data: Optional[str] = typer.Option(
        None, "--all-stage-data", help="JSON file with the data of every stage"
    ),
):
    """Start an interactive, streamed chat with the stage agent."""
    asyncio.run(_chat_session(stage_id, conversation_id, stage_data, all_stage_data))


async def _chat_session(
    stage_id: str,
    conversation_id: Optional[str],
    stage_data_path: Optional[str],
    all_stage_data_path: Optional[str],
):
    """Run the interactive chat loop."""
    config = Config.from_env()

    try:
        current_stage_data = load_stage_data(stage_data_path)
        all_stage_data = load_stage_data(all_stage_data_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]❌ Could not read stage data: {e}[/red]")
        sys.exit(1)

    try:
        backend = RemoteChatBackend(config)
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    console.print("[bold green]🚀 Stage Agent Chat[/bold green]")
    console.print(f"🧭 Stage: {stage_id}")
    console.print(f"🔗 Backend: {config.backend_url}")
    console.print(f"🔁 Max attempts: {config.max_attempts}")
    if not config.credential:
        console.print("[yellow]⚠️  No ACCESS_TOKEN set, requests will ask you to sign in[/yellow]")

    renderer = StreamRenderer(console)

    def on_auto_fill(data: Dict[str, Any]) -> None:
        console.print()
        console.print(
            Panel(
                rich_escape(json.dumps(data, indent=2)),
                title="📝 Auto-fill data",
                border_style="cyan",
            )
        )

    def on_stage_complete() -> None:
        console.print("\n[bold green]🎉 Stage complete![/bold green]")

    session = create_conversation_session(
        stage_id,
        config=config,
        backend=backend,
        current_stage_data=current_stage_data,
        all_stage_data=all_stage_data,
        on_auto_fill=on_auto_fill,
        on_stage_complete=on_stage_complete,
    )
    session.subscribe(renderer)

    try:
        if conversation_id:
            console.print(f"[dim]Resuming conversation {conversation_id}...[/dim]")
            console.print("[bold green]🤖 Assistant:[/bold green]")
            result = await session.resume(conversation_id)
            if result.outcome == TurnOutcome.RESTORED and not session.state.content:
                console.print("[dim](nothing stored yet)[/dim]")
            print_turn_result(result, session.state)

        console.print("[dim]Commands: /retry, /status, /quit[/dim]")

        while True:
            try:
                user_input = sanitize_input(console.input("\n[bold blue]👤 You[/bold blue]: ").strip())
            except (KeyboardInterrupt, EOFError):
                console.print()
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                command = user_input.lower()
                if command in ("/quit", "/exit"):
                    break
                if command == "/status":
                    show_session_status(session)
                    continue
                if command != "/retry":
                    console.print(f"[yellow]Unknown command: {rich_escape(user_input)}[/yellow]")
                    continue

            renderer.reset()
            console.print("[bold green]🤖 Assistant:[/bold green]")
            try:
                if user_input.lower() == "/retry":
                    result = await session.retry()
                    if result is None:
                        console.print("[yellow]Nothing to retry yet[/yellow]")
                        continue
                else:
                    result = await session.send_message(user_input)
            except KeyboardInterrupt:
                session.cancel("interrupted by user")
                console.print("\n[yellow]⏹️  Interrupted[/yellow]")
                continue

            print_turn_result(result, session.state)

    finally:
        session.close()
        await backend.aclose()
        console.print("[yellow]👋 Goodbye![/yellow]")
        if session.state.conversation_id:
            console.print(f"[dim]Conversation: {session.state.conversation_id}[/dim]")


def show_session_status(session: ConversationSession) -> None:
    state = session.state
    table = Table(title="📊 Session", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Conversation", state.conversation_id or "<none>")
    table.add_row("Phase", state.phase.value)
    table.add_row("Complete", "Yes" if state.is_complete else "No")
    table.add_row("Messages", str(len(state.history_messages)))
    table.add_row("Error", state.error or "")
    console.print(table)


@app.command()
def recover(
    conversation_id: str = typer.Argument(help="Conversation ID to recover"),
    local: bool = typer.Option(False, "--local", help="Use the local DuckDB store"),
    db_path: Optional[str] = typer.Option(
        None, "--db-path", "-d", help="Database path (implies --local)"
    ),
):
    """Reconstruct the latest known response of a conversation."""
    asyncio.run(_recover(conversation_id, local, db_path))


async def _recover(conversation_id: str, local: bool, db_path: Optional[str]):
    config = Config.from_env()
    try:
        async with open_store(config, local, db_path) as store:
            result = await RecoveryManager.from_config(config, store).recover_conversation(
                conversation_id
            )
    except Exception as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    if not result.success:
        console.print(f"[red]❌ Recovery failed: {rich_escape(result.error or '')}[/red]")
        sys.exit(1)

    title = "✅ Complete response" if result.is_complete else "⏳ Partial response"
    console.print(
        Panel(
            rich_escape(result.content or "") or "[dim](no content stored)[/dim]",
            title=title,
            border_style="green" if result.is_complete else "yellow",
        )
    )
    if result.suggestions:
        console.print("[bold cyan]💡 Suggestions:[/bold cyan]")
        for suggestion in result.suggestions:
            console.print(f"   • {rich_escape(suggestion)}")
    if result.auto_fill_data:
        console.print(f"[cyan]📝 Auto-fill:[/cyan] {rich_escape(json.dumps(result.auto_fill_data))}")
    if result.stage_complete:
        console.print("[bold green]🎉 Stage marked complete[/bold green]")


@app.command()
def status(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    local: bool = typer.Option(False, "--local", help="Use the local DuckDB store"),
    db_path: Optional[str] = typer.Option(
        None, "--db-path", "-d", help="Database path (implies --local)"
    ),
):
    """Show what the history store holds for a conversation."""
    asyncio.run(_status(conversation_id, local, db_path))


async def _status(conversation_id: str, local: bool, db_path: Optional[str]):
    config = Config.from_env()
    try:
        async with open_store(config, local, db_path) as store:
            manager = RecoveryManager.from_config(config, store)
            recovery_status = await manager.get_recovery_status(conversation_id)
            needs_recovery = await manager.needs_recovery(conversation_id)
    except Exception as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    if not recovery_status.conversation_exists:
        console.print(f"[yellow]📭 Conversation {conversation_id} not found[/yellow]")
        return

    table = Table(title=f"📊 Conversation {conversation_id[:8]}...", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Status", recovery_status.conversation_status.value)
    table.add_row("Tokens", str(recovery_status.token_count))
    table.add_row("Last token index", str(recovery_status.last_token_index))
    table.add_row("Complete response", "Yes" if recovery_status.is_complete else "No")
    table.add_row("Needs recovery", "Yes" if needs_recovery else "No")
    console.print(table)


@app.command()
def validate(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    local: bool = typer.Option(False, "--local", help="Use the local DuckDB store"),
    db_path: Optional[str] = typer.Option(
        None, "--db-path", "-d", help="Database path (implies --local)"
    ),
):
    """Check a conversation's stored tokens for gaps and missing data."""
    asyncio.run(_validate(conversation_id, local, db_path))


async def _validate(conversation_id: str, local: bool, db_path: Optional[str]):
    config = Config.from_env()
    try:
        async with open_store(config, local, db_path) as store:
            report = await RecoveryManager.from_config(
                config, store
            ).validate_conversation_integrity(conversation_id)
    except Exception as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    if report.is_valid:
        console.print("[green]✅ No integrity issues found[/green]")
    else:
        console.print("[yellow]⚠️  Integrity issues:[/yellow]")
        for issue in report.issues:
            console.print(f"   • {rich_escape(issue)}")
    console.print(f"🔧 Can recover: {'Yes' if report.can_recover else 'No'}")


@app.command()
def tokens(
    conversation_id: str = typer.Argument(help="Conversation ID"),
    after: int = typer.Option(-1, "--after", "-a", help="Only tokens after this index"),
    local: bool = typer.Option(False, "--local", help="Use the local DuckDB store"),
    db_path: Optional[str] = typer.Option(
        None, "--db-path", "-d", help="Database path (implies --local)"
    ),
):
    """List stored response tokens of a conversation."""
    asyncio.run(_tokens(conversation_id, after, local, db_path))


async def _tokens(conversation_id: str, after: int, local: bool, db_path: Optional[str]):
    config = Config.from_env()
    try:
        async with open_store(config, local, db_path) as store:
            incremental = await RecoveryManager.from_config(
                config, store
            ).get_incremental_tokens(conversation_id, after)
    except Exception as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    if not incremental.has_new_tokens:
        console.print(f"[yellow]📭 No tokens after index {after}[/yellow]")
        return

    table = Table(title=f"🧩 Tokens after {after}", show_header=True)
    table.add_column("Index", style="cyan", justify="right")
    table.add_column("Type", style="magenta")
    table.add_column("Content", style="white")
    table.add_column("Created", style="blue")
    for token in incremental.tokens:
        content = token.token_content
        preview = content[:80] + "..." if len(content) > 80 else content
        table.add_row(
            str(token.token_index),
            token.token_type.value,
            rich_escape(preview.replace("\n", " ")),
            token.created_at.isoformat()[:16] if token.created_at else "Unknown",
        )
    console.print(table)


@app.command()
def cleanup(
    days: Optional[int] = typer.Option(
        None, "--days", help="Remove finished conversations older than this many days"
    ),
    local: bool = typer.Option(False, "--local", help="Use the local DuckDB store"),
    db_path: Optional[str] = typer.Option(
        None, "--db-path", "-d", help="Database path (implies --local)"
    ),
):
    """Delete completed and failed conversations older than the cutoff."""
    asyncio.run(_cleanup(days, local, db_path))


async def _cleanup(days: Optional[int], local: bool, db_path: Optional[str]):
    config = Config.from_env()
    days_old = days if days is not None else config.cleanup_days
    try:
        async with open_store(config, local, db_path) as store:
            removed = await RecoveryManager.from_config(
                config, store
            ).cleanup_failed_conversations(days_old)
    except Exception as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)

    console.print(
        f"[green]🧹 Removed {removed} conversation(s) older than {days_old} days[/green]"
    )


@app.command()
def list_conversations(
    stage: Optional[str] = typer.Option(None, "--stage", "-s", help="Only this stage"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum rows"),
    db_path: Optional[str] = typer.Option(
        None, "--db-path", "-d", help="Database path"
    ),
):
    """List conversations in the local database."""
    asyncio.run(_list_conversations(stage, limit, db_path))


async def _list_conversations(
    stage: Optional[str], limit: Optional[int], db_path: Optional[str]
):
    """List conversations implementation."""
    config = Config.from_env()
    if db_path:
        config.db_path = db_path

    try:
        storage = DuckDBStorage(config.db_path)
        try:
            conversations = await storage.list_conversations(stage_id=stage, limit=limit)
        finally:
            storage.close()
    except Exception as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        return

    if not conversations:
        console.print("[yellow]📭 No conversations found.[/yellow]")
        return

    table = Table(title="📋 Conversations", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Stage", style="white")
    table.add_column("Created", style="blue")
    table.add_column("Last Updated", style="green")
    table.add_column("Status", style="magenta")

    for conv in conversations:
        table.add_row(
            conv.id[:8] + "...",
            conv.stage_id,
            conv.created_at.isoformat()[:16] if conv.created_at else "Unknown",
            conv.updated_at.isoformat()[:16] if conv.updated_at else "Unknown",
            conv.status.value,
        )

    console.print(table)


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(f"[bold green]Stage Agent Chat v{__version__}[/bold green]")


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
