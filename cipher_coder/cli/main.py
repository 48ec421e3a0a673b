"""
CLI interface for Cipher Coder.

Provides command-line access to code generation and chat sessions.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from cipher_coder.config.loader import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    load_config,
    render_default_config,
    resolve_config_path,
)
from cipher_coder.core.errors import ConfigurationError
from cipher_coder.core.models import SourcePreference
from cipher_coder.sdk.service import CodeGenService
from cipher_coder.storage.repository import SessionRepository, initialize_schema

app = typer.Typer()
chat_app = typer.Typer(help="Manage chat sessions.")
app.add_typer(chat_app, name="chat")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to YAML config (defaults to ./{DEFAULT_CONFIG_PATH} if present)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Cipher Coder CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("Cipher Coder - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> AppConfig:
    config_path = ctx.obj.get("config_path") if ctx.obj else None
    return load_config(resolve_config_path(config_path))


def _load_service(ctx: typer.Context) -> CodeGenService:
    return CodeGenService.from_config(_load_config(ctx))


def _run(service: CodeGenService, coro):
    """Run a service coroutine, closing the transport afterwards."""
    async def runner():
        try:
            return await coro
        finally:
            await service.close()
    return asyncio.run(runner())


@app.command()
def init(
    path: str = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--path",
        "-p",
        help="Where to write the config file"
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing config file"
    )
):
    """Write a default config file and initialize the chat history database."""
    try:
        config_path = Path(path)
        if config_path.exists() and not force:
            console.print(f"[yellow]Config file already exists:[/] {path}")
        else:
            config_path.write_text(render_default_config(), encoding="utf-8")
            console.print(f"[green]✓[/] Config written to {path}")

        config = load_config(str(config_path))
        initialize_schema(config.chat.history_path)
        console.print("[green]✓[/] Chat history database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing Cipher Coder:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show configured inference sources and chat history."""
    try:
        config = _load_config(ctx)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Cipher Coder Status")
    table.add_column("Setting")
    table.add_column("Value")

    external = config.external_llm
    local = config.local_llm
    table.add_row("Remote endpoint", external.endpoint)
    table.add_row("Remote model", external.default_model)
    table.add_row("API key", "[green]configured[/]" if external.has_credentials else "[red]missing[/]")
    table.add_row("Local model path", local.model_path or "-")
    table.add_row("Local model found", "[green]yes[/]" if local.has_valid_model else "[red]no[/]")

    if local.has_valid_model:
        default_source = "local"
    elif external.has_credentials:
        default_source = "remote"
    else:
        default_source = "[red]unavailable[/]"
    table.add_row("Default source", default_source)

    if config.chat.save_history and Path(config.chat.history_path).exists():
        sessions = len(SessionRepository(config.chat.history_path).list_session_ids())
        table.add_row("Chat sessions", str(sessions))
    else:
        table.add_row("Chat sessions", "-")

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Description of the code to generate"),
    language: Optional[str] = typer.Option(
        None,
        "--language",
        "-l",
        help="Target language (detected from the prompt if omitted)"
    ),
    file: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        help="File whose contents are sent as context"
    ),
    source: SourcePreference = typer.Option(
        SourcePreference.AUTO,
        "--source",
        "-s",
        case_sensitive=False,
        help="Where to run the model"
    )
):
    """Generate code from a prompt."""
    try:
        service = _load_service(ctx)
        file_context = file.read_text(encoding="utf-8") if file else None
        result = _run(service, service.generate(
            prompt,
            language=language,
            file_context=file_context,
            file_path=str(file) if file else None,
            source=source,
        ))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.ok:
        console.print(f"[red]Generation failed:[/] {result.response.error}")
        sys.exit(EXIT_CODE_FAIL)

    _display_generation(result)
    sys.exit(EXIT_CODE_PASS)


def _display_generation(result):
    """Print generated code and any findings."""
    processed = result.processed
    if processed.is_code:
        console.print(Syntax(processed.code, processed.language or "text"))
    else:
        console.print(processed.code)

    for finding in processed.findings:
        console.print(f"[yellow]⚠[/] {finding.message}")

    response = result.response
    console.print(
        f"[dim]{response.source.value} · {response.model or 'unknown model'} · "
        f"{response.token_usage.total_tokens} tokens · {response.latency_ms:.0f} ms[/]"
    )


def _source_option():
    return typer.Option(
        SourcePreference.AUTO,
        "--source",
        "-s",
        case_sensitive=False,
        help="Where to run the model"
    )


@app.command()
def explain(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="File containing the code to explain"),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language of the code"),
    source: SourcePreference = _source_option()
):
    """Explain the code in a file."""
    try:
        service = _load_service(ctx)
        response = _run(service, service.explain_code(
            file.read_text(encoding="utf-8"), language=language, source=source
        ))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not response.ok:
        console.print(f"[red]Explanation failed:[/] {response.error}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(response.generated_text)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def improve(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="File containing the code to improve"),
    description: str = typer.Argument(..., help="How the code should be improved"),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language of the code"),
    source: SourcePreference = _source_option()
):
    """Rewrite the code in a file according to a description."""
    try:
        service = _load_service(ctx)
        result = _run(service, service.improve_code(
            file.read_text(encoding="utf-8"),
            description,
            language=language,
            file_path=str(file),
            source=source,
        ))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.ok:
        console.print(f"[red]Generation failed:[/] {result.response.error}")
        sys.exit(EXIT_CODE_FAIL)

    _display_generation(result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def complete(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="File containing the partial code"),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language of the code"),
    source: SourcePreference = _source_option()
):
    """Complete the partial code in a file."""
    try:
        service = _load_service(ctx)
        result = _run(service, service.complete_code(
            file.read_text(encoding="utf-8"),
            language=language,
            file_path=str(file),
            source=source,
        ))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.ok:
        console.print(f"[red]Generation failed:[/] {result.response.error}")
        sys.exit(EXIT_CODE_FAIL)

    _display_generation(result)
    sys.exit(EXIT_CODE_PASS)


@chat_app.command("new")
def chat_new(
    ctx: typer.Context,
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Session title"),
    system: Optional[str] = typer.Option(None, "--system", help="System message for the session")
):
    """Create a chat session and make it active."""
    try:
        service = _load_service(ctx)
        session_id = service.create_session(title, system)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Created session {session_id}")
    sys.exit(EXIT_CODE_PASS)


@chat_app.command("send")
def chat_send(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="Message to send"),
    session: Optional[str] = typer.Option(
        None,
        "--session",
        help="Session id (defaults to the active session)"
    ),
    source: SourcePreference = typer.Option(
        SourcePreference.AUTO,
        "--source",
        "-s",
        case_sensitive=False,
        help="Where to run the model"
    )
):
    """Send a message to a chat session and print the reply."""
    try:
        service = _load_service(ctx)
        session_id = session or service.store.active_session_id
        if session_id is None:
            session_id = service.create_session()
            console.print(f"[dim]Started new session {session_id}[/]")
        reply = _run(service, service.send_message(session_id, message, source))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(reply.content)
    sys.exit(EXIT_CODE_PASS)


@chat_app.command("list")
def chat_list(ctx: typer.Context):
    """List chat sessions, most recent first."""
    try:
        service = _load_service(ctx)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    sessions = service.store.list_sessions()
    if not sessions:
        console.print("[dim]No chat sessions yet. Use `cipher-coder chat new` to start one.[/]")
        sys.exit(EXIT_CODE_PASS)

    active_id = service.store.active_session_id
    table = Table(title="Chat Sessions")
    table.add_column("")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for session in sessions:
        table.add_row(
            "*" if session.id == active_id else "",
            session.id,
            session.title,
            str(len(session.messages)),
            session.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@chat_app.command("delete")
def chat_delete(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id to delete")
):
    """Delete a chat session."""
    try:
        service = _load_service(ctx)
        service.delete_session(session_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Deleted session {session_id}")
    sys.exit(EXIT_CODE_PASS)


@chat_app.command("clear")
def chat_clear(
    ctx: typer.Context,
    session_id: Optional[str] = typer.Argument(None, help="Session id (defaults to the active session)")
):
    """Clear a session's history, keeping its system message."""
    try:
        service = _load_service(ctx)
        target = session_id or service.store.active_session_id
        if target is None:
            console.print("[red]Error:[/] No active chat session")
            sys.exit(EXIT_CODE_FAIL)
        service.clear_history(target)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Cleared history for session {target}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
