"""Command line entry point for gmn-agent."""

import asyncio
import contextlib
import json
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt

from gmn_agent import __version__
from gmn_agent.auth import APIKeyCredentials
from gmn_agent.chat import AskUserQuestion, ChatEngine, ChatEvent, EventQueue
from gmn_agent.config import Config, get_config, set_config
from gmn_agent.exceptions import ConversationBusyError, GmnAgentError
from gmn_agent.llm import GenerationTransport
from gmn_agent.logging import configure_logging, get_logger, set_log_sink
from gmn_agent.mcp import MCPManager
from gmn_agent.session import SessionStore
from gmn_agent.tools import create_builtin_registry
from gmn_agent.tools.router import ToolRouter

log = get_logger(__name__)

app = typer.Typer(help="gmn-agent - a console agent for Gemini with MCP tools")
console = Console()

HELP_TEXT = "Commands: /plan (toggle plan mode), /model <name>, /clear (new session), /exit"
_RESULT_PREVIEW_CHARS = 400


def _ask_questions(questions: list[AskUserQuestion]) -> str:
    """Prompt for each question on the terminal and join the answers."""
    answers: list[str] = []
    for question in questions:
        label = f"[bold]{escape(question.header)}[/bold] " if question.header else ""
        console.print(f"[yellow]?[/yellow] {label}{escape(question.question)}")
        if question.type == "choice" and question.options:
            for index, option in enumerate(question.options, start=1):
                detail = f" - {escape(option.description)}" if option.description else ""
                console.print(f"  {index}. {escape(option.label)}{detail}")
            raw = Prompt.ask("  choice", console=console)
            if raw.isdigit() and 1 <= int(raw) <= len(question.options):
                raw = question.options[int(raw) - 1].label
        elif question.type == "yesno":
            raw = Prompt.ask("  answer", choices=["yes", "no"], console=console)
        else:
            raw = Prompt.ask("  answer", console=console)
        answers.append(f"{question.question}\n{raw}" if len(questions) > 1 else raw)
    return "\n\n".join(answers)


def _render_event(event: ChatEvent) -> None:
    if event.type == "content":
        console.print(escape(event.text), end="", soft_wrap=True)
    elif event.type == "thought":
        console.print(f"[dim italic]{escape(event.text)}[/dim italic]", end="", soft_wrap=True)
    elif event.type == "tool_call":
        console.print(f"\n[cyan]> {escape(event.tool_name)}[/cyan] [dim]{escape(event.tool_args)}[/dim]")
    elif event.type == "tool_result":
        preview = event.text
        if len(preview) > _RESULT_PREVIEW_CHARS:
            preview = preview[:_RESULT_PREVIEW_CHARS] + "..."
        console.print(f"[dim]{escape(preview)}[/dim]")
    elif event.type == "error":
        console.print(f"\n[red]Error:[/red] {escape(event.text)}")
    elif event.type == "done":
        console.print()
        if event.usage:
            console.print(
                f"[dim]tokens: {event.usage.get('prompt_tokens', 0)} in / "
                f"{event.usage.get('completion_tokens', 0)} out[/dim]"
            )


async def _run_prompt(engine: ChatEngine, queue: EventQueue, text: str) -> None:
    queue.drain()
    task = engine.send_message(text)

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, engine.stop_generation)
    try:
        async for event in queue:
            _render_event(event)
            if event.type == "ask_user":
                answer = await asyncio.to_thread(_ask_questions, event.questions)
                engine.submit_ask_user_response(answer)
        with contextlib.suppress(asyncio.CancelledError):
            await task
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)


async def run_chat(cfg: Config, work_dir: Path, session_id: str = "") -> None:
    """Interactive chat loop."""
    credentials = APIKeyCredentials(cfg.api.api_key) if cfg.api.api_key else None
    if credentials is None:
        console.print("[yellow]No API key configured (api.api_key / GMN_API__API_KEY).[/yellow]")

    transport = GenerationTransport(
        base_url=cfg.api.base_url,
        api_version=cfg.api.api_version,
        credentials=credentials,
        timeout=cfg.api.timeout,
    )
    manager = MCPManager.from_config(cfg)
    failures = await manager.connect_all()
    for name, error in failures.items():
        console.print(f"[red]MCP server {escape(name)} failed:[/red] {escape(error)}")
    for status in manager.list_servers():
        if status.connected:
            console.print(f"[green]MCP server {escape(status.name)}[/green] [dim]({status.tool_count} tools)[/dim]")

    queue = EventQueue()
    engine = ChatEngine(
        transport,
        ToolRouter(create_builtin_registry(), manager),
        config=cfg,
        on_event=queue,
        work_dir=work_dir,
    )
    store = SessionStore(cfg.session.path)

    try:
        if session_id:
            record = await store.restore_into(engine, session_id)
            console.print(f"[dim]Resumed session {escape(record.title)}[/dim]")
        else:
            session_id = await store.new_session(engine)

        console.print(f"[bold]gmn-agent[/bold] v{__version__}  model: {engine.get_model()}  dir: {work_dir}")
        console.print(f"[dim]{HELP_TEXT}[/dim]")

        while True:
            try:
                text = (await asyncio.to_thread(console.input, "[bold green]> [/bold green]")).strip()
            except EOFError:
                break
            if not text:
                continue

            if text in ("/exit", "/quit"):
                break
            if text == "/help":
                console.print(HELP_TEXT)
                continue
            if text == "/plan":
                engine.set_plan_mode(not engine.get_plan_mode())
                state = "on" if engine.get_plan_mode() else "off"
                console.print(f"[dim]Plan mode {state}[/dim]")
                continue
            if text == "/clear":
                session_id = await store.new_session(engine)
                console.print("[dim]Started a new session[/dim]")
                continue
            if text.startswith("/model"):
                name = text[len("/model"):].strip()
                if name:
                    engine.set_model(name)
                console.print(f"[dim]Model: {engine.get_model()}[/dim]")
                continue

            try:
                await _run_prompt(engine, queue, text)
            except ConversationBusyError as e:
                console.print(f"[red]{escape(str(e))}[/red]")
                continue
            except GmnAgentError as e:
                console.print(f"[red]Error:[/red] {escape(str(e))}")
                continue
            await store.save(session_id, engine.snapshot())
    finally:
        await store.close()
        await manager.disconnect_all()
        await transport.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    work_dir: str = typer.Option("", "-d", "--dir", help="Working directory (default: current)"),
    session: str = typer.Option("", "-s", "--session", help="Resume a saved session by id"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat session."""
    cfg = Config.from_yaml(config) if config else get_config()
    if model:
        cfg.model.default = model
    set_config(cfg)

    set_log_sink(lambda line: console.print(f"[dim]{escape(line)}[/dim]"))
    configure_logging("DEBUG" if verbose else None)

    target = Path(work_dir or Path.cwd()).expanduser().resolve()
    if not target.is_dir():
        console.print(f"[red]Not a directory:[/red] {target}")
        raise typer.Exit(code=1)

    try:
        asyncio.run(run_chat(cfg, target, session))
    except KeyboardInterrupt:
        log.info("Shutting down")


@app.command()
def servers(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Connect to every configured MCP server and list its tools."""
    cfg = Config.from_yaml(config) if config else get_config()
    configure_logging()

    async def _probe() -> None:
        manager = MCPManager.from_config(cfg)
        try:
            await manager.connect_all()
            for status in manager.list_servers():
                if status.connected:
                    console.print(f"[green]{escape(status.name)}[/green] {json.dumps(status.tools)}")
                else:
                    console.print(f"[red]{escape(status.name)}[/red] {escape(status.error)}")
        finally:
            await manager.disconnect_all()

    asyncio.run(_probe())


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"gmn-agent v{__version__}")


if __name__ == "__main__":
    app()
