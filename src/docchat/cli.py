# /docchat/cli.py
"""
Interactive terminal chat against one indexed document.

Runs the same pipeline as the API in-process: the conversation is kept here,
on the caller side, and sent in full with every question.
"""
import asyncio
import sys
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table, box

from .clients import build_clients
from .config import API_MODEL_NAME, LOCAL_MODEL_NAME, RETRIEVER_K, USE_API_LLM, console
from .errors import PipelineError
from .multiplexer import SourceManifestEntry
from .observability import get_logger
from .pipeline import PipelineOrchestrator

logger = get_logger(__name__)


def display_welcome_banner(chat_id: str):
    """Displays the application's welcome banner."""
    model_name = API_MODEL_NAME if USE_API_LLM else LOCAL_MODEL_NAME
    console.print(Panel(
        "[bold magenta]DocChat - Document Q&A[/bold magenta]",
        subtitle=f"[cyan]document={chat_id} model={model_name} k={RETRIEVER_K}[/cyan]",
        expand=False
    ))


def format_sources(entries: tuple[SourceManifestEntry, ...]) -> Table | str:
    """Renders the source manifest in retrieval order."""
    if not entries:
        return "No sources found."
    table = Table(title="Sources", box=box.SIMPLE, show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Excerpt")
    table.add_column("Source", style="cyan")
    table.add_column("Page", justify="right")
    for idx, entry in enumerate(entries, start=1):
        source = entry.metadata.get("source")
        page = entry.metadata.get("page", entry.metadata.get("loc.pageNumber"))
        table.add_row(
            str(idx),
            entry.excerpt,
            Path(str(source)).name if source else "-",
            "-" if page is None else str(page),
        )
    return table


async def ask(orchestrator: PipelineOrchestrator, messages: list[dict], chat_id: str) -> str | None:
    """Runs one question; returns the answer text, or None when the request failed."""
    try:
        with console.status("[bold cyan]Searching the document...[/bold cyan]", spinner="dots"):
            result = await orchestrator.run(messages, chat_id)
    except PipelineError as exc:
        console.print(f"[bold red]{exc.kind}:[/bold red] {exc.message}")
        return None

    pieces: list[str] = []
    cut_off = None
    try:
        async for fragment in result.stream:
            pieces.append(fragment)
            console.print(fragment, end="", markup=False, highlight=False, soft_wrap=True)
    except PipelineError as exc:
        cut_off = exc
    console.print()
    if cut_off is not None:
        console.print(f"[bold yellow]The answer was cut off: {cut_off.message}[/bold yellow]")
    console.print(Markdown("---"))
    console.print(format_sources(result.source_manifest))
    # A cut-off answer is not kept in the conversation.
    return None if cut_off is not None else "".join(pieces)


async def run_session(chat_id: str):
    clients = build_clients()
    if not clients.ready:
        console.print("[bold red]Chat pipeline is not ready. Check the LLM configuration.[/bold red]")
        return
    orchestrator = PipelineOrchestrator(clients)
    messages: list[dict] = []
    logger.info("cli_session_started", chat_id=chat_id)
    console.print("\n[bold green]Q&A Session Started.[/bold green] [italic]Type 'exit' to quit.[/italic]")
    while True:
        query = await asyncio.to_thread(Prompt.ask, "[bold cyan]Ask a question[/bold cyan]")
        if query.strip().lower() in {"exit", "quit"}:
            break
        if not query.strip():
            continue
        turn = {"role": "user", "content": query.strip()}
        answer = await ask(orchestrator, messages + [turn], chat_id)
        if answer is None:
            continue
        messages.extend([turn, {"role": "assistant", "content": answer}])


def main():
    """Entry point: docchat <chat-id>"""
    chat_id = sys.argv[1] if len(sys.argv) > 1 else Prompt.ask("Enter the document id (chatId)")
    display_welcome_banner(chat_id)
    try:
        asyncio.run(run_session(chat_id))
    except KeyboardInterrupt:
        pass
    console.print("\n[bold magenta]Goodbye![/bold magenta]")


if __name__ == "__main__":
    main()
