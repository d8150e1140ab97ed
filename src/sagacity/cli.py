"""CLI entry point for sagacity -- chat with a local codebase."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from .errors import SagacityError

app = typer.Typer(
    name="sagacity",
    help="Ask questions about a local codebase using an incrementally updated summary index.",
    add_completion=False,
)

console = Console()

# Lines moved per /log up|down.
LOG_SCROLL = 4


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _load_dotenv(start_dir: Path) -> None:
    """Load a .env file from *start_dir* (or parents) into os.environ.

    Only sets vars that are not already present in the environment.
    Handles KEY=VALUE lines, ignores comments and blank lines.
    """
    search = start_dir.resolve()
    for d in [search, *search.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            try:
                for line in candidate.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" not in line:
                        continue
                    key, _, value = line.partition("=")
                    key = key.strip()
                    value = value.strip().strip("\"'")
                    if key and key not in os.environ:
                        os.environ[key] = value
            except OSError:
                pass
            return  # stop after the first .env found


def _setup_logging(level: str, *, to_console: bool = True) -> None:
    root = logging.getLogger("sagacity")
    root.setLevel(level)
    root.handlers.clear()
    if to_console:
        root.addHandler(RichHandler(console=console, show_path=False, markup=False))
    root.propagate = False


def _require_project(path: Path | None = None) -> tuple[Path, Path]:
    """Locate .sagacity/ or exit with an error.

    Returns ``(project_root, sagacity_dir)``.
    """
    from .config import SAGACITY_DIR, find_project_root

    start = Path(path).resolve() if path else Path.cwd()
    project_root = find_project_root(start)
    if project_root is None:
        console.print(
            "[red]Error:[/red] No .sagacity/ directory found. "
            "Run [bold]sagacity init[/bold] first."
        )
        raise typer.Exit(code=1)
    return project_root, project_root / SAGACITY_DIR


def _effective_config(sagacity_dir: Path, **overrides):
    from .config import apply_overrides, load_config

    try:
        return apply_overrides(load_config(sagacity_dir), overrides)
    except SagacityError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)


def _build_assistant(project_root: Path, cfg, state=None):
    from .assistant import create_assistant

    try:
        return create_assistant(project_root, cfg, state=state)
    except SagacityError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)


async def _index_with_progress(assistant) -> None:
    """Run one indexing pass while drawing a progress bar from the session."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        bar = progress.add_task("Indexing", total=None)
        task = assistant.request_reindex()
        while not task.done():
            snap = assistant.state.snapshot()["progress"]
            finished = sum(1 for v in snap.values() if v["state"] in ("done", "error"))
            progress.update(bar, total=len(snap) or None, completed=finished)
            await asyncio.wait({task}, timeout=0.1)
        report = task.result()
        progress.update(bar, total=1, completed=1)

    console.print(
        f"  {len(report.summarized)} summarized, {len(report.degraded)} degraded, "
        f"{len(report.deleted)} removed, {report.unchanged} unchanged."
    )
    if not report.saved:
        console.print("[yellow]Warning:[/yellow] index cache was not saved.")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Codebase path (default: current directory)."),
) -> None:
    """Initialise a .sagacity/ directory in a codebase."""
    from .config import init_project

    target = Path(path).resolve() if path else Path.cwd()

    try:
        sagacity_dir = init_project(target)
    except FileExistsError:
        console.print(f"[yellow]Already initialised:[/yellow] {target / '.sagacity'}")
        raise typer.Exit(code=0)
    except ValueError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)

    console.print(f"[green]Initialised[/green] {sagacity_dir}")
    console.print("  Run [bold]sagacity index[/bold] to build the summary index.")


@app.command()
def index(
    path: Optional[Path] = typer.Argument(None, help="Codebase path (default: current directory)."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", help="Files summarized in parallel."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model ID."),
) -> None:
    """Summarize new or modified files and drop deleted ones from the index."""
    project_root, sagacity_dir = _require_project(path)
    _load_dotenv(project_root)
    cfg = _effective_config(sagacity_dir, concurrency=concurrency, model=model)
    _setup_logging(cfg.log_level)

    async def _run() -> None:
        assistant = _build_assistant(project_root, cfg)
        await assistant.start()
        try:
            await _index_with_progress(assistant)
        finally:
            await assistant.close()

    asyncio.run(_run())


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about the codebase."),
    path: Optional[Path] = typer.Option(None, "--path", "-p", help="Codebase path (default: current directory)."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model ID."),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", help="Files used as context."),
    no_reindex: bool = typer.Option(False, "--no-reindex", help="Skip the incremental index update."),
) -> None:
    """Answer a single question and exit."""
    from .ui import render_answer

    project_root, sagacity_dir = _require_project(path)
    _load_dotenv(project_root)
    cfg = _effective_config(sagacity_dir, model=model, top_k=top_k)
    _setup_logging(cfg.log_level)

    async def _run():
        assistant = _build_assistant(project_root, cfg)
        await assistant.start()
        try:
            if not no_reindex:
                await _index_with_progress(assistant)
            with console.status("Thinking..."):
                return await assistant.ask(question)
        finally:
            await assistant.close()

    result = asyncio.run(_run())
    console.print(render_answer(result.answer))
    if result.sources:
        console.print("[dim]Sources: " + ", ".join(f"{s.path} ({s.score:.2f})" for s in result.sources) + "[/dim]")
    if result.error:
        raise typer.Exit(code=1)


@app.command()
def chat(
    path: Optional[Path] = typer.Argument(None, help="Codebase path (default: current directory)."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model ID."),
) -> None:
    """Interactive chat. Indexing runs in the background while you type.

    Commands: /reindex, /calls, /log [up|down], /quit
    """
    from .session import SessionLogHandler, SessionState
    from .ui import render_answer, render_calls, render_snapshot, watch

    project_root, sagacity_dir = _require_project(path)
    _load_dotenv(project_root)
    cfg = _effective_config(sagacity_dir, model=model)

    # Log records go to the session's ring buffer, not over the live view.
    _setup_logging(cfg.log_level, to_console=False)
    from .cache import load_cache
    from .config import cache_path

    state = SessionState(load_cache(cache_path(sagacity_dir)))
    logging.getLogger("sagacity").addHandler(SessionLogHandler(state))

    async def _run() -> None:
        assistant = _build_assistant(project_root, cfg, state=state)
        await assistant.start()
        assistant.request_reindex()
        console.print(f"[bold]Chatting with[/bold] {project_root}  [dim](/quit to exit)[/dim]")
        try:
            while True:
                text = (await asyncio.to_thread(console.input, "[bold cyan]you>[/bold cyan] ")).strip()
                if not text:
                    continue
                if text in ("/quit", "/exit"):
                    break
                if text == "/reindex":
                    assistant.request_reindex()
                    console.print("[dim]Reindexing in the background.[/dim]")
                    continue
                if text == "/calls":
                    console.print(render_calls(state.api_calls()))
                    continue
                if text.startswith("/log"):
                    delta = -LOG_SCROLL if text.endswith("down") else LOG_SCROLL if text.endswith("up") else 0
                    state.scroll("log", delta)
                    console.print(render_snapshot(state.snapshot()))
                    continue

                fut = await assistant.submit_query(text)
                await watch(state, fut, console)
                if fut.cancelled():
                    console.print("[yellow]Cancelled.[/yellow]")
                    continue
                console.print(render_answer(fut.result().answer))
        except EOFError:
            pass
        finally:
            await assistant.close(cancel_pending=True)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[dim]Bye.[/dim]")


@app.command()
def status(
    path: Optional[Path] = typer.Argument(None, help="Codebase path (default: current directory)."),
) -> None:
    """Show index statistics and files pending reindex (no API calls)."""
    from .cache import load_cache
    from .config import cache_path
    from .scanner import scan_changes

    project_root, sagacity_dir = _require_project(path)
    cfg = _effective_config(sagacity_dir)
    cache = load_cache(cache_path(sagacity_dir))
    changes = scan_changes(project_root, cache, cfg.extensions)

    table = Table(title=f"Index for {project_root}", show_header=False)
    table.add_row("Indexed files", str(len(cache.entries)))
    table.add_row("Degraded summaries", str(sum(1 for e in cache.entries.values() if e.degraded)))
    table.add_row("Unchanged", str(len(changes.unchanged)))
    table.add_row("New or modified", str(len(changes.changed)))
    table.add_row("Deleted", str(len(changes.deleted)))
    console.print(table)
    for p in changes.changed[:20]:
        console.print(f"  [yellow]M[/yellow] {p}")
    for p in changes.deleted[:20]:
        console.print(f"  [red]D[/red] {p}")


@app.command("config")
def config_cmd(
    key: Optional[str] = typer.Argument(None, help="Config key to view or set."),
    value: Optional[str] = typer.Argument(None, help="New value (omit to view)."),
    path: Optional[Path] = typer.Option(None, "--path", "-p", help="Codebase path (default: current directory)."),
) -> None:
    """View or modify .sagacity/config.toml settings."""
    from .config import load_config, save_config, set_config_value

    _project_root, sagacity_dir = _require_project(path)
    try:
        cfg = load_config(sagacity_dir)
        if key is None:
            for k, v in cfg.model_dump(exclude={"api_key"}).items():
                console.print(f"[bold]{k}[/bold] = {v}")
            return
        if value is None:
            if key not in type(cfg).model_fields or key == "api_key":
                raise typer.BadParameter(f"Unknown config key: {key}")
            console.print(f"{getattr(cfg, key)}")
            return
        cfg = set_config_value(cfg, key, value)
        save_config(sagacity_dir, cfg)
    except SagacityError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)
    console.print(f"[green]Set[/green] {key} = {getattr(cfg, key)}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
