"""Terminal rendering -- draws session snapshots with rich."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from .models import ApiCallLog

REFRESH_SECONDS = 0.25
LOG_LINES = 8
PROGRESS_LINES = 6

_STATE_STYLE = {
    "pending": "dim",
    "running": "yellow",
    "done": "green",
    "error": "red",
}


def _progress_table(progress: dict[str, dict[str, str]]) -> Table:
    table = Table.grid(padding=(0, 1))
    active = [(p, v) for p, v in progress.items() if v["state"] in ("pending", "running")]
    finished = sum(1 for v in progress.values() if v["state"] in ("done", "error"))
    table.add_row(Text(f"Indexing {finished}/{len(progress)} file(s)", style="bold"))
    for path, info in active[:PROGRESS_LINES]:
        table.add_row(Text(f"  {info['state']:<8} {path}", style=_STATE_STYLE[info["state"]]))
    return table


def _log_text(logs: list[dict[str, Any]], offset: int = 0) -> Text:
    end = len(logs) - offset
    window = logs[max(0, end - LOG_LINES):max(0, end)]
    text = Text()
    for entry in window:
        ts = datetime.fromtimestamp(entry["timestamp"]).strftime("%H:%M:%S")
        style = "red" if entry["level"] in ("ERROR", "CRITICAL") else "yellow" if entry["level"] == "WARNING" else "dim"
        text.append(f"{ts} {entry['message']}\n", style=style)
    return text


def render_snapshot(snapshot: dict[str, Any], *, waiting: bool = False) -> Group:
    """Build the live status view from a ``SessionState.snapshot()``."""
    parts: list[Any] = []
    if snapshot["indexing"] and snapshot["progress"]:
        parts.append(_progress_table(snapshot["progress"]))
    if waiting or snapshot["busy"]:
        parts.append(Spinner("dots", text=Text(" Thinking...", style="cyan")))
    if snapshot["logs"]:
        offset = snapshot["scroll"].get("log", 0)
        parts.append(Panel(_log_text(snapshot["logs"], offset), title="log", border_style="dim"))
    footer = f"{snapshot['indexed_files']} file(s) indexed · {snapshot['api_calls']} API call(s)"
    parts.append(Text(footer, style="dim"))
    return Group(*parts)


def render_answer(answer: str) -> Panel:
    style = "red" if answer.startswith("Error:") else "green"
    return Panel(Markdown(answer), title="assistant", border_style=style)


def render_calls(calls: list[ApiCallLog]) -> Table:
    table = Table(title="API calls")
    table.add_column("Timestamp")
    table.add_column("Request")
    table.add_column("Status", justify="right")
    table.add_column("Time (ms)", justify="right")
    for call in calls:
        status_style = "green" if 200 <= call.response_status < 300 else "red"
        table.add_row(
            call.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            call.request_summary,
            Text(str(call.response_status), style=status_style),
            str(call.response_time_ms),
        )
    return table


async def watch(state: Any, until: asyncio.Future[Any], console: Console) -> None:
    """Redraw *state* on a fixed cadence until *until* completes.

    Only polls snapshots; never awaits the work it is displaying.
    """
    with Live(render_snapshot(state.snapshot(), waiting=True), console=console, transient=True) as live:
        while not until.done():
            live.update(render_snapshot(state.snapshot(), waiting=True))
            await asyncio.wait({until}, timeout=REFRESH_SECONDS)
