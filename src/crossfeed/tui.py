"""Rich terminal reader for the merged feed.

Top pane lists the newest messages, bottom pane shows the selected one in
full, and a status bar reports source health. Keys: j/k or arrows move,
g/G jump to newest/oldest, r polls every source now, q quits.
"""

from __future__ import annotations

import logging
import os
import select
import sys
import termios
import threading
import tty
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from crossfeed.feed.snapshot import FeedSnapshot
from crossfeed.models import Identity, Message, PairState, SourceKind

if TYPE_CHECKING:
    from crossfeed.feed.engine import MergeEngine
    from crossfeed.scheduler import PollScheduler

logger = logging.getLogger(__name__)

_SOURCE_BADGES = {
    SourceKind.TELEGRAM: ("TG", "cyan"),
    SourceKind.DISCORD: ("DC", "magenta"),
    SourceKind.GITHUB: ("GH", "white"),
    SourceKind.JIRA: ("JR", "blue"),
}

_STATE_STYLES = {
    PairState.PENDING: "dim",
    PairState.OK: "green",
    PairState.BACKOFF: "yellow",
    PairState.RATE_LIMITED: "yellow",
    PairState.SUSPENDED: "bold red",
}

_DEFAULT_SELECTED_STYLE = "reverse"

_KEY_UP = "\x1b[A"
_KEY_DOWN = "\x1b[B"


# ---------------------------------------------------------------------------
# Selection state
# ---------------------------------------------------------------------------


class FeedView:
    """Newest-first window over the latest snapshot plus a selection.

    The selection follows a message's identity across snapshots, so new
    arrivals at the top do not move the cursor off what is being read.
    """

    def __init__(self, limit: int = 100, selected_style: str = _DEFAULT_SELECTED_STYLE) -> None:
        self.limit = limit
        self.selected_style = selected_style
        self.snapshot = FeedSnapshot()
        self._rows: tuple[Message, ...] = ()
        self._index = 0

    @property
    def rows(self) -> tuple[Message, ...]:
        return self._rows

    @property
    def index(self) -> int:
        return self._index

    def update(self, snapshot: FeedSnapshot) -> None:
        selected = self.selected_identity()
        self.snapshot = snapshot
        self._rows = snapshot.latest(self.limit)
        if selected is not None:
            for i, message in enumerate(self._rows):
                if message.identity == selected:
                    self._index = i
                    return
        self._index = min(self._index, max(len(self._rows) - 1, 0))

    def selected(self) -> Message | None:
        return self._rows[self._index] if self._rows else None

    def selected_identity(self) -> Identity | None:
        message = self.selected()
        return message.identity if message else None

    def move(self, delta: int) -> None:
        if self._rows:
            self._index = max(0, min(len(self._rows) - 1, self._index + delta))

    def top(self) -> None:
        self._index = 0

    def bottom(self) -> None:
        self._index = max(len(self._rows) - 1, 0)


def selection_style(fg: str = "", bg: str = "") -> str:
    """Rich style for the selected row; reverse video unless colors are set."""
    if not fg and not bg:
        return _DEFAULT_SELECTED_STYLE
    return " ".join(part for part in (fg, f"on {bg}" if bg else "") if part)


def handle_key(view: FeedView, key: str, scheduler: PollScheduler | None = None) -> bool:
    """Apply one key press. Returns False when the reader should exit."""
    if key in ("q", "Q", "\x03"):
        return False
    if key in ("j", _KEY_DOWN):
        view.move(1)
    elif key in ("k", _KEY_UP):
        view.move(-1)
    elif key == "g":
        view.top()
    elif key == "G":
        view.bottom()
    elif key == "r" and scheduler is not None:
        logger.info("Manual refresh requested")
        scheduler.poll_now()
    return True


# ---------------------------------------------------------------------------
# Panels
# ---------------------------------------------------------------------------


def _badge(kind: SourceKind) -> Text:
    label, style = _SOURCE_BADGES[kind]
    return Text(f"[{label}]", style=f"bold {style}")


def _build_message_list(view: FeedView) -> Panel:
    table = Table(show_header=False, box=None, padding=(0, 1), expand=True)
    table.add_column("Src", no_wrap=True)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Author", style="bold", no_wrap=True, max_width=18)
    table.add_column("Message", ratio=1, no_wrap=True, overflow="ellipsis")

    for i, message in enumerate(view.rows):
        preview = message.title or message.content.split("\n", 1)[0]
        if i == view.index:
            style = view.selected_style
        else:
            style = "dim strike" if message.deleted else ""
        table.add_row(
            _badge(message.kind),
            message.timestamp.strftime("%m-%d %H:%M"),
            Text(message.author.name),
            Text(preview),
            style=style,
        )
    if not view.rows:
        table.add_row("", "", "", Text("(waiting for messages)", style="dim"))

    title = f"Messages ({len(view.snapshot)}) v{view.snapshot.version}"
    return Panel(table, title=title, border_style="cyan")


def _build_detail(message: Message | None) -> Panel:
    if message is None:
        return Panel(Text("No message selected", style="dim"), title="Content")

    header = Table(show_header=False, box=None, padding=(0, 1))
    header.add_column("Field", style="bold")
    header.add_column("Value")
    header.add_row("Source", Text(f"{message.kind.value} / {message.channel}"))
    header.add_row("Author", Text(message.author.name))
    header.add_row("Time", message.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"))
    if message.edited_at is not None:
        header.add_row("Edited", message.edited_at.strftime("%Y-%m-%d %H:%M:%S UTC"))
    if message.thread_parent is not None:
        header.add_row("Reply to", str(message.thread_parent))
    if message.url:
        header.add_row("Link", Text(message.url))

    body = Text(message.content, style="dim italic" if message.deleted else "")
    parts: list = [header, Text(""), body]
    if message.attachments:
        parts.append(Text("\nAttachments:", style="bold"))
        for attachment in message.attachments:
            size = f" ({attachment.size}B)" if attachment.size is not None else ""
            parts.append(Text(f"  {attachment.kind.value}: {attachment.filename}{size}"))

    title = Text(message.title) if message.title else "Content"
    return Panel(Group(*parts), title=title, border_style="green")


def _build_status_bar(snapshot: FeedSnapshot) -> Panel:
    text = Text()
    for pair, status in sorted(snapshot.sources.items()):
        if text:
            text.append("  ")
        text.append(pair, style=_STATE_STYLES[status.state])
        if status.state != PairState.OK:
            text.append(f" {status.state.value}", style=_STATE_STYLES[status.state])
        if status.malformed_count:
            text.append(f" ({status.malformed_count} malformed)", style="dim")
    if not text:
        text.append("no sources configured", style="dim")
    text.append("   j/k move  g/G top/bottom  r refresh  q quit", style="dim")
    return Panel(text, title="Sources", border_style="blue")


def build_screen(view: FeedView) -> Layout:
    """Assemble the full reader layout for ``rich.live.Live``."""
    layout = Layout()
    layout.split_column(
        Layout(name="messages", ratio=1),
        Layout(name="detail", ratio=1),
        Layout(name="status", size=3),
    )
    layout["messages"].update(_build_message_list(view))
    layout["detail"].update(_build_detail(view.selected()))
    layout["status"].update(_build_status_bar(view.snapshot))
    return layout


# ---------------------------------------------------------------------------
# Terminal loop
# ---------------------------------------------------------------------------


@contextmanager
def _cbreak(fd: int) -> Iterator[None]:
    saved = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def _read_key(fd: int, timeout: float) -> str | None:
    ready, _, _ = select.select([fd], [], [], timeout)
    if not ready:
        return None
    return os.read(fd, 3).decode(errors="ignore")


def run_tui(
    engine: MergeEngine,
    scheduler: PollScheduler | None = None,
    limit: int = 100,
    console: Console | None = None,
    selected_style: str = _DEFAULT_SELECTED_STYLE,
) -> None:
    """Run the reader until the user quits or ingestion halts.

    Raises PipelineHalted if the scheduler stops on a fatal conflict.
    """
    view = FeedView(limit, selected_style)
    view.update(engine.current_snapshot())
    changed = threading.Event()

    def _follow() -> None:
        for _ in engine.subscribe(after_version=view.snapshot.version):
            changed.set()

    threading.Thread(target=_follow, name="tui-follow", daemon=True).start()

    fd = sys.stdin.fileno()
    with _cbreak(fd), Live(
        build_screen(view), console=console, screen=True, auto_refresh=False
    ) as live:
        while True:
            if scheduler is not None:
                scheduler.wait(timeout=0)
            key = _read_key(fd, timeout=0.2)
            if key is not None:
                if not handle_key(view, key, scheduler):
                    break
                live.update(build_screen(view), refresh=True)
            if changed.is_set():
                changed.clear()
                view.update(engine.current_snapshot())
                live.update(build_screen(view), refresh=True)
