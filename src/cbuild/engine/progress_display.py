"""Rich-based live progress display for build runs.

Renders one line per component of the plan, updated as the orchestrator
reports status changes:

    zlib 1.3.1         Done      ✓ 4.1s
    openssl 3.0.13     Building  ⠹ Building
    ruby 3.1.4         Waiting
    bundler master     Blocked   ✗ Dependency 'openssl' failed

Thread-safe: on_status() may be called while the live display refreshes
from its own thread.
"""

import threading
import time
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .models import BuildStatus

# Braille spinner frames for the RUNNING status animation
_SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")

_STATUS_LABELS = {
    BuildStatus.PENDING: ("Waiting", "dim"),
    BuildStatus.RUNNING: ("Building", "cyan"),
    BuildStatus.SUCCEEDED: ("Done", "green"),
    BuildStatus.SKIPPED_CACHED: ("Cached", "blue"),
    BuildStatus.FAILED: ("Failed", "red bold"),
    BuildStatus.BLOCKED: ("Blocked", "yellow"),
    BuildStatus.CANCELLED: ("Cancelled", "dim"),
}


class _ComponentDisplayState:
    """Internal state for a single component's display line."""

    __slots__ = ("name", "version", "status", "detail", "elapsed", "start_time")

    def __init__(self, name: str, version: str) -> None:
        self.name = name
        self.version = version
        self.status = BuildStatus.PENDING
        self.detail: str = ""
        self.elapsed: float = 0.0
        self.start_time: float | None = None


class BuildProgressDisplay:
    """Live TUI table of component build status using Rich.

    Implements BuildCallback.

    Args:
        console: Rich Console instance for rendering. If None, creates a new one.
        title: Header line (e.g. the requested component names).
        refresh_per_second: Display refresh rate.
    """

    def __init__(self, console: Console | None, title: str, refresh_per_second: int = 10) -> None:
        self._console = console if console is not None else Console()
        self._title = title
        self._refresh_per_second = refresh_per_second
        self._states: dict[str, _ComponentDisplayState] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()
        self._live: Live | None = None

    def register_component(self, name: str, version: str) -> None:
        """Register a component for display before the run starts."""
        with self._lock:
            if name not in self._states:
                self._states[name] = _ComponentDisplayState(name, version)
                self._order.append(name)

    def on_status(self, name: str, status: BuildStatus, detail: str) -> None:
        """Update the display state for a component. Thread-safe."""
        with self._lock:
            state = self._states.get(name)
            if state is None:
                state = _ComponentDisplayState(name, "")
                self._states[name] = state
                self._order.append(name)

            if status == BuildStatus.RUNNING and state.start_time is None:
                state.start_time = time.monotonic()
            state.status = status
            state.detail = detail
            if state.start_time is not None:
                state.elapsed = time.monotonic() - state.start_time

        self.update()

    def start(self) -> None:
        """Start the live display."""
        self._live = Live(
            self._render_display(),
            console=self._console,
            refresh_per_second=self._refresh_per_second,
            transient=False,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the live display after a final render."""
        if self._live is not None:
            self._live.update(self._render_display())
            self._live.stop()
            self._live = None

    def update(self) -> None:
        """Force a display refresh."""
        if self._live is not None:
            self._live.update(self._render_display())

    def _render_display(self) -> Group:
        header = Text(f"\nBuilding {self._title}...\n", style="bold")
        return Group(header, self._render_table(), self._render_footer())

    def _render_table(self) -> Table:
        table = Table(show_header=False, show_edge=False, show_lines=False, box=None, padding=(0, 1), expand=False)
        table.add_column("Component", style="bold", no_wrap=True, min_width=28)
        table.add_column("Status", no_wrap=True, min_width=10)
        table.add_column("Detail", no_wrap=True, min_width=40)

        with self._lock:
            for name in self._order:
                state = self._states[name]
                label, style = _STATUS_LABELS[state.status]
                version_str = f" {state.version}" if state.version else ""
                table.add_row(
                    Text(f"{state.name}{version_str}", style=style if state.status != BuildStatus.RUNNING else "bold cyan"),
                    Text(label, style=style),
                    self._format_detail(state),
                )
        return table

    def _render_footer(self) -> Text:
        with self._lock:
            total = len(self._states)
            counts: dict[BuildStatus, int] = {}
            for state in self._states.values():
                counts[state.status] = counts.get(state.status, 0) + 1

        parts = [f"{total} components"]
        for status in (BuildStatus.RUNNING, BuildStatus.SUCCEEDED, BuildStatus.SKIPPED_CACHED, BuildStatus.FAILED, BuildStatus.BLOCKED):
            if counts.get(status):
                parts.append(f"{counts[status]} {_STATUS_LABELS[status][0].lower()}")
        return Text(f"\n  {', '.join(parts)}", style="dim")

    def _format_detail(self, state: _ComponentDisplayState) -> Text:
        if state.status == BuildStatus.PENDING:
            return Text("")
        if state.status == BuildStatus.RUNNING:
            spinner = _SPINNER_FRAMES[int(time.monotonic() * 8) % len(_SPINNER_FRAMES)]
            return Text(f"{spinner} {state.detail or 'Building...'}", style="cyan")
        if state.status == BuildStatus.SUCCEEDED:
            return Text(f"✓ {state.elapsed:.1f}s", style="green")
        if state.status == BuildStatus.SKIPPED_CACHED:
            return Text("✓ up to date", style="blue")
        if state.status in (BuildStatus.FAILED, BuildStatus.BLOCKED):
            return Text(f"✗ {state.detail or 'Error'}", style=_STATUS_LABELS[state.status][1])
        return Text(state.detail, style="dim")

    def get_snapshot(self) -> list[dict[str, Any]]:
        """Get a snapshot of current display states for testing."""
        with self._lock:
            return [
                {
                    "name": self._states[name].name,
                    "version": self._states[name].version,
                    "status": self._states[name].status,
                    "detail": self._states[name].detail,
                    "elapsed": self._states[name].elapsed,
                }
                for name in self._order
            ]

    def __enter__(self) -> "BuildProgressDisplay":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()
