"""Progress callback protocol for the build orchestrator.

Defines the callback interface the orchestrator uses to report component
status changes to the display layer.
"""

from typing import Protocol, runtime_checkable

from cbuild.output import log

from .models import BuildStatus


@runtime_checkable
class BuildCallback(Protocol):
    """Protocol for receiving component status updates.

    Implementations are called from the orchestrator thread whenever a
    component changes status. The TUI display implements this protocol to
    render its live table.
    """

    def on_status(self, name: str, status: BuildStatus, detail: str) -> None:
        """Called when a component changes status.

        Args:
            name: Component name.
            status: New status.
            detail: Human-readable detail (e.g. "built in 3.2s", "dependency 'zlib' failed").
        """
        ...


class NullCallback:
    """No-op callback for tests and non-interactive use."""

    def on_status(self, name: str, status: BuildStatus, detail: str) -> None:
        """Discard status update."""
        pass


class TextCallback:
    """Plain timestamped status lines for non-TTY output (CI logs, pipes)."""

    def __init__(self, verbose: bool = False) -> None:
        self._verbose = verbose

    def on_status(self, name: str, status: BuildStatus, detail: str) -> None:
        """Print terminal statuses, and starts too when verbose."""
        if status == BuildStatus.RUNNING and not self._verbose:
            return
        log(f"  {name}: {status.value} - {detail}")
