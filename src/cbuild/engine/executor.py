"""Step executor: runs one component's build steps in its scoped working directory.

Steps run strictly in declared order. Components with a source get an implicit
SourceFetch as their first step unless they declare one themselves. The first
failing step aborts the rest of the component; the result carries the failing
step's index, command, exit code and captured output. Source acquisition
failures are reported with kind "source_fetch" instead of "step_failure".

Layout of a component's working directory:

    <working_dir>/           exclusively owned by one execution at a time
    <working_dir>/src/       project_dir: fetched source, default step cwd

Commands, cwd values and step env values may use the placeholders
{project_dir}, {working_dir} and {install_dir}.
"""

import logging
import subprocess
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from cbuild.subprocess_utils import safe_run

from .fetchers import SourceFetcher, SourceFetchError
from .models import (
    BuildEnvironment,
    BuildStatus,
    BuildStep,
    ComponentDescriptor,
    ComponentResult,
    EnvOverride,
    RunCommand,
    SourceFetch,
    StepFailure,
)

logger = logging.getLogger(__name__)

# Exit code reported when the executable can't be started (shell convention)
EXIT_COMMAND_NOT_FOUND = 127
# Exit code reported when a step exceeds its timeout
EXIT_TIMEOUT = -1

PROJECT_SUBDIR = "src"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


@runtime_checkable
class CommandRunner(Protocol):
    """Protocol for executing a single build command."""

    def run(
        self,
        command: str | tuple[str, ...],
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        """Run command in cwd with exactly env and return its exit status and output."""
        ...


class SubprocessCommandRunner:
    """CommandRunner backed by subprocess via safe_run().

    String commands run through the shell; argument tuples run directly.
    """

    def run(
        self,
        command: str | tuple[str, ...],
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        shell = isinstance(command, str)
        try:
            completed = safe_run(
                command if shell else list(command),
                shell=shell,
                cwd=str(cwd),
                env=dict(env),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=EXIT_TIMEOUT,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) + f"\nTimed out after {timeout}s",
            )
        except OSError as e:
            return CommandResult(exit_code=EXIT_COMMAND_NOT_FOUND, stderr=str(e))

        return CommandResult(completed.returncode, completed.stdout or "", completed.stderr or "")


def _decode(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class WorkdirLocks:
    """Process-wide exclusive locks keyed by resolved working directory path."""

    def __init__(self) -> None:
        self._locks: dict[Path, threading.Lock] = {}
        self._lock = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._lock:
            lock = self._locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._locks[path] = lock
            return lock

    @contextmanager
    def hold(self, working_dir: Path) -> Iterator[Path]:
        """Hold the working directory exclusively, creating it if absent."""
        path = working_dir.resolve()
        lock = self._lock_for(path)
        with lock:
            path.mkdir(parents=True, exist_ok=True)
            yield path

    def is_held(self, working_dir: Path) -> bool:
        return self._lock_for(working_dir.resolve()).locked()


def effective_steps(component: ComponentDescriptor) -> tuple[BuildStep, ...]:
    """Steps actually executed, including the implicit leading source fetch."""
    if component.source is not None and not any(isinstance(s, SourceFetch) for s in component.steps):
        return (SourceFetch(),) + component.steps
    return component.steps


def _expand(value: str, placeholders: Mapping[str, str]) -> str:
    for key, replacement in placeholders.items():
        value = value.replace("{" + key + "}", replacement)
    return value


class StepExecutor:
    """Runs a component's steps with its environment in its working directory.

    Args:
        runner: Command execution collaborator.
        fetcher: Source acquisition collaborator.
        workdir_locks: Shared working-directory locks (one per orchestrator).
    """

    def __init__(
        self,
        runner: CommandRunner,
        fetcher: SourceFetcher,
        workdir_locks: WorkdirLocks | None = None,
    ) -> None:
        self._runner = runner
        self._fetcher = fetcher
        self._workdir_locks = workdir_locks if workdir_locks is not None else WorkdirLocks()

    @property
    def workdir_locks(self) -> WorkdirLocks:
        return self._workdir_locks

    def run(self, component: ComponentDescriptor, env: BuildEnvironment, working_dir: Path) -> ComponentResult:
        """Execute all steps of component.

        Component-scoped failures are returned in the result, never raised.

        Args:
            component: Component to build.
            env: Environment from the EnvironmentBuilder.
            working_dir: Scoped working directory for this component.

        Returns:
            ComponentResult with status SUCCEEDED or FAILED.
        """
        result = ComponentResult(name=component.name, version=component.version, status=BuildStatus.RUNNING)
        result.mark_started()

        with self._workdir_locks.hold(working_dir) as workdir:
            result.working_dir = str(workdir)
            project_dir = workdir / PROJECT_SUBDIR
            project_dir.mkdir(exist_ok=True)
            placeholders = {
                "project_dir": str(project_dir),
                "working_dir": str(workdir),
                "install_dir": env.get("CBUILD_INSTALL_DIR", ""),
            }
            default_cwd = project_dir / component.relative_path if component.relative_path else project_dir

            current_env = env
            for index, step in enumerate(effective_steps(component)):
                logger.debug("[%s] step %d: %s", component.name, index, step.display())

                if isinstance(step, SourceFetch):
                    failure = self._fetch(component, step, index, project_dir)
                elif isinstance(step, EnvOverride):
                    current_env = current_env.layer({k: _expand(v, placeholders) for k, v in step.env.items()})
                    failure = None
                elif isinstance(step, RunCommand):
                    failure = self._run_command(step, index, current_env, default_cwd, placeholders)
                else:
                    failure = StepFailure(StepFailure.STEP, index, repr(step), message="Unknown step type")

                if failure is not None:
                    logger.debug("[%s] step %d failed: %s", component.name, index, failure.message)
                    result.fail(failure)
                    return result
                result.steps_run += 1

        result.status = BuildStatus.SUCCEEDED
        result.update_elapsed()
        return result

    def _fetch(self, component: ComponentDescriptor, step: SourceFetch, index: int, project_dir: Path) -> StepFailure | None:
        source = step.source if step.source is not None else component.source
        if source is None:
            return StepFailure(StepFailure.SOURCE_FETCH, index, step.display(), message="Component declares no source")
        try:
            self._fetcher.fetch(source, project_dir, component.version)
        except SourceFetchError as e:
            return StepFailure(StepFailure.SOURCE_FETCH, index, f"fetch {source}", message=str(e))
        except KeyboardInterrupt:
            raise
        except Exception as e:
            return StepFailure(StepFailure.SOURCE_FETCH, index, f"fetch {source}", message=f"{type(e).__name__}: {e}")
        project_dir.mkdir(parents=True, exist_ok=True)
        return None

    def _run_command(
        self,
        step: RunCommand,
        index: int,
        env: BuildEnvironment,
        default_cwd: Path,
        placeholders: Mapping[str, str],
    ) -> StepFailure | None:
        if isinstance(step.command, str):
            command: str | tuple[str, ...] = _expand(step.command, placeholders)
        else:
            command = tuple(_expand(arg, placeholders) for arg in step.command)
        display = command if isinstance(command, str) else " ".join(command)

        cwd = default_cwd
        if step.cwd is not None:
            cwd = _resolve_cwd(step.cwd, Path(placeholders["project_dir"]), placeholders)
        if not cwd.is_dir():
            return StepFailure(StepFailure.STEP, index, display, message=f"Working directory does not exist: {cwd}")

        step_env = env.layer({k: _expand(v, placeholders) for k, v in step.env.items()}) if step.env else env
        outcome = self._runner.run(command, cwd, step_env, step.timeout)
        if outcome.exit_code != 0:
            return StepFailure(
                StepFailure.STEP,
                index,
                display,
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                message=f"Command exited with status {outcome.exit_code}",
            )
        return None


def _resolve_cwd(cwd: str, project_dir: Path, placeholders: Mapping[str, str]) -> Path:
    path = Path(_expand(cwd, placeholders))
    if path.is_absolute():
        return path
    return project_dir / path
