"""Data models for the component build engine.

Defines the plain-data types that flow through the engine:
- ComponentDescriptor: A named, versioned component with its dependencies and steps
- RunCommand / SourceFetch / EnvOverride: Tagged build step variants
- ResolvedPlan: A topologically valid build order
- BuildEnvironment: Immutable variable mapping handed to build steps
- CacheEntry: Persisted record of a successful build
- ComponentResult / RunResult: Per-component and per-run outcomes

Descriptors are data, never closures, so the engine can serialize them,
fingerprint them and print them in a dry run.
"""

import json
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

# Version used when a descriptor does not pin one
DEFAULT_VERSION = "master"

UNSPECIFIED_LICENSE = "Unspecified"

# Maximum characters of captured output kept in formatted reports
_REPORT_OUTPUT_LIMIT = 2000


class DescriptorError(ValueError):
    """Raised when component descriptor data is malformed."""

    pass


class SourceKind(Enum):
    """Kind of source provenance for a component."""

    GIT = "git"
    URL = "url"
    PATH = "path"


class FailurePolicy(Enum):
    """How the orchestrator reacts to a component failure.

    FAIL_FAST_PER_BRANCH blocks only the dependents of the failed component and
    keeps building unrelated branches. FAIL_FAST_GLOBAL stops scheduling any new
    work after the first failure; components already running are allowed to finish.
    """

    FAIL_FAST_PER_BRANCH = "branch"
    FAIL_FAST_GLOBAL = "global"

    def __str__(self) -> str:
        return self.value


class BuildStatus(Enum):
    """Status of a component within a build run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED_CACHED = "skipped-cached"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """True if no further transition can happen."""
        return self not in (BuildStatus.PENDING, BuildStatus.RUNNING)

    @property
    def satisfies_dependents(self) -> bool:
        """True if dependents of a component in this status may start."""
        return self in (BuildStatus.SUCCEEDED, BuildStatus.SKIPPED_CACHED)


@dataclass(frozen=True)
class LicenseInfo:
    """License metadata of a component.

    Attributes:
        identifier: License identifier (e.g. "Apache-2.0")
        reference: URL or path of the license text
    """

    identifier: str = UNSPECIFIED_LICENSE
    reference: str = ""

    def to_dict(self) -> dict[str, str]:
        """Serialize to dictionary."""
        return {"identifier": self.identifier, "reference": self.reference}

    @classmethod
    def from_dict(cls, data: Any) -> "LicenseInfo":
        """Deserialize from a dictionary or a bare identifier string."""
        if data is None:
            return cls()
        if isinstance(data, str):
            return cls(identifier=data)
        if not isinstance(data, Mapping):
            raise DescriptorError(f"Invalid license entry: {data!r}")
        return cls(
            identifier=str(data.get("identifier", UNSPECIFIED_LICENSE)),
            reference=str(data.get("reference", "")),
        )


@dataclass(frozen=True)
class SourceSpec:
    """Where a component's source code comes from.

    Exactly one kind of provenance: a git repository, a tarball URL or a local path.

    Attributes:
        kind: Provenance kind
        location: Git URL, archive URL or filesystem path
        sha256: Optional expected checksum for URL archives
    """

    kind: SourceKind
    location: str
    sha256: str | None = None

    def __post_init__(self) -> None:
        if not self.location:
            raise DescriptorError(f"Empty {self.kind.value} source location")

    @classmethod
    def git(cls, url: str) -> "SourceSpec":
        return cls(SourceKind.GIT, url)

    @classmethod
    def url(cls, url: str, sha256: str | None = None) -> "SourceSpec":
        return cls(SourceKind.URL, url, sha256)

    @classmethod
    def path(cls, path: str) -> "SourceSpec":
        return cls(SourceKind.PATH, path)

    def to_dict(self) -> dict[str, str]:
        """Serialize to dictionary ({"git": url}, {"url": url, "sha256": ...} or {"path": p})."""
        data = {self.kind.value: self.location}
        if self.sha256:
            data["sha256"] = self.sha256
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceSpec":
        """Deserialize from dictionary.

        Raises:
            DescriptorError: If the data is not an object, or zero or several
                             provenance kinds are given.
        """
        if not isinstance(data, Mapping):
            raise DescriptorError(f"Source must be an object with one of git/url/path, got: {data!r}")
        kinds = [kind for kind in SourceKind if kind.value in data]
        if len(kinds) != 1:
            raise DescriptorError(f"Source must name exactly one of git/url/path, got: {sorted(data)}")
        kind = kinds[0]
        return cls(kind, str(data[kind.value]), data.get("sha256"))

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.location}"


@dataclass(frozen=True)
class RunCommand:
    """Run a command inside the component's working directory.

    Attributes:
        command: Shell command string, or an argument list executed without a shell
        cwd: Working directory; relative paths resolve against the project directory
        env: Variables layered on top of the component environment for this step only
        timeout: Optional timeout in seconds
    """

    command: str | tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None

    kind: ClassVar[str] = "run"

    def __post_init__(self) -> None:
        if isinstance(self.command, list):
            object.__setattr__(self, "command", tuple(self.command))
        if not self.command:
            raise DescriptorError("RunCommand requires a non-empty command")

    def display(self) -> str:
        """Human-readable form of the command."""
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "command": self.command if isinstance(self.command, str) else list(self.command),
        }
        if self.cwd is not None:
            data["cwd"] = self.cwd
        if self.env:
            data["env"] = dict(sorted(self.env.items()))
        if self.timeout is not None:
            data["timeout"] = self.timeout
        return data


@dataclass(frozen=True)
class SourceFetch:
    """Acquire source code into the project directory.

    Attributes:
        source: Explicit source; None means the component's own source
    """

    source: SourceSpec | None = None

    kind: ClassVar[str] = "fetch"

    def display(self) -> str:
        return f"fetch {self.source}" if self.source else "fetch source"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind}
        if self.source is not None:
            data["source"] = self.source.to_dict()
        return data


@dataclass(frozen=True)
class EnvOverride:
    """Layer variables onto the environment of all following steps."""

    env: Mapping[str, str] = field(default_factory=dict)

    kind: ClassVar[str] = "env"

    def display(self) -> str:
        return "env " + " ".join(f"{k}={v}" for k, v in sorted(self.env.items()))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "env": dict(sorted(self.env.items()))}


BuildStep = Union[RunCommand, SourceFetch, EnvOverride]


def _string_map(value: Any, what: str) -> dict[str, str]:
    """Validate an env-style mapping and stringify its keys and values."""
    if not isinstance(value, Mapping):
        raise DescriptorError(f"'{what}' must be an object, got {type(value).__name__}")
    return {str(k): str(v) for k, v in value.items()}


def _list(value: Any, what: str) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise DescriptorError(f"'{what}' must be a list, got {type(value).__name__}")
    return list(value)


def _string_list(value: Any, what: str) -> tuple[str, ...]:
    return tuple(str(v) for v in _list(value, what))


def step_from_dict(data: Mapping[str, Any]) -> BuildStep:
    """Deserialize a build step from its tagged dictionary form.

    A step without a "kind" key is treated as a RunCommand.

    Raises:
        DescriptorError: If the step is not an object, the kind is unknown or
                         required fields are missing or mistyped.
    """
    if not isinstance(data, Mapping):
        raise DescriptorError(f"Step must be an object, got: {data!r}")
    kind = data.get("kind", RunCommand.kind)
    if kind == RunCommand.kind:
        if "command" not in data:
            raise DescriptorError(f"Run step is missing 'command': {dict(data)!r}")
        command = data["command"]
        return RunCommand(
            command=command if isinstance(command, str) else _string_list(command, "command"),
            cwd=data.get("cwd"),
            env=_string_map(data.get("env", {}), "env"),
            timeout=data.get("timeout"),
        )
    if kind == SourceFetch.kind:
        source = data.get("source")
        return SourceFetch(SourceSpec.from_dict(source) if source else None)
    if kind == EnvOverride.kind:
        return EnvOverride(_string_map(data.get("env", {}), "env"))
    raise DescriptorError(f"Unknown step kind: {kind!r}")


@dataclass(frozen=True)
class ComponentDescriptor:
    """Declarative description of one buildable component.

    Attributes:
        name: Unique component name (registry key)
        version: Version string, DEFAULT_VERSION when not pinned
        license: License metadata
        source: Source provenance, or None for components without source
        skip_transitive_licensing: Don't collect licenses of the component's own bundled deps
        dependencies: Names of components that must be built first, in declaration order
        steps: Ordered build steps
        env: Component-level environment overrides
        relative_path: Sub-directory of the source tree that steps run in by default
    """

    name: str
    version: str = DEFAULT_VERSION
    license: LicenseInfo = field(default_factory=LicenseInfo)
    source: SourceSpec | None = None
    skip_transitive_licensing: bool = False
    dependencies: tuple[str, ...] = ()
    steps: tuple[BuildStep, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    relative_path: str | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise DescriptorError("Component name must be non-empty")
        if not self.version:
            object.__setattr__(self, "version", DEFAULT_VERSION)
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "steps", tuple(self.steps))
        if len(set(self.dependencies)) != len(self.dependencies):
            raise DescriptorError(f"Component '{self.name}' lists a dependency more than once")
        if self.name in self.dependencies:
            raise DescriptorError(f"Component '{self.name}' depends on itself")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary.

        The output is normalized (sorted env keys, lists instead of tuples) so
        that it can be fed straight into a canonical JSON encoder.
        """
        return {
            "name": self.name,
            "version": self.version,
            "license": self.license.to_dict(),
            "source": self.source.to_dict() if self.source else None,
            "skip_transitive_licensing": self.skip_transitive_licensing,
            "dependencies": list(self.dependencies),
            "steps": [step.to_dict() for step in self.steps],
            "env": dict(sorted(self.env.items())),
            "relative_path": self.relative_path,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ComponentDescriptor":
        """Deserialize from dictionary.

        Raises:
            DescriptorError: If the data is malformed.
        """
        if "name" not in data:
            raise DescriptorError(f"Component is missing 'name': {dict(data)!r}")
        source = data.get("source")
        try:
            return cls(
                name=str(data["name"]),
                version=str(data.get("version") or DEFAULT_VERSION),
                license=LicenseInfo.from_dict(data.get("license")),
                source=SourceSpec.from_dict(source) if source else None,
                skip_transitive_licensing=bool(data.get("skip_transitive_licensing", False)),
                dependencies=_string_list(data.get("dependencies", []), "dependencies"),
                steps=tuple(step_from_dict(s) for s in _list(data.get("steps", []), "steps")),
                env=_string_map(data.get("env", {}), "env"),
                relative_path=data.get("relative_path"),
            )
        except DescriptorError as e:
            raise DescriptorError(f"Component '{data['name']}': {e}") from e


@dataclass(frozen=True)
class ResolvedPlan:
    """Ordered build plan: every component appears after all of its dependencies.

    Attributes:
        components: Descriptors in build order
    """

    components: tuple[ComponentDescriptor, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "components", tuple(self.components))
        seen: set[str] = set()
        for component in self.components:
            if component.name in seen:
                raise ValueError(f"Component '{component.name}' appears twice in plan")
            for dep in component.dependencies:
                if dep not in seen:
                    raise ValueError(f"Component '{component.name}' is ordered before its dependency '{dep}'")
            seen.add(component.name)

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.components]

    def index_of(self, name: str) -> int:
        for i, component in enumerate(self.components):
            if component.name == name:
                return i
        raise KeyError(f"Component not in plan: {name}")

    def get(self, name: str) -> ComponentDescriptor:
        return self.components[self.index_of(name)]

    def __iter__(self) -> Iterator[ComponentDescriptor]:
        return iter(self.components)

    def __len__(self) -> int:
        return len(self.components)

    def __contains__(self, name: object) -> bool:
        return any(c.name == name for c in self.components)


class BuildEnvironment(Mapping[str, str]):
    """Immutable mapping of environment variables for one component's build.

    New environments are derived with layer(); the original is never modified,
    so one component's overrides can't leak into another's environment.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, str] | None = None) -> None:
        self._data: dict[str, str] = {str(k): str(v) for k, v in (data or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"BuildEnvironment({len(self._data)} vars)"

    def layer(self, overrides: Mapping[str, str]) -> "BuildEnvironment":
        """Return a new environment with overrides shadowing existing keys."""
        merged = dict(self._data)
        merged.update({str(k): str(v) for k, v in overrides.items()})
        return BuildEnvironment(merged)

    def to_dict(self) -> dict[str, str]:
        """Return a mutable copy, e.g. for subprocess env=."""
        return dict(self._data)

    def to_bytes(self) -> bytes:
        """Canonical serialization (sorted keys)."""
        return json.dumps(self._data, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class CacheEntry:
    """Record of a successful component build.

    Attributes:
        name: Component name
        version: Component version at build time
        fingerprint: Fingerprint the build was made from
        built_at: Unix timestamp of the successful build
    """

    name: str
    version: str
    fingerprint: str
    built_at: float

    def matches(self, version: str, fingerprint: str) -> bool:
        return self.version == version and self.fingerprint == fingerprint

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "fingerprint": self.fingerprint,
            "built_at": self.built_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            name=data["name"],
            version=data["version"],
            fingerprint=data["fingerprint"],
            built_at=float(data["built_at"]),
        )


@dataclass
class StepFailure:
    """Diagnostics for the step that failed a component.

    Attributes:
        kind: "step_failure" for a failing command, "source_fetch" for acquisition errors
        step_index: Zero-based index of the failing step (implicit fetch included)
        command: Display form of the failing step
        exit_code: Exit status, None when the step never produced one
        stdout: Captured standard output
        stderr: Captured standard error
        message: Short summary
    """

    STEP: ClassVar[str] = "step_failure"
    SOURCE_FETCH: ClassVar[str] = "source_fetch"

    kind: str
    step_index: int
    command: str
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    message: str = ""

    def format(self) -> str:
        """Format as a human-readable block for reports."""
        lines = [f"[{self.kind}] step {self.step_index}: {self.command}"]
        if self.exit_code is not None:
            lines.append(f"  exit code: {self.exit_code}")
        if self.message:
            lines.append(f"  {self.message}")
        for label, text in (("stdout", self.stdout), ("stderr", self.stderr)):
            if text:
                preview = text[-_REPORT_OUTPUT_LIMIT:]
                if len(text) > _REPORT_OUTPUT_LIMIT:
                    preview = "... (truncated)\n" + preview
                lines.append(f"  {label}:")
                lines.extend(f"    {line}" for line in preview.rstrip().splitlines())
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "step_index": self.step_index,
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepFailure":
        return cls(
            kind=data["kind"],
            step_index=data["step_index"],
            command=data["command"],
            exit_code=data.get("exit_code"),
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            message=data.get("message", ""),
        )


@dataclass
class ComponentResult:
    """Outcome of one component in a build run.

    Attributes:
        name: Component name
        version: Component version
        status: Current status
        fingerprint: Fingerprint computed for this run
        working_dir: Scoped working directory (empty if never created)
        elapsed: Seconds spent executing
        failure: Diagnostics when status is FAILED
        blocked_by: Failed dependency when status is BLOCKED
        steps_run: Number of steps that completed successfully
        start_time: Monotonic timestamp when execution started
    """

    name: str
    version: str
    status: BuildStatus = BuildStatus.PENDING
    fingerprint: str = ""
    working_dir: str = ""
    elapsed: float = 0.0
    failure: StepFailure | None = None
    blocked_by: str = ""
    steps_run: int = 0
    start_time: float | None = None

    def mark_started(self) -> None:
        """Record the start time for elapsed time tracking."""
        self.start_time = time.monotonic()

    def update_elapsed(self) -> None:
        """Update elapsed time from start_time."""
        if self.start_time is not None:
            self.elapsed = time.monotonic() - self.start_time

    def fail(self, failure: StepFailure) -> None:
        """Mark this component as failed."""
        self.status = BuildStatus.FAILED
        self.failure = failure
        self.update_elapsed()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "status": self.status.value,
            "fingerprint": self.fingerprint,
            "working_dir": self.working_dir,
            "elapsed": self.elapsed,
            "failure": self.failure.to_dict() if self.failure else None,
            "blocked_by": self.blocked_by,
            "steps_run": self.steps_run,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ComponentResult":
        failure = data.get("failure")
        return cls(
            name=data["name"],
            version=data["version"],
            status=BuildStatus(data.get("status", "pending")),
            fingerprint=data.get("fingerprint", ""),
            working_dir=data.get("working_dir", ""),
            elapsed=data.get("elapsed", 0.0),
            failure=StepFailure.from_dict(failure) if failure else None,
            blocked_by=data.get("blocked_by", ""),
            steps_run=data.get("steps_run", 0),
        )


@dataclass
class RunResult:
    """Aggregated result of one orchestrator run.

    Attributes:
        results: Per-component results in plan order
        total_elapsed: Total wall-clock time in seconds
        requested: Names the caller asked for
    """

    results: list[ComponentResult]
    total_elapsed: float
    requested: tuple[str, ...] = ()

    def _with_status(self, status: BuildStatus) -> list[ComponentResult]:
        return [r for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[ComponentResult]:
        return self._with_status(BuildStatus.SUCCEEDED)

    @property
    def skipped(self) -> list[ComponentResult]:
        return self._with_status(BuildStatus.SKIPPED_CACHED)

    @property
    def failed(self) -> list[ComponentResult]:
        return self._with_status(BuildStatus.FAILED)

    @property
    def blocked(self) -> list[ComponentResult]:
        return self._with_status(BuildStatus.BLOCKED)

    @property
    def cancelled(self) -> list[ComponentResult]:
        return self._with_status(BuildStatus.CANCELLED)

    @property
    def success(self) -> bool:
        """True if every component was built or skipped from cache."""
        return all(r.status.satisfies_dependents for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def get(self, name: str) -> ComponentResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(f"No result for component: {name}")

    def format_report(self) -> str:
        """Render a plain-text report enumerating every component's outcome."""
        lines = []
        for result in self.results:
            line = f"  {result.status.value:<15} {result.name} {result.version}"
            if result.status == BuildStatus.SUCCEEDED:
                line += f" ({result.elapsed:.1f}s)"
            elif result.status == BuildStatus.BLOCKED and result.blocked_by:
                line += f" (dependency '{result.blocked_by}' failed)"
            lines.append(line)
        for result in self.failed:
            if result.failure is not None:
                lines.append("")
                lines.append(f"{result.name} failed:")
                lines.append(result.failure.format())
        summary = (
            f"{len(self.succeeded)} built, {len(self.skipped)} cached, {len(self.failed)} failed, "
            f"{len(self.blocked)} blocked, {len(self.cancelled)} cancelled in {self.total_elapsed:.1f}s"
        )
        lines.append("")
        lines.append(summary)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested": list(self.requested),
            "results": [r.to_dict() for r in self.results],
            "total_elapsed": self.total_elapsed,
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunResult":
        return cls(
            results=[ComponentResult.from_dict(r) for r in data["results"]],
            total_elapsed=data["total_elapsed"],
            requested=tuple(data.get("requested", ())),
        )
