"""Dependency-ordered, cached component build engine with a live TUI.

This package resolves component descriptors into a build plan, fingerprints
each component, and runs the uncached ones on a bounded worker pool with
layered environments and a Rich progress display.

Public API:
    ComponentBuilder: High-level builder that wires cache, environment builder
                      and executor together and runs with optional TUI.
    BuildOrchestrator: Low-level orchestrator for custom collaborators.
"""

import sys
from collections.abc import Iterable, Mapping
from pathlib import Path

from .cache import BuildCache, BuildCacheError, CacheCorruptionError
from .callbacks import BuildCallback, NullCallback, TextCallback
from .environment import EnvironmentBuilder
from .executor import CommandRunner, StepExecutor, SubprocessCommandRunner, WorkdirLocks
from .fetchers import DefaultSourceFetcher, SourceFetcher, SourceFetchError
from .fingerprint import compute_fingerprint, compute_plan_fingerprints
from .licensing import LicenseManifest, collect_licenses
from .models import (
    BuildEnvironment,
    BuildStatus,
    ComponentDescriptor,
    ComponentResult,
    DescriptorError,
    EnvOverride,
    FailurePolicy,
    LicenseInfo,
    ResolvedPlan,
    RunCommand,
    RunResult,
    SourceFetch,
    SourceSpec,
    StepFailure,
)
from .orchestrator import BuildOrchestrator, PlanEntry
from .progress_display import BuildProgressDisplay
from .registry import ComponentRegistry, DuplicateComponentError
from .resolver import CycleError, MissingDependencyError, ResolutionError, requested_roots, resolve


class ComponentBuilder:
    """High-level component builder with a live progress table.

    Creates the default collaborators (JSON build cache, layered environment
    builder, subprocess step executor with git/url/path fetchers) and runs the
    orchestrator with a Rich TUI when attached to a terminal.

    Args:
        build_root: Directory holding one working directory per component.
        install_dir: Embedded install tree.
        cache_path: Build cache file.
        max_workers: Maximum components built concurrently.
        policy: Reaction to component failures.
        target_platform: Platform the components are built for (default: sys.platform).
    """

    def __init__(
        self,
        build_root: Path,
        install_dir: Path,
        cache_path: Path,
        max_workers: int,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST_PER_BRANCH,
        target_platform: str | None = None,
    ) -> None:
        self._cache = BuildCache(cache_path)
        self._environment_builder = EnvironmentBuilder(str(install_dir), target_platform)
        self._executor = StepExecutor(SubprocessCommandRunner(), DefaultSourceFetcher())
        self._build_root = Path(build_root)
        self._max_workers = max_workers
        self._policy = policy

    @property
    def cache(self) -> BuildCache:
        return self._cache

    def orchestrator(self, callback: BuildCallback | None = None) -> BuildOrchestrator:
        return BuildOrchestrator(
            cache=self._cache,
            environment_builder=self._environment_builder,
            executor=self._executor,
            build_root=self._build_root,
            max_workers=self._max_workers,
            policy=self._policy,
            callback=callback,
        )

    def build(
        self,
        requested: Iterable[str],
        registry: ComponentRegistry,
        verbose: bool,
        use_tui: bool | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> RunResult:
        """Build the requested components and their dependencies.

        Args:
            requested: Component names to build.
            registry: Registry holding all descriptors.
            verbose: Whether to print every status change in non-TUI mode.
            use_tui: Override TUI display. None = auto-detect (TTY check).
                     True = force TUI. False = disable TUI.
            base_env: Base environment; defaults to os.environ.

        Returns:
            RunResult with one entry per plan component.

        Raises:
            ResolutionError: If the requested components can't be resolved.
        """
        roots = requested_roots(requested, registry)
        # Resolve up front so the display can list the whole plan
        plan = resolve(roots, registry)

        if use_tui is None:
            use_tui = _is_tty()

        if use_tui:
            display = BuildProgressDisplay(console=None, title=", ".join(roots), refresh_per_second=10)
            for descriptor in plan:
                display.register_component(descriptor.name, descriptor.version)
            with display:
                return self.orchestrator(display).run(roots, registry, base_env)

        return self.orchestrator(TextCallback(verbose=verbose)).run(roots, registry, base_env)


def _is_tty() -> bool:
    """Check if stdout is a terminal (TTY)."""
    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


__all__ = [
    "BuildCache",
    "BuildCacheError",
    "BuildCallback",
    "BuildEnvironment",
    "BuildOrchestrator",
    "BuildProgressDisplay",
    "BuildStatus",
    "CacheCorruptionError",
    "CommandRunner",
    "ComponentBuilder",
    "ComponentDescriptor",
    "ComponentRegistry",
    "ComponentResult",
    "CycleError",
    "DefaultSourceFetcher",
    "DescriptorError",
    "DuplicateComponentError",
    "EnvOverride",
    "EnvironmentBuilder",
    "FailurePolicy",
    "LicenseInfo",
    "LicenseManifest",
    "MissingDependencyError",
    "NullCallback",
    "PlanEntry",
    "ResolutionError",
    "ResolvedPlan",
    "RunCommand",
    "RunResult",
    "SourceFetch",
    "SourceFetchError",
    "SourceFetcher",
    "SourceSpec",
    "StepExecutor",
    "StepFailure",
    "SubprocessCommandRunner",
    "TextCallback",
    "WorkdirLocks",
    "collect_licenses",
    "compute_fingerprint",
    "compute_plan_fingerprints",
    "requested_roots",
    "resolve",
]
