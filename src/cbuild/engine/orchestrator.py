"""Build orchestrator connecting resolver, cache, environment builder and executor.

Drives a whole build run:
1. Resolve the requested names into a ResolvedPlan (errors abort the run)
2. Fingerprint every component in plan order and load the build cache
3. Repeatedly take ready components from the DependencyScheduler: skip the
   cached ones, submit the rest to a bounded worker pool
4. Record successes in the cache; mark dependents of failures BLOCKED
5. Flush the cache and return a RunResult covering every plan entry

A component starts only after all of its dependencies succeeded or were
cached. Workers never terminate running processes; cancellation only stops
new work from being scheduled.
"""

import logging
import os
import threading
import time
import traceback
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path

from .cache import BuildCache, BuildCacheError
from .callbacks import BuildCallback, NullCallback
from .environment import EnvironmentBuilder
from .executor import StepExecutor
from .fingerprint import compute_plan_fingerprints
from .models import (
    BuildStatus,
    ComponentDescriptor,
    ComponentResult,
    FailurePolicy,
    ResolvedPlan,
    RunResult,
    StepFailure,
)
from .registry import ComponentRegistry
from .resolver import requested_roots, resolve
from .scheduler import DependencyScheduler

logger = logging.getLogger(__name__)

# Seconds to wait for a worker completion before re-checking scheduler state
_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class PlanEntry:
    """One row of a dry-run plan.

    Attributes:
        descriptor: Component descriptor
        fingerprint: Fingerprint for the current target configuration
        cached: True if the cache holds a build with this fingerprint
    """

    descriptor: ComponentDescriptor
    fingerprint: str
    cached: bool


class BuildOrchestrator:
    """Runs dependency-ordered, cached builds of registry components.

    Args:
        cache: Build cache store (loaded and flushed by each run).
        environment_builder: Builds each component's environment.
        executor: Runs each component's steps.
        build_root: Directory holding one working directory per component.
        max_workers: Maximum components built concurrently.
        policy: Reaction to component failures.
        callback: Receives status updates.
    """

    def __init__(
        self,
        cache: BuildCache,
        environment_builder: EnvironmentBuilder,
        executor: StepExecutor,
        build_root: Path,
        max_workers: int = 1,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST_PER_BRANCH,
        callback: BuildCallback | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self._cache = cache
        self._environment_builder = environment_builder
        self._executor = executor
        self._build_root = Path(build_root)
        self._max_workers = max_workers
        self._policy = policy
        self._callback: BuildCallback = callback if callback is not None else NullCallback()
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def policy(self) -> FailurePolicy:
        return self._policy

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def working_dir_for(self, descriptor: ComponentDescriptor) -> Path:
        """Scoped working directory of a component."""
        return self._build_root / descriptor.name

    def cancel(self) -> None:
        """Stop scheduling new components. Thread-safe.

        Components already running finish normally; everything not yet
        started is reported CANCELLED (or BLOCKED behind a failure).
        """
        with self._lock:
            self._cancelled = True

    def _is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def plan(self, requested: Iterable[str], registry: ComponentRegistry) -> list[PlanEntry]:
        """Resolve and fingerprint without building anything.

        Raises:
            ResolutionError: If the requested components can't be resolved.
        """
        plan = resolve(requested, registry)
        fingerprints = compute_plan_fingerprints(plan, self._environment_builder.target_key)
        if not self._cache.loaded:
            self._cache.load()
        return [
            PlanEntry(descriptor=d, fingerprint=fingerprints[d.name], cached=not self._cache.should_build(d, fingerprints[d.name]))
            for d in plan
        ]

    def run(
        self,
        requested: Iterable[str],
        registry: ComponentRegistry,
        base_env: Mapping[str, str] | None = None,
    ) -> RunResult:
        """Build the requested components and everything they depend on.

        Args:
            requested: Component names to build.
            registry: Registry holding all descriptors.
            base_env: Base environment for every component; defaults to os.environ.

        Returns:
            RunResult with one entry per plan component.

        Raises:
            ResolutionError: (CycleError, MissingDependencyError) before any step runs.
        """
        start_time = time.monotonic()
        with self._lock:
            self._cancelled = False

        roots = requested_roots(requested, registry)
        plan = resolve(roots, registry)
        fingerprints = compute_plan_fingerprints(plan, self._environment_builder.target_key)
        base = dict(os.environ if base_env is None else base_env)

        self._cache.load()
        scheduler = DependencyScheduler(plan)
        for name, fingerprint in fingerprints.items():
            scheduler.get(name).fingerprint = fingerprint

        logger.debug("Build plan: %s", " -> ".join(plan.names))
        try:
            self._schedule(plan, scheduler, fingerprints, base)
        finally:
            self._flush_cache()

        return RunResult(
            results=scheduler.all_results(),
            total_elapsed=time.monotonic() - start_time,
            requested=tuple(roots),
        )

    def _schedule(
        self,
        plan: ResolvedPlan,
        scheduler: DependencyScheduler,
        fingerprints: dict[str, str],
        base_env: dict[str, str],
    ) -> None:
        active_futures: dict[Future[ComponentResult], str] = {}
        stopping = False

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="build") as pool:
            try:
                while not scheduler.all_done():
                    if not stopping and self._should_stop(scheduler):
                        stopping = True

                    self._block_dependents(scheduler)

                    if stopping:
                        for result in scheduler.cancel_pending():
                            self._callback.on_status(result.name, BuildStatus.CANCELLED, "Not started")
                    else:
                        for result in scheduler.get_ready():
                            descriptor = plan.get(result.name)
                            fingerprint = fingerprints[result.name]
                            if not self._cache.should_build(descriptor, fingerprint):
                                scheduler.mark(result.name, BuildStatus.SKIPPED_CACHED)
                                self._callback.on_status(result.name, BuildStatus.SKIPPED_CACHED, "Up to date")
                                continue
                            scheduler.mark(result.name, BuildStatus.RUNNING)
                            self._callback.on_status(result.name, BuildStatus.RUNNING, "Building")
                            future = pool.submit(self._build_component, descriptor, base_env)
                            active_futures[future] = result.name

                    if active_futures:
                        done, _ = wait(list(active_futures), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                        for future in done:
                            name = active_futures.pop(future)
                            self._complete(future, plan.get(name), fingerprints[name], scheduler)

            except KeyboardInterrupt:
                for future in active_futures:
                    future.cancel()
                for result in scheduler.cancel_pending():
                    self._callback.on_status(result.name, BuildStatus.CANCELLED, "Interrupted by user")
                raise

    def _should_stop(self, scheduler: DependencyScheduler) -> bool:
        if self._is_cancelled():
            return True
        return self._policy == FailurePolicy.FAIL_FAST_GLOBAL and scheduler.has_failed()

    def _block_dependents(self, scheduler: DependencyScheduler) -> None:
        """Mark components BLOCKED behind failures, following chains until stable."""
        while True:
            blocked = scheduler.get_blocked()
            if not blocked:
                return
            for result, failed_dep in blocked:
                scheduler.block(result.name, failed_dep)
                self._callback.on_status(result.name, BuildStatus.BLOCKED, f"Dependency '{failed_dep}' failed")

    def _build_component(self, descriptor: ComponentDescriptor, base_env: dict[str, str]) -> ComponentResult:
        """Worker body: build the environment and execute the component's steps."""
        env = self._environment_builder.build(descriptor, base_env)
        return self._executor.run(descriptor, env, self.working_dir_for(descriptor))

    def _complete(
        self,
        future: Future[ComponentResult],
        descriptor: ComponentDescriptor,
        fingerprint: str,
        scheduler: DependencyScheduler,
    ) -> None:
        try:
            outcome = future.result()
        except KeyboardInterrupt:
            raise
        except Exception as e:
            # Unexpected engine error inside the worker; contain it to this component
            outcome = ComponentResult(name=descriptor.name, version=descriptor.version)
            outcome.fail(
                StepFailure(
                    StepFailure.STEP,
                    step_index=-1,
                    command="<engine>",
                    stderr="".join(traceback.format_exception(type(e), e, e.__traceback__)),
                    message=f"{type(e).__name__}: {e}",
                )
            )

        result = scheduler.complete(outcome)
        if result.status == BuildStatus.SUCCEEDED:
            self._cache.record_success(descriptor, fingerprint)
            self._callback.on_status(result.name, BuildStatus.SUCCEEDED, f"Built in {result.elapsed:.1f}s")
        else:
            detail = result.failure.message if result.failure else "Failed"
            logger.debug("Component %s failed: %s", result.name, detail)
            self._callback.on_status(result.name, BuildStatus.FAILED, detail)

    def _flush_cache(self) -> None:
        try:
            self._cache.flush()
        except BuildCacheError as e:
            logger.warning("%s", e)
