"""Ready-set scheduler for the build orchestrator.

Tracks the status of every component of a ResolvedPlan and answers which
components may start: a component is ready when it is PENDING and every
dependency is SUCCEEDED or SKIPPED_CACHED. The plan is already validated by
the resolver (no cycles, no dangling names), so the scheduler only tracks
state.
"""

import threading
from typing import Any

from .models import BuildStatus, ComponentResult, ResolvedPlan


class DependencyScheduler:
    """Schedules components of a plan based on their dependency DAG.

    Thread-safe: worker threads can report completions while the
    orchestrator loop calls get_ready().

    Usage:
        scheduler = DependencyScheduler(plan)
        while not scheduler.all_done():
            for result in scheduler.get_ready():
                scheduler.mark(result.name, BuildStatus.RUNNING)
                pool.submit(...)
    """

    def __init__(self, plan: ResolvedPlan) -> None:
        self._plan = plan
        self._results: dict[str, ComponentResult] = {
            c.name: ComponentResult(name=c.name, version=c.version) for c in plan
        }
        self._lock = threading.Lock()

    def get_ready(self) -> list[ComponentResult]:
        """Return PENDING components whose dependencies all succeeded, in plan order."""
        with self._lock:
            return [
                self._results[c.name]
                for c in self._plan
                if self._results[c.name].status == BuildStatus.PENDING and self._deps_satisfied(c.dependencies)
            ]

    def _deps_satisfied(self, dependencies: tuple[str, ...]) -> bool:
        return all(self._results[dep].status.satisfies_dependents for dep in dependencies)

    def get_blocked(self) -> list[tuple[ComponentResult, str]]:
        """Return PENDING components that have a FAILED or BLOCKED dependency.

        Returns:
            (result, failed component) pairs; the failed component is the root
            cause, followed through chains of blocked components.
        """
        with self._lock:
            blocked = []
            for component in self._plan:
                result = self._results[component.name]
                if result.status != BuildStatus.PENDING:
                    continue
                for dep in component.dependencies:
                    dep_result = self._results[dep]
                    if dep_result.status == BuildStatus.FAILED:
                        blocked.append((result, dep))
                        break
                    if dep_result.status == BuildStatus.BLOCKED:
                        blocked.append((result, dep_result.blocked_by or dep))
                        break
            return blocked

    def mark(self, name: str, status: BuildStatus) -> None:
        """Update a component's status.

        Raises:
            KeyError: If the name isn't part of the plan.
        """
        with self._lock:
            self._get(name).status = status

    def block(self, name: str, failed_dependency: str) -> None:
        """Mark a component BLOCKED by a failed dependency."""
        with self._lock:
            result = self._get(name)
            result.status = BuildStatus.BLOCKED
            result.blocked_by = failed_dependency

    def complete(self, outcome: ComponentResult) -> ComponentResult:
        """Merge an executor outcome into the tracked result.

        Returns:
            The tracked result, now carrying the outcome's status and diagnostics.
        """
        with self._lock:
            result = self._get(outcome.name)
            result.status = outcome.status
            result.working_dir = outcome.working_dir
            result.elapsed = outcome.elapsed
            result.failure = outcome.failure
            result.steps_run = outcome.steps_run
            result.start_time = outcome.start_time
            return result

    def cancel_pending(self) -> list[ComponentResult]:
        """Mark every PENDING component CANCELLED and return them."""
        with self._lock:
            cancelled = []
            for result in self._results.values():
                if result.status == BuildStatus.PENDING:
                    result.status = BuildStatus.CANCELLED
                    cancelled.append(result)
            return cancelled

    def get(self, name: str) -> ComponentResult:
        """Get a component's result.

        Raises:
            KeyError: If the name isn't part of the plan.
        """
        with self._lock:
            return self._get(name)

    def _get(self, name: str) -> ComponentResult:
        if name not in self._results:
            raise KeyError(f"Unknown component: {name}")
        return self._results[name]

    def all_done(self) -> bool:
        """True when every component is in a terminal status."""
        with self._lock:
            return all(r.status.is_terminal for r in self._results.values())

    def has_failed(self) -> bool:
        with self._lock:
            return any(r.status == BuildStatus.FAILED for r in self._results.values())

    def all_results(self) -> list[ComponentResult]:
        """Return all results in plan order."""
        with self._lock:
            return [self._results[c.name] for c in self._plan]

    def to_dict(self) -> dict[str, Any]:
        """Serialize scheduler state to dictionary."""
        with self._lock:
            return {"results": {name: r.to_dict() for name, r in self._results.items()}}
