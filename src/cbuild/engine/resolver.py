"""Dependency resolver for the component build engine.

Turns a set of requested component names into a ResolvedPlan by depth-first,
post-order traversal of the registry's dependency edges. Each component is
emitted right after all of its dependencies; already-emitted components are
skipped. Independent subtrees are ordered by declaration order so identical
input always yields an identical plan (fingerprints depend on it).
"""

from collections.abc import Iterable

from .models import ResolvedPlan
from .registry import ComponentRegistry


class ResolutionError(Exception):
    """Base class for errors that make a build plan impossible."""

    pass


class CycleError(ResolutionError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        cycle: Component names along the cycle, first name repeated at the end
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Cyclic dependency detected: {' -> '.join(cycle)}")


class MissingDependencyError(ResolutionError):
    """Raised when a dependency (or requested name) is not in the registry.

    Attributes:
        referrer: Component declaring the dependency, None for a requested name
        missing: Name that could not be found
    """

    def __init__(self, referrer: str | None, missing: str) -> None:
        self.referrer = referrer
        self.missing = missing
        if referrer is None:
            message = f"Requested unknown component '{missing}'"
        else:
            message = f"Component '{referrer}' depends on unknown component '{missing}'"
        super().__init__(message)


_WHITE, _GRAY, _BLACK = 0, 1, 2


def requested_roots(requested: Iterable[str], registry: ComponentRegistry) -> list[str]:
    """Order the requested names deterministically.

    Sets carry no order of their own, so their names follow registry
    declaration order, with unknown names last (sorted) so resolution still
    reports them. Other iterables keep the caller's order.
    """
    if not isinstance(requested, (set, frozenset)):
        return list(requested)
    position = {name: index for index, name in enumerate(registry.names)}
    known = sorted((n for n in requested if n in position), key=position.__getitem__)
    unknown = sorted(n for n in requested if n not in position)
    return known + unknown


def resolve(requested: Iterable[str], registry: ComponentRegistry) -> ResolvedPlan:
    """Resolve requested components and their dependencies into a build order.

    Args:
        requested: Component names to build. Sets follow declaration order;
                   other iterables keep the caller's order.
        registry: Registry to resolve names against.

    Returns:
        ResolvedPlan with every dependency ordered before its dependents.

    Raises:
        MissingDependencyError: If a requested or referenced name is unknown.
        CycleError: If the dependencies form a cycle.
    """
    roots = requested_roots(requested, registry)

    color: dict[str, int] = {}
    order = []

    for root in roots:
        if root not in registry:
            raise MissingDependencyError(None, root)
        if color.get(root, _WHITE) != _WHITE:
            continue

        # Iterative DFS: each frame is (name, iterator over its dependencies)
        color[root] = _GRAY
        path = [root]
        stack = [(root, iter(registry.get(root).dependencies))]
        while stack:
            name, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                stack.pop()
                path.pop()
                color[name] = _BLACK
                order.append(registry.get(name))
                continue

            if dep not in registry:
                raise MissingDependencyError(name, dep)
            state = color.get(dep, _WHITE)
            if state == _GRAY:
                # Back edge
                cycle_start = path.index(dep)
                raise CycleError(path[cycle_start:] + [dep])
            if state == _WHITE:
                color[dep] = _GRAY
                path.append(dep)
                stack.append((dep, iter(registry.get(dep).dependencies)))

    return ResolvedPlan(tuple(order))


def transitive_dependencies(name: str, registry: ComponentRegistry) -> list[str]:
    """Return every component `name` depends on, directly or not, in build order."""
    return resolve([name], registry).names[:-1]


def dependents_of(name: str, plan: ResolvedPlan) -> set[str]:
    """Return the names in the plan that depend on `name`, directly or transitively."""
    dependents: set[str] = set()
    for component in plan:
        if any(dep == name or dep in dependents for dep in component.dependencies):
            dependents.add(component.name)
    return dependents
