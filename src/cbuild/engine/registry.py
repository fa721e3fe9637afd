"""Component registry: the arena of known component descriptors.

Descriptors are stored by name; dependency edges are plain name references
resolved against the registry at plan time, never live object references.
"""

from collections.abc import Iterable, Iterator

from .models import ComponentDescriptor


class DuplicateComponentError(ValueError):
    """Raised when two descriptors share a name."""

    pass


class ComponentRegistry:
    """Name -> ComponentDescriptor mapping, preserving registration order.

    The registry is populated up front and only read afterwards, so the
    orchestrator's worker threads read it without locking.

    Usage:
        registry = ComponentRegistry()
        registry.register(ComponentDescriptor(name="zlib"))
        registry.register(ComponentDescriptor(name="openssl", dependencies=("zlib",)))
        plan = resolve(["openssl"], registry)
    """

    def __init__(self, descriptors: Iterable[ComponentDescriptor] = ()) -> None:
        self._components: dict[str, ComponentDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ComponentDescriptor) -> None:
        """Add a descriptor.

        Raises:
            DuplicateComponentError: If a component with the same name exists.
        """
        if descriptor.name in self._components:
            raise DuplicateComponentError(f"Duplicate component name: {descriptor.name}")
        self._components[descriptor.name] = descriptor

    def get(self, name: str) -> ComponentDescriptor:
        """Get a descriptor by name.

        Raises:
            KeyError: If the name is not registered.
        """
        if name not in self._components:
            raise KeyError(f"Unknown component: {name}")
        return self._components[name]

    def adjacency(self) -> dict[str, tuple[str, ...]]:
        """Return the dependency edges as name -> dependency names."""
        return {name: d.dependencies for name, d in self._components.items()}

    @property
    def names(self) -> list[str]:
        return list(self._components)

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def __iter__(self) -> Iterator[ComponentDescriptor]:
        return iter(self._components.values())

    def __len__(self) -> int:
        return len(self._components)
