"""Unit tests for the dependency resolver."""

import pytest

from cbuild.engine.models import ComponentDescriptor
from cbuild.engine.registry import ComponentRegistry
from cbuild.engine.resolver import (
    CycleError,
    MissingDependencyError,
    ResolutionError,
    dependents_of,
    requested_roots,
    resolve,
    transitive_dependencies,
)


def _make_registry(graph: dict[str, list[str]]) -> ComponentRegistry:
    """Create a registry from a name -> dependency names mapping."""
    return ComponentRegistry(ComponentDescriptor(name=name, dependencies=tuple(deps)) for name, deps in graph.items())


def _assert_topological(names: list[str], registry: ComponentRegistry) -> None:
    for index, name in enumerate(names):
        for dep in registry.get(name).dependencies:
            assert names.index(dep) < index, f"{dep} must come before {name}"


class TestResolveOrder:
    """Plan ordering."""

    def test_single_component(self):
        plan = resolve(["zlib"], _make_registry({"zlib": []}))
        assert plan.names == ["zlib"]

    def test_chain(self):
        registry = _make_registry({"c": ["b"], "b": ["a"], "a": []})
        assert resolve(["c"], registry).names == ["a", "b", "c"]

    def test_license_acceptance_example(self):
        """Dependencies come first, the requested component last."""
        registry = _make_registry(
            {
                "ruby": [],
                "rubygems": ["ruby"],
                "bundler": ["rubygems"],
                "license-acceptance": ["ruby", "rubygems", "bundler"],
            }
        )
        plan = resolve(["license-acceptance"], registry)
        assert plan.names[-1] == "license-acceptance"
        assert set(plan.names[:-1]) == {"ruby", "rubygems", "bundler"}
        _assert_topological(plan.names, registry)

    def test_diamond_includes_shared_dependency_once(self):
        registry = _make_registry({"top": ["left", "right"], "left": ["base"], "right": ["base"], "base": []})
        plan = resolve(["top"], registry)
        assert plan.names.count("base") == 1
        assert plan.names == ["base", "left", "right", "top"]

    def test_only_reachable_components(self):
        registry = _make_registry({"a": [], "b": ["a"], "unrelated": []})
        assert resolve(["b"], registry).names == ["a", "b"]

    def test_multiple_roots_share_dependencies(self):
        registry = _make_registry({"x": ["base"], "y": ["base"], "base": []})
        assert resolve(["x", "y"], registry).names == ["base", "x", "y"]

    def test_sets_follow_declaration_order(self):
        """Sets have no order of their own; declaration order breaks the tie."""
        registry = _make_registry({"zlib": [], "abc": [], "y": []})
        assert resolve({"abc", "zlib"}, registry).names == ["zlib", "abc"]
        assert resolve({"y", "abc", "zlib"}, registry).names == ["zlib", "abc", "y"]
        assert resolve(["abc", "zlib"], registry).names == ["abc", "zlib"]

    def test_set_with_unknown_name_still_fails(self):
        registry = _make_registry({"zlib": []})
        with pytest.raises(MissingDependencyError) as exc_info:
            resolve({"zlib", "libyaml"}, registry)
        assert exc_info.value.missing == "libyaml"

    def test_requested_roots(self):
        registry = _make_registry({"zlib": [], "abc": []})
        assert requested_roots(frozenset({"abc", "zlib", "nope", "extra"}), registry) == ["zlib", "abc", "extra", "nope"]
        assert requested_roots(("abc", "zlib"), registry) == ["abc", "zlib"]

    def test_requested_twice(self):
        registry = _make_registry({"a": []})
        assert resolve(["a", "a"], registry).names == ["a"]

    def test_deep_chain_is_not_recursive(self):
        """Long chains don't hit the recursion limit."""
        graph = {f"c{i}": [f"c{i - 1}"] if i else [] for i in range(3000)}
        plan = resolve(["c2999"], _make_registry(graph))
        assert len(plan) == 3000
        assert plan.names[0] == "c0"


class TestResolveErrors:
    """Cycle and missing dependency detection."""

    def test_missing_requested(self):
        with pytest.raises(MissingDependencyError, match="Requested unknown component 'nope'") as exc_info:
            resolve(["nope"], _make_registry({"a": []}))
        assert exc_info.value.referrer is None
        assert exc_info.value.missing == "nope"

    def test_missing_dependency(self):
        registry = _make_registry({"ruby": ["libyaml"]})
        with pytest.raises(MissingDependencyError, match="Component 'ruby' depends on unknown component 'libyaml'") as exc_info:
            resolve(["ruby"], registry)
        assert exc_info.value.referrer == "ruby"

    def test_two_node_cycle(self):
        registry = _make_registry({"a": ["b"], "b": ["a"]})
        with pytest.raises(CycleError, match="Cyclic dependency detected: a -> b -> a") as exc_info:
            resolve(["a"], registry)
        assert exc_info.value.cycle == ["a", "b", "a"]

    def test_cycle_below_root(self):
        """The reported cycle starts at the repeated component, not the root."""
        registry = _make_registry({"root": ["a"], "a": ["b"], "b": ["c"], "c": ["a"]})
        with pytest.raises(CycleError) as exc_info:
            resolve(["root"], registry)
        assert exc_info.value.cycle == ["a", "b", "c", "a"]

    def test_errors_share_base_class(self):
        assert issubclass(CycleError, ResolutionError)
        assert issubclass(MissingDependencyError, ResolutionError)


class TestGraphHelpers:
    def test_transitive_dependencies(self):
        registry = _make_registry({"c": ["b"], "b": ["a"], "a": []})
        assert transitive_dependencies("c", registry) == ["a", "b"]
        assert transitive_dependencies("a", registry) == []

    def test_dependents_of(self):
        registry = _make_registry({"a": [], "b": ["a"], "c": ["b"], "x": []})
        plan = resolve(["c", "x"], registry)
        assert dependents_of("a", plan) == {"b", "c"}
        assert dependents_of("x", plan) == set()
