"""Content fingerprints used as build cache keys.

A component's fingerprint covers its normalized descriptor, the fingerprints
of its direct dependencies (which in turn cover theirs) and the target
configuration. Changing any field of any transitive dependency therefore
changes the fingerprint of every dependent.
"""

import hashlib
import json
from collections.abc import Sequence

from .models import ComponentDescriptor, ResolvedPlan


def _canonical_json(data: object) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_fingerprint(
    descriptor: ComponentDescriptor,
    dependency_fingerprints: Sequence[str],
    target_key: str = "",
) -> str:
    """Compute the fingerprint of one component.

    Args:
        descriptor: Component descriptor.
        dependency_fingerprints: Fingerprints of descriptor.dependencies, in
                                 declaration order.
        target_key: Identity of the target configuration (platform, install dir).

    Returns:
        Hexadecimal SHA256 string.

    Raises:
        ValueError: If the number of dependency fingerprints doesn't match.
    """
    if len(dependency_fingerprints) != len(descriptor.dependencies):
        raise ValueError(
            f"Component '{descriptor.name}' has {len(descriptor.dependencies)} dependencies "
            f"but {len(dependency_fingerprints)} fingerprints were given"
        )

    hasher = hashlib.sha256()
    hasher.update(_canonical_json(descriptor.to_dict()))
    hasher.update(b"\x00")
    for dep_name, dep_fingerprint in zip(descriptor.dependencies, dependency_fingerprints):
        hasher.update(dep_name.encode("utf-8"))
        hasher.update(b"=")
        hasher.update(dep_fingerprint.encode("ascii"))
        hasher.update(b"\x00")
    hasher.update(target_key.encode("utf-8"))
    return hasher.hexdigest()


def compute_plan_fingerprints(plan: ResolvedPlan, target_key: str = "") -> dict[str, str]:
    """Compute fingerprints for every component of a plan.

    Plan order guarantees dependencies are fingerprinted before dependents.

    Returns:
        Mapping of component name to fingerprint.
    """
    fingerprints: dict[str, str] = {}
    for descriptor in plan:
        fingerprints[descriptor.name] = compute_fingerprint(
            descriptor,
            [fingerprints[dep] for dep in descriptor.dependencies],
            target_key,
        )
    return fingerprints


def short_fingerprint(fingerprint: str, length: int = 12) -> str:
    """Abbreviated fingerprint for display."""
    return fingerprint[:length]
