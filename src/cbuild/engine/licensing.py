"""License manifest for a build plan.

Lists the license of every component in build order. Components declaring
skip_transitive_licensing are flagged so downstream tooling knows the
licenses of their own bundled dependencies (gems, wheels, ...) were not
collected.
"""

from dataclasses import dataclass
from typing import Any

from .models import UNSPECIFIED_LICENSE, ResolvedPlan


@dataclass(frozen=True)
class LicenseRecord:
    name: str
    version: str
    license: str
    reference: str
    transitive_licensing: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "license": self.license,
            "reference": self.reference,
            "transitive_licensing": self.transitive_licensing,
        }


@dataclass(frozen=True)
class LicenseManifest:
    records: tuple[LicenseRecord, ...]

    @property
    def unspecified(self) -> list[LicenseRecord]:
        """Components that declare no license."""
        return [r for r in self.records if r.license == UNSPECIFIED_LICENSE]

    def format(self) -> str:
        lines = []
        for record in self.records:
            line = f"  {record.name} {record.version}: {record.license}"
            if record.reference:
                line += f" <{record.reference}>"
            if not record.transitive_licensing:
                line += " (transitive licensing skipped)"
            lines.append(line)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {"components": [r.to_dict() for r in self.records]}


def collect_licenses(plan: ResolvedPlan) -> LicenseManifest:
    """Build the license manifest of a plan, in plan order."""
    return LicenseManifest(
        tuple(
            LicenseRecord(
                name=c.name,
                version=c.version,
                license=c.license.identifier,
                reference=c.license.reference,
                transitive_licensing=not c.skip_transitive_licensing,
            )
            for c in plan
        )
    )
