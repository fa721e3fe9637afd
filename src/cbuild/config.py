"""
Run configuration for cbuild.

Precedence: explicit overrides (CLI flags) > environment variables > defaults.

Environment variables:
- CBUILD_HOME:         state directory (default ~/.cbuild)
- CBUILD_BUILD_ROOT:   per-component working directories (default $CBUILD_HOME/build)
- CBUILD_INSTALL_DIR:  embedded install tree (default $CBUILD_HOME/install)
- CBUILD_CACHE:        build cache file (default $CBUILD_HOME/build_cache.json)
- CBUILD_JOBS:         parallel component builds (default min(cpu_count, 8))
- CBUILD_POLICY:       "branch" or "global" failure policy (default "branch")
- CBUILD_DEV_MODE=1:   keep all state under ./.cbuild/dev (isolated from real builds)
"""

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cbuild.engine.models import FailurePolicy

_MAX_DEFAULT_JOBS = 8


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""

    pass


def is_dev_mode(environ: Mapping[str, str] | None = None) -> bool:
    """Check if development mode is enabled."""
    env = os.environ if environ is None else environ
    return env.get("CBUILD_DEV_MODE") == "1"


def default_home(environ: Mapping[str, str] | None = None) -> Path:
    """State directory, respecting CBUILD_HOME and CBUILD_DEV_MODE."""
    env = os.environ if environ is None else environ
    if is_dev_mode(env):
        return Path.cwd() / ".cbuild" / "dev"
    if env.get("CBUILD_HOME"):
        return Path(env["CBUILD_HOME"])
    return Path.home() / ".cbuild"


def default_jobs() -> int:
    return max(1, min(os.cpu_count() or 1, _MAX_DEFAULT_JOBS))


@dataclass(frozen=True)
class BuildConfig:
    """Resolved configuration for one cbuild invocation.

    Attributes:
        build_root: Directory holding one working directory per component
        install_dir: Embedded install tree exposed through PATH and compiler flags
        cache_path: Build cache file
        jobs: Maximum components built in parallel
        policy: Failure policy
        target_platform: Platform the components are built for
        verbose: Verbose output
    """

    build_root: Path
    install_dir: Path
    cache_path: Path
    jobs: int
    policy: FailurePolicy
    target_platform: str
    verbose: bool = False

    @classmethod
    def from_env(cls, overrides: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None) -> "BuildConfig":
        """Build a config from environment variables, then apply non-None overrides.

        Args:
            overrides: Field name -> value (None values are ignored).
            environ: Environment to read; defaults to os.environ.

        Raises:
            ConfigError: If a value can't be parsed.
        """
        env = os.environ if environ is None else environ
        home = default_home(env)

        values: dict[str, Any] = {
            "build_root": Path(env.get("CBUILD_BUILD_ROOT") or home / "build"),
            "install_dir": Path(env.get("CBUILD_INSTALL_DIR") or home / "install"),
            "cache_path": Path(env.get("CBUILD_CACHE") or home / "build_cache.json"),
            "jobs": env.get("CBUILD_JOBS") or default_jobs(),
            "policy": env.get("CBUILD_POLICY") or FailurePolicy.FAIL_FAST_PER_BRANCH,
            "target_platform": sys.platform,
            "verbose": False,
        }
        for key, value in (overrides or {}).items():
            if key not in values:
                raise ConfigError(f"Unknown config field: {key}")
            if value is not None:
                values[key] = value

        try:
            jobs = int(values["jobs"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid job count: {values['jobs']!r}") from e
        if jobs < 1:
            raise ConfigError(f"Job count must be at least 1, got {jobs}")

        policy = values["policy"]
        if not isinstance(policy, FailurePolicy):
            try:
                policy = FailurePolicy(str(policy))
            except ValueError as e:
                choices = ", ".join(p.value for p in FailurePolicy)
                raise ConfigError(f"Invalid failure policy {policy!r} (choose from {choices})") from e

        return cls(
            build_root=Path(values["build_root"]),
            install_dir=Path(values["install_dir"]),
            cache_path=Path(values["cache_path"]),
            jobs=jobs,
            policy=policy,
            target_platform=str(values["target_platform"]),
            verbose=bool(values["verbose"]),
        )
