"""
Command-line interface for cbuild.

This module provides the `cbuild` CLI tool for building component stacks
described in a JSON descriptor file.

Exit codes:
    0: success
    1: build failure (a component failed, was blocked or was cancelled)
    2: descriptor, configuration or resolution error
"""

import argparse
import json
import logging
import sys
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cbuild import __version__
from cbuild.config import BuildConfig, ConfigError
from cbuild.descriptors import load_registry
from cbuild.engine import (
    BuildCache,
    BuildCacheError,
    ComponentBuilder,
    DescriptorError,
    ResolutionError,
    collect_licenses,
    resolve,
)
from cbuild.engine.fingerprint import short_fingerprint
from cbuild.output import (
    log,
    log_block,
    log_build_complete,
    log_detail,
    log_error,
    log_header,
    log_phase,
    set_verbose,
)

EXIT_SUCCESS = 0
EXIT_BUILD_FAILED = 1
EXIT_USAGE_ERROR = 2
EXIT_INTERRUPTED = 130


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    names: list[str]
    descriptor_file: Path
    jobs: Optional[int] = None
    policy: Optional[str] = None
    build_root: Optional[Path] = None
    install_dir: Optional[Path] = None
    no_tui: bool = False
    verbose: bool = False
    json: bool = False


@dataclass
class PlanArgs:
    """Arguments for the plan command."""

    names: list[str]
    descriptor_file: Path
    build_root: Optional[Path] = None
    install_dir: Optional[Path] = None
    verbose: bool = False


@dataclass
class LicensesArgs:
    """Arguments for the licenses command."""

    names: list[str]
    descriptor_file: Path
    json: bool = False
    verbose: bool = False


@dataclass
class PurgeArgs:
    """Arguments for the purge command."""

    names: list[str] = field(default_factory=list)
    verbose: bool = False


def _make_config(**overrides: object) -> BuildConfig:
    return BuildConfig.from_env(overrides)


def _make_builder(config: BuildConfig) -> ComponentBuilder:
    return ComponentBuilder(
        build_root=config.build_root,
        install_dir=config.install_dir,
        cache_path=config.cache_path,
        max_workers=config.jobs,
        policy=config.policy,
        target_platform=config.target_platform,
    )


def build_command(args: BuildArgs) -> int:
    """Build components and everything they depend on.

    Examples:
        cbuild build ruby -f stack.json                 # Build ruby and its dependencies
        cbuild build ruby bundler -f stack.json -j 4    # Four components in parallel
        cbuild build ruby -f stack.json --policy global # Stop everything on first failure
        cbuild build ruby -f stack.json --json          # Machine-readable report
    """
    try:
        config = _make_config(
            jobs=args.jobs,
            policy=args.policy,
            build_root=args.build_root,
            install_dir=args.install_dir,
            verbose=args.verbose,
        )

        if args.json:
            registry = load_registry(args.descriptor_file)
            builder = _make_builder(config)
            result = builder.orchestrator().run(args.names, registry)
            print(json.dumps(result.to_dict(), indent=2))
            return result.exit_code

        log_header("cbuild", __version__)
        log_phase(1, 3, f"Loading {args.descriptor_file}...")
        registry = load_registry(args.descriptor_file)
        log_detail(f"{len(registry)} components defined", verbose_only=True)

        log_phase(2, 3, f"Resolving {', '.join(args.names)}...")
        plan = resolve(args.names, registry)
        log_detail(f"Plan: {' -> '.join(plan.names)}")

        log_phase(3, 3, f"Building {len(plan)} components ({config.jobs} jobs, {config.policy.value} policy)...")
        builder = _make_builder(config)
        result = builder.build(args.names, registry, verbose=args.verbose, use_tui=False if args.no_tui else None)

        log("")
        log_block(result.format_report())
        log_build_complete(result.total_elapsed, result.success)
        return result.exit_code

    except (DescriptorError, ConfigError, ResolutionError) as e:
        log_error(str(e))
        return EXIT_USAGE_ERROR

    except KeyboardInterrupt:
        log_error("Build interrupted by user")
        return EXIT_INTERRUPTED

    except Exception as e:
        return _unexpected_error(e, args.verbose)


def plan_command(args: PlanArgs) -> int:
    """Print the resolved build order with fingerprints and cache state.

    Examples:
        cbuild plan ruby -f stack.json
    """
    try:
        config = _make_config(build_root=args.build_root, install_dir=args.install_dir, verbose=args.verbose)
        registry = load_registry(args.descriptor_file)
        entries = _make_builder(config).orchestrator().plan(args.names, registry)

        log_header("cbuild", __version__)
        for index, entry in enumerate(entries, start=1):
            state = "cached" if entry.cached else "build"
            log(f"  {index:>3}. {entry.descriptor.name} {entry.descriptor.version}  {short_fingerprint(entry.fingerprint)}  [{state}]")
        pending = sum(1 for e in entries if not e.cached)
        log(f"{len(entries)} components, {pending} to build")
        return EXIT_SUCCESS

    except (DescriptorError, ConfigError, ResolutionError) as e:
        log_error(str(e))
        return EXIT_USAGE_ERROR

    except Exception as e:
        return _unexpected_error(e, args.verbose)


def licenses_command(args: LicensesArgs) -> int:
    """Print the license manifest of the requested components and their dependencies.

    Examples:
        cbuild licenses license-acceptance -f stack.json
        cbuild licenses ruby -f stack.json --json
    """
    try:
        registry = load_registry(args.descriptor_file)
        manifest = collect_licenses(resolve(args.names, registry))

        if args.json:
            print(json.dumps(manifest.to_dict(), indent=2))
            return EXIT_SUCCESS

        log_header("cbuild", __version__)
        log_block(manifest.format())
        unspecified = manifest.unspecified
        if unspecified:
            log(f"{len(unspecified)} components declare no license: {', '.join(r.name for r in unspecified)}")
        return EXIT_SUCCESS

    except (DescriptorError, ResolutionError) as e:
        log_error(str(e))
        return EXIT_USAGE_ERROR

    except Exception as e:
        return _unexpected_error(e, args.verbose)


def purge_command(args: PurgeArgs) -> int:
    """Drop build cache entries so the components rebuild on the next run.

    Examples:
        cbuild purge              # Forget every cached build
        cbuild purge openssl      # Forget openssl only
    """
    try:
        config = _make_config(verbose=args.verbose)
        cache = BuildCache(config.cache_path)
        cache.load()

        if args.names:
            for name in args.names:
                if cache.invalidate(name):
                    log(f"Purged {name}")
                else:
                    log(f"{name} is not cached")
        else:
            count = cache.clear()
            log(f"Purged {count} cache entries")

        cache.flush()
        return EXIT_SUCCESS

    except ConfigError as e:
        log_error(str(e))
        return EXIT_USAGE_ERROR

    except BuildCacheError as e:
        log_error(str(e))
        return EXIT_BUILD_FAILED

    except Exception as e:
        return _unexpected_error(e, args.verbose)


def _unexpected_error(e: Exception, verbose: bool) -> int:
    log_error(f"Unexpected error: {type(e).__name__}: {e}")
    if verbose:
        log_block(traceback.format_exc())
    return EXIT_BUILD_FAILED


def _add_descriptor_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "names",
        nargs="+",
        help="Component names to process",
    )
    parser.add_argument(
        "-f",
        "--file",
        dest="descriptor_file",
        type=Path,
        required=True,
        help="JSON descriptor file",
    )


def _add_dir_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--build-root",
        type=Path,
        default=None,
        help="Working directory root (default: $CBUILD_BUILD_ROOT or ~/.cbuild/build)",
    )
    parser.add_argument(
        "--install-dir",
        type=Path,
        default=None,
        help="Embedded install tree (default: $CBUILD_INSTALL_DIR or ~/.cbuild/install)",
    )


def _add_verbose_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cbuild",
        description="cbuild - dependency-ordered, cached component builds",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"cbuild {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Build command
    build_parser = subparsers.add_parser(
        "build",
        help="Build components and their dependencies",
    )
    _add_descriptor_args(build_parser)
    build_parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Components built in parallel (default: $CBUILD_JOBS or CPU count, max 8)",
    )
    build_parser.add_argument(
        "--policy",
        choices=["branch", "global"],
        default=None,
        help="Failure policy: stop only the failed branch, or everything (default: branch)",
    )
    _add_dir_args(build_parser)
    build_parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Disable the live progress table",
    )
    build_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run report as JSON",
    )
    _add_verbose_arg(build_parser)

    # Plan command
    plan_parser = subparsers.add_parser(
        "plan",
        help="Show the build order, fingerprints and cache state",
    )
    _add_descriptor_args(plan_parser)
    _add_dir_args(plan_parser)
    _add_verbose_arg(plan_parser)

    # Licenses command
    licenses_parser = subparsers.add_parser(
        "licenses",
        help="Show the license manifest",
    )
    _add_descriptor_args(licenses_parser)
    licenses_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the manifest as JSON",
    )
    _add_verbose_arg(licenses_parser)

    # Purge command
    purge_parser = subparsers.add_parser(
        "purge",
        help="Drop build cache entries",
    )
    purge_parser.add_argument(
        "names",
        nargs="*",
        help="Components to purge (default: all)",
    )
    _add_verbose_arg(purge_parser)

    return parser


def run(argv: Optional[list[str]] = None) -> int:
    """Parse arguments and dispatch to a command. Returns the exit code."""
    parser = create_parser()
    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        return EXIT_SUCCESS

    set_verbose(parsed_args.verbose)
    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if parsed_args.command == "build":
        return build_command(
            BuildArgs(
                names=parsed_args.names,
                descriptor_file=parsed_args.descriptor_file,
                jobs=parsed_args.jobs,
                policy=parsed_args.policy,
                build_root=parsed_args.build_root,
                install_dir=parsed_args.install_dir,
                no_tui=parsed_args.no_tui,
                verbose=parsed_args.verbose,
                json=parsed_args.json,
            )
        )
    if parsed_args.command == "plan":
        return plan_command(
            PlanArgs(
                names=parsed_args.names,
                descriptor_file=parsed_args.descriptor_file,
                build_root=parsed_args.build_root,
                install_dir=parsed_args.install_dir,
                verbose=parsed_args.verbose,
            )
        )
    if parsed_args.command == "licenses":
        return licenses_command(
            LicensesArgs(
                names=parsed_args.names,
                descriptor_file=parsed_args.descriptor_file,
                json=parsed_args.json,
                verbose=parsed_args.verbose,
            )
        )
    return purge_command(PurgeArgs(names=parsed_args.names, verbose=parsed_args.verbose))


def main() -> None:
    """cbuild - dependency-ordered, cached component builds."""
    sys.exit(run())


if __name__ == "__main__":
    main()
