"""Per-component build environment construction.

The environment a component's steps see is built by applying layers in a
fixed order, later layers shadowing earlier ones on key collision:

    1. base environment   (sanitized copy of the caller's / OS environment)
    2. embedded paths     (install_dir/bin and install_dir/embedded/bin on PATH)
    3. compiler flags     (LDFLAGS, CFLAGS, ... pointing at install_dir/embedded)
    4. component env      (descriptor.env overrides)

Each layer is a pure function from the current mapping to a new dict. Layers
never see build output, and the result is an immutable BuildEnvironment, so
the same inputs always give the same environment.
"""

import ntpath
import os
import posixpath
import sys
from collections.abc import Callable, Mapping

from .models import BuildEnvironment, ComponentDescriptor

EnvLayer = Callable[[Mapping[str, str]], dict[str, str]]

# Minimum macOS release targeted by built artifacts
MACOSX_DEPLOYMENT_TARGET = "10.15"

# Windows/MSYS variables that confuse native tools
_MSYS_STRIP_PREFIXES = ("MSYS", "MINGW", "CHERE", "ORIGINAL_PATH")
_MSYS_STRIP_EXACT = frozenset(
    {
        "SHELL",
        "SHLVL",
        "TERM",
        "TERM_PROGRAM",
        "TERM_PROGRAM_VERSION",
        "TMPDIR",
        "TMP",
        "TEMP",
        "_",
        "!",
        "POSIXLY_CORRECT",
        "EXECIGNORE",
        "HOSTTYPE",
        "MACHTYPE",
        "OSTYPE",
    }
)


def _is_windows(target_platform: str) -> bool:
    return target_platform == "win32"


def _join(target_platform: str, *parts: str) -> str:
    if _is_windows(target_platform):
        return ntpath.join(*parts)
    return posixpath.join(*parts)


def sanitize_base_env(env: Mapping[str, str], target_platform: str) -> dict[str, str]:
    """Return a copy of env, with MSYS/MinGW variables stripped on Windows.

    On Windows, strips variables with MSYS*/MINGW*/CHERE*/ORIGINAL_PATH
    prefixes, shell bookkeeping keys (SHELL, TERM, TMPDIR, ...) and PATH
    entries starting with "/" (MSYS-style paths). Other platforms get an
    unchanged copy.
    """
    result = dict(env)
    if not _is_windows(target_platform):
        return result

    for key in [k for k in result if k.startswith(_MSYS_STRIP_PREFIXES) or k in _MSYS_STRIP_EXACT]:
        result.pop(key, None)

    if "PATH" in result:
        parts = result["PATH"].split(";")
        result["PATH"] = ";".join(p for p in parts if not p.startswith("/"))

    return result


def embedded_path_layer(install_dir: str, target_platform: str) -> EnvLayer:
    """Layer prepending the install tree's bin directories to PATH."""
    separator = ";" if _is_windows(target_platform) else ":"
    prefix = [
        _join(target_platform, install_dir, "bin"),
        _join(target_platform, install_dir, "embedded", "bin"),
    ]

    def apply(env: Mapping[str, str]) -> dict[str, str]:
        result = dict(env)
        existing = env.get("PATH", "")
        result["PATH"] = separator.join(prefix + ([existing] if existing else []))
        return result

    return apply


def standard_compiler_flags(install_dir: str, target_platform: str) -> dict[str, str]:
    """Compiler and linker variables pointing at the embedded install tree."""
    lib_dir = _join(target_platform, install_dir, "embedded", "lib")
    include_dir = _join(target_platform, install_dir, "embedded", "include")
    cflags = f"-I{include_dir} -O2"

    if _is_windows(target_platform):
        ldflags = f"-L{lib_dir}"
    else:
        ldflags = f"-Wl,-rpath,{lib_dir} -L{lib_dir}"

    flags = {
        "LDFLAGS": ldflags,
        "CFLAGS": cflags,
        "CXXFLAGS": cflags,
        "CPPFLAGS": cflags,
        "LD_RUN_PATH": lib_dir,
        "PKG_CONFIG_PATH": _join(target_platform, lib_dir, "pkgconfig"),
        "CBUILD_INSTALL_DIR": install_dir,
    }

    if target_platform == "darwin":
        flags["LDFLAGS"] += " -Wl,-headerpad_max_install_names"
        flags["MACOSX_DEPLOYMENT_TARGET"] = MACOSX_DEPLOYMENT_TARGET
    elif target_platform.startswith("freebsd"):
        flags["CC"] = "clang"
        flags["CXX"] = "clang++"
    elif target_platform.startswith("sunos"):
        flags["LDFLAGS"] += " -static-libgcc"
    elif _is_windows(target_platform):
        flags.pop("LD_RUN_PATH")

    return flags


def compiler_flags_layer(install_dir: str, target_platform: str) -> EnvLayer:
    """Layer applying standard_compiler_flags()."""
    flags = standard_compiler_flags(install_dir, target_platform)

    def apply(env: Mapping[str, str]) -> dict[str, str]:
        result = dict(env)
        result.update(flags)
        return result

    return apply


def component_layer(component: ComponentDescriptor) -> EnvLayer:
    """Layer applying the component's own environment overrides."""

    def apply(env: Mapping[str, str]) -> dict[str, str]:
        result = dict(env)
        result.update(component.env)
        return result

    return apply


class EnvironmentBuilder:
    """Builds the BuildEnvironment for each component.

    Args:
        install_dir: Root of the embedded install tree shared by all components.
        target_platform: Platform the artifacts are built for (sys.platform style).
    """

    def __init__(self, install_dir: str, target_platform: str | None = None) -> None:
        self._install_dir = str(install_dir)
        self._target_platform = target_platform if target_platform is not None else sys.platform

    @property
    def install_dir(self) -> str:
        return self._install_dir

    @property
    def target_platform(self) -> str:
        return self._target_platform

    @property
    def target_key(self) -> str:
        """Identity of the target configuration, part of every cache fingerprint."""
        return f"{self._target_platform}:{self._install_dir}"

    def layers_for(self, component: ComponentDescriptor) -> list[EnvLayer]:
        """Return the layers applied on top of the sanitized base, in order."""
        return [
            embedded_path_layer(self._install_dir, self._target_platform),
            compiler_flags_layer(self._install_dir, self._target_platform),
            component_layer(component),
        ]

    def build(self, component: ComponentDescriptor, base_env: Mapping[str, str] | None = None) -> BuildEnvironment:
        """Build the environment for one component.

        Args:
            component: Component whose steps will run in the environment.
            base_env: Base variables; defaults to the current process environment.

        Returns:
            Immutable BuildEnvironment.
        """
        env = sanitize_base_env(os.environ if base_env is None else base_env, self._target_platform)
        for layer in self.layers_for(component):
            env = layer(env)
        return BuildEnvironment(env)
