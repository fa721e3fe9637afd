"""
Centralized console output for cbuild.

All user-facing output is prefixed with the elapsed time since program launch
in MM:SS.cc format (minutes:seconds.centiseconds), which makes it easy to see
where a long build spends its time.

Example output:
    00:00.01 cbuild v0.3.0
    00:00.02 [1/3] Resolving license-acceptance...
    00:00.03       Plan: ruby -> rubygems -> bundler -> license-acceptance
    00:41.77 [2/3] Building 4 components...

Usage:
    from cbuild.output import log, log_phase, log_detail

    log_phase(1, 3, "Resolving...")
    log_detail("Plan: zlib -> openssl")
"""

import sys
import time
from typing import Optional, TextIO

# Global state for the timer
_start_time: Optional[float] = None
_output_stream: TextIO = sys.stdout
_verbose: bool = True
_output_file: Optional[TextIO] = None


def init_timer(output_stream: Optional[TextIO] = None) -> None:
    """
    Initialize the program timer.

    Called automatically on first log if not called explicitly.

    Args:
        output_stream: Optional output stream (defaults to sys.stdout)
    """
    global _start_time, _output_stream
    _start_time = time.time()
    if output_stream is not None:
        _output_stream = output_stream


def set_verbose(verbose: bool) -> None:
    """
    Set verbose mode.

    Args:
        verbose: If False, messages logged with verbose_only=True are dropped.
    """
    global _verbose
    _verbose = verbose


def set_output_file(output_file: Optional[TextIO]) -> None:
    """
    Set a file to receive all log output (in addition to the output stream).

    Args:
        output_file: File object to receive output, or None to disable file output
    """
    global _output_file
    _output_file = output_file


def get_elapsed() -> float:
    """Elapsed seconds since timer initialization."""
    if _start_time is None:
        init_timer()
    return time.time() - _start_time  # type: ignore


def format_timestamp() -> str:
    """Format the current elapsed time as MM:SS.cc."""
    elapsed = get_elapsed()
    minutes = int(elapsed // 60)
    seconds = elapsed % 60
    return f"{minutes:02d}:{seconds:05.2f}"


def _print(message: str) -> None:
    line = f"{format_timestamp()} {message}\n"
    _output_stream.write(line)
    _output_stream.flush()

    if _output_file is not None:
        _output_file.write(line)
        _output_file.flush()


def log(message: str, verbose_only: bool = False) -> None:
    """
    Log a message with timestamp.

    Args:
        message: Message to log
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(message)


def log_phase(phase: int, total: int, message: str, verbose_only: bool = False) -> None:
    """
    Log a run phase message as "[N/M] message".
    """
    if verbose_only and not _verbose:
        return
    _print(f"[{phase}/{total}] {message}")


def log_detail(message: str, indent: int = 6, verbose_only: bool = False) -> None:
    """
    Log an indented detail message.
    """
    if verbose_only and not _verbose:
        return
    _print(f"{' ' * indent}{message}")


def log_header(title: str, version: str) -> None:
    """Log the program header."""
    _print(f"{title} v{version}")


def log_block(text: str, verbose_only: bool = False) -> None:
    """Log a multi-line block, one timestamped line per input line."""
    if verbose_only and not _verbose:
        return
    for line in text.splitlines():
        _print(line)


def log_build_complete(build_time: float, success: bool) -> None:
    """Log the run completion line."""
    _print("")
    _print(f"Build {'succeeded' if success else 'FAILED'} in {build_time:.2f}s")


def log_error(message: str) -> None:
    _print(f"ERROR: {message}")


def log_warning(message: str) -> None:
    _print(f"WARNING: {message}")
