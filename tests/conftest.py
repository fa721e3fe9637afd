"""Pytest configuration and fixtures for cbuild tests.

This conftest addresses Python 3.13 compatibility issues with pytest's capture fixtures.
Python 3.13 changed how stdout/stderr are handled, causing "I/O operation on closed file"
errors during test teardown. This is a known issue: https://github.com/pytest-dev/pytest/issues/11439
"""

import sys
import warnings
from io import StringIO

import pytest

from cbuild import output

# Suppress ResourceWarnings from file cleanup in Python 3.13
if sys.version_info >= (3, 13):
    warnings.filterwarnings("ignore", category=ResourceWarning)


@pytest.fixture(autouse=True)
def _restore_stdio():  # noqa: PT004
    """Ensure stdout/stderr are always restored after each test.

    This prevents "I/O operation on closed file" errors in Python 3.13
    when tests raise exceptions that close stdout/stderr.
    """
    yield

    # Restore if they were closed during the test
    if sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if sys.stderr.closed:
        sys.stderr = sys.__stderr__


@pytest.fixture
def captured_output():
    """Redirect cbuild.output to a StringIO for the duration of a test."""
    stream = StringIO()
    output.init_timer(stream)
    output.set_verbose(True)
    yield stream
    output.init_timer(sys.__stdout__)
    output.set_verbose(True)
    output.set_output_file(None)


@pytest.fixture
def clean_cbuild_env(monkeypatch, tmp_path):
    """Remove CBUILD_* variables and point CBUILD_HOME at a temp directory."""
    for key in ("CBUILD_HOME", "CBUILD_BUILD_ROOT", "CBUILD_INSTALL_DIR", "CBUILD_CACHE", "CBUILD_JOBS", "CBUILD_POLICY", "CBUILD_DEV_MODE"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CBUILD_HOME", str(tmp_path / "home"))
    return tmp_path / "home"


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_call(item):  # noqa: ARG001
    """Wrap test execution to handle stdout/stderr closure gracefully."""
    yield

    # After test execution, ensure streams aren't closed
    if hasattr(sys.stdout, "closed") and sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if hasattr(sys.stderr, "closed") and sys.stderr.closed:
        sys.stderr = sys.__stderr__


@pytest.hookimpl(hookwrapper=True, trylast=True)
def pytest_runtest_teardown(item):  # noqa: ARG001
    """Ensure streams are restored during teardown phase."""
    yield

    # Final restoration after teardown
    if hasattr(sys.stdout, "closed") and sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if hasattr(sys.stderr, "closed") and sys.stderr.closed:
        sys.stderr = sys.__stderr__
