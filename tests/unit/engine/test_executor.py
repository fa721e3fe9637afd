"""Unit tests for the step executor.

Most tests use a recording fake CommandRunner and SourceFetcher; the
TestSubprocessCommandRunner class runs real processes via sys.executable.
"""

import sys
import threading
from pathlib import Path

import pytest

from cbuild.engine.executor import (
    EXIT_COMMAND_NOT_FOUND,
    EXIT_TIMEOUT,
    PROJECT_SUBDIR,
    CommandResult,
    CommandRunner,
    StepExecutor,
    SubprocessCommandRunner,
    WorkdirLocks,
    effective_steps,
)
from cbuild.engine.fetchers import SourceFetchError
from cbuild.engine.models import (
    BuildEnvironment,
    BuildStatus,
    ComponentDescriptor,
    EnvOverride,
    RunCommand,
    SourceFetch,
    SourceSpec,
    StepFailure,
)

BASE_ENV = BuildEnvironment({"PATH": "/usr/bin", "CBUILD_INSTALL_DIR": "/opt/stack"})


class FakeRunner:
    """Records every command; exit codes are looked up by command display string."""

    def __init__(self, exit_codes: dict[str, int] | None = None, locks: WorkdirLocks | None = None) -> None:
        self.calls: list[tuple[str | tuple[str, ...], Path, dict[str, str]]] = []
        self.exit_codes = exit_codes or {}
        self.locks = locks
        self.lock_held: list[bool] = []

    def run(self, command, cwd, env, timeout=None):
        self.calls.append((command, cwd, dict(env)))
        if self.locks is not None:
            self.lock_held.append(self.locks.is_held(cwd.parent))
        key = command if isinstance(command, str) else " ".join(command)
        code = self.exit_codes.get(key, 0)
        return CommandResult(code, stdout=f"out of {key}", stderr="boom" if code else "")


class FakeFetcher:
    """Creates the given sub-directories in dest, or raises."""

    def __init__(self, subdirs: tuple[str, ...] = (), error: Exception | None = None) -> None:
        self.subdirs = subdirs
        self.error = error
        self.calls: list[tuple[SourceSpec, Path, str]] = []

    def fetch(self, source, dest, version):
        self.calls.append((source, dest, version))
        if self.error is not None:
            raise self.error
        dest.mkdir(parents=True, exist_ok=True)
        for sub in self.subdirs:
            (dest / sub).mkdir(parents=True, exist_ok=True)


def _commands(runner: FakeRunner) -> list[str]:
    return [c if isinstance(c, str) else " ".join(c) for c, _, _ in runner.calls]


class TestEffectiveSteps:
    def test_implicit_fetch_prepended(self):
        component = ComponentDescriptor(name="ruby", source=SourceSpec.git("ruby.git"), steps=(RunCommand("make"),))
        assert effective_steps(component) == (SourceFetch(), RunCommand("make"))

    def test_explicit_fetch_not_duplicated(self):
        steps = (RunCommand("prep"), SourceFetch(), RunCommand("make"))
        component = ComponentDescriptor(name="ruby", source=SourceSpec.git("ruby.git"), steps=steps)
        assert effective_steps(component) == steps

    def test_no_source_no_fetch(self):
        component = ComponentDescriptor(name="meta", steps=(RunCommand("true"),))
        assert effective_steps(component) == (RunCommand("true"),)


class TestStepOrdering:
    """Steps run in order; the first failure aborts the rest."""

    def test_all_steps_succeed(self, tmp_path):
        runner = FakeRunner()
        fetcher = FakeFetcher()
        component = ComponentDescriptor(
            name="license-acceptance",
            source=SourceSpec.git("git@github.com:chef/license-acceptance.git"),
            steps=(RunCommand("bundle install"), RunCommand("gem build x.gemspec"), RunCommand("gem install x.gem")),
        )
        result = StepExecutor(runner, fetcher).run(component, BASE_ENV, tmp_path / "la")

        assert result.status == BuildStatus.SUCCEEDED
        assert result.failure is None
        assert result.steps_run == 4
        assert len(fetcher.calls) == 1
        assert _commands(runner) == ["bundle install", "gem build x.gemspec", "gem install x.gem"]

    def test_failure_aborts_remaining_steps(self, tmp_path):
        runner = FakeRunner({"make": 2})
        component = ComponentDescriptor(name="zlib", steps=(RunCommand("./configure"), RunCommand("make"), RunCommand("make install")))
        result = StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "zlib")

        assert result.status == BuildStatus.FAILED
        assert _commands(runner) == ["./configure", "make"]
        assert result.steps_run == 1
        failure = result.failure
        assert failure.kind == StepFailure.STEP
        assert failure.step_index == 1
        assert failure.command == "make"
        assert failure.exit_code == 2
        assert failure.stdout == "out of make"
        assert failure.stderr == "boom"

    def test_step_index_counts_implicit_fetch(self, tmp_path):
        runner = FakeRunner({"make": 1})
        component = ComponentDescriptor(name="zlib", source=SourceSpec.path("/src/zlib"), steps=(RunCommand("make"),))
        result = StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "zlib")
        assert result.failure.step_index == 1


class TestSourceFetch:
    """Source acquisition failures are reported separately."""

    def test_fetch_error_is_source_fetch_failure(self, tmp_path):
        runner = FakeRunner()
        fetcher = FakeFetcher(error=SourceFetchError("git clone failed (128): repository not found"))
        component = ComponentDescriptor(name="ruby", source=SourceSpec.git("ruby.git"), steps=(RunCommand("make"),))

        result = StepExecutor(runner, fetcher).run(component, BASE_ENV, tmp_path / "ruby")

        assert result.status == BuildStatus.FAILED
        assert result.failure.kind == StepFailure.SOURCE_FETCH
        assert result.failure.step_index == 0
        assert "repository not found" in result.failure.message
        assert runner.calls == []

    def test_unexpected_fetch_error_is_contained(self, tmp_path):
        fetcher = FakeFetcher(error=RuntimeError("disk on fire"))
        component = ComponentDescriptor(name="ruby", source=SourceSpec.git("ruby.git"))
        result = StepExecutor(FakeRunner(), fetcher).run(component, BASE_ENV, tmp_path / "ruby")
        assert result.failure.kind == StepFailure.SOURCE_FETCH
        assert "RuntimeError: disk on fire" in result.failure.message

    def test_explicit_fetch_without_any_source(self, tmp_path):
        component = ComponentDescriptor(name="meta", steps=(SourceFetch(),))
        result = StepExecutor(FakeRunner(), FakeFetcher()).run(component, BASE_ENV, tmp_path / "meta")
        assert result.failure.kind == StepFailure.SOURCE_FETCH
        assert "declares no source" in result.failure.message

    def test_fetch_gets_version_and_project_dir(self, tmp_path):
        fetcher = FakeFetcher()
        component = ComponentDescriptor(name="openssl", version="3.0.13", source=SourceSpec.url("https://x/openssl-{version}.tar.gz"))
        StepExecutor(FakeRunner(), fetcher).run(component, BASE_ENV, tmp_path / "openssl")
        source, dest, version = fetcher.calls[0]
        assert version == "3.0.13"
        assert dest == (tmp_path / "openssl").resolve() / PROJECT_SUBDIR


class TestWorkingDirectory:
    """cwd resolution and the scoped working directory."""

    def test_default_cwd_is_project_dir(self, tmp_path):
        runner = FakeRunner()
        result = StepExecutor(runner, FakeFetcher()).run(ComponentDescriptor(name="zlib", steps=(RunCommand("make"),)), BASE_ENV, tmp_path / "zlib")
        assert runner.calls[0][1] == Path(result.working_dir) / PROJECT_SUBDIR

    def test_relative_path_sets_default_cwd(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(
            name="license-acceptance",
            source=SourceSpec.git("la.git"),
            relative_path="components/ruby",
            steps=(RunCommand("bundle install"),),
        )
        result = StepExecutor(runner, FakeFetcher(subdirs=("components/ruby",))).run(component, BASE_ENV, tmp_path / "la")
        assert result.status == BuildStatus.SUCCEEDED
        assert runner.calls[0][1] == Path(result.working_dir) / PROJECT_SUBDIR / "components" / "ruby"

    def test_missing_cwd_fails_step(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(name="zlib", steps=(RunCommand("make", cwd="nope"),))
        result = StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "zlib")
        assert result.status == BuildStatus.FAILED
        assert "Working directory does not exist" in result.failure.message
        assert runner.calls == []

    def test_step_cwd_relative_to_project_dir(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(
            name="zlib",
            source=SourceSpec.path("/src/zlib"),
            steps=(RunCommand("make", cwd="contrib/minizip"),),
        )
        result = StepExecutor(runner, FakeFetcher(subdirs=("contrib/minizip",))).run(component, BASE_ENV, tmp_path / "zlib")
        assert runner.calls[0][1] == Path(result.working_dir) / PROJECT_SUBDIR / "contrib" / "minizip"

    def test_placeholder_cwd(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(name="zlib", steps=(RunCommand("make", cwd="{working_dir}"),))
        result = StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "zlib")
        assert runner.calls[0][1] == Path(result.working_dir)

    def test_workdir_created_and_held(self, tmp_path):
        locks = WorkdirLocks()
        runner = FakeRunner(locks=locks)
        workdir = tmp_path / "build" / "zlib"
        StepExecutor(runner, FakeFetcher(), locks).run(ComponentDescriptor(name="zlib", steps=(RunCommand("make"),)), BASE_ENV, workdir)
        assert workdir.is_dir()
        assert runner.lock_held == [True]
        assert not locks.is_held(workdir)


class TestEnvironment:
    """Environment handling per step."""

    def test_placeholders_expanded(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(name="ruby", steps=(RunCommand("./configure --prefix={install_dir}/embedded"),))
        StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "ruby")
        assert _commands(runner) == ["./configure --prefix=/opt/stack/embedded"]

    def test_argument_list_placeholders(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(name="ruby", steps=(RunCommand(("make", "-C", "{project_dir}")),))
        result = StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "ruby")
        assert runner.calls[0][0] == ("make", "-C", str(Path(result.working_dir) / PROJECT_SUBDIR))

    def test_env_override_applies_to_following_steps(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(
            name="ruby",
            steps=(RunCommand("first"), EnvOverride({"GEM_HOME": "{install_dir}/gems"}), RunCommand("second")),
        )
        StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "ruby")
        assert "GEM_HOME" not in runner.calls[0][2]
        assert runner.calls[1][2]["GEM_HOME"] == "/opt/stack/gems"

    def test_step_env_is_scoped_to_step(self, tmp_path):
        runner = FakeRunner()
        component = ComponentDescriptor(name="ruby", steps=(RunCommand("a", env={"ONLY_A": "1"}), RunCommand("b")))
        StepExecutor(runner, FakeFetcher()).run(component, BASE_ENV, tmp_path / "ruby")
        assert runner.calls[0][2]["ONLY_A"] == "1"
        assert "ONLY_A" not in runner.calls[1][2]
        assert runner.calls[1][2]["PATH"] == "/usr/bin"


class TestWorkdirLocks:
    def test_same_dir_serialized(self, tmp_path):
        """Two holders of one working directory never overlap."""
        locks = WorkdirLocks()
        active = []
        overlaps = []
        guard = threading.Lock()

        def worker():
            with locks.hold(tmp_path / "shared"):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(True)
                threading.Event().wait(0.01)
                with guard:
                    active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []

    def test_different_dirs_independent(self, tmp_path):
        locks = WorkdirLocks()
        with locks.hold(tmp_path / "a"):
            assert not locks.is_held(tmp_path / "b")
            assert locks.is_held(tmp_path / "a")


class TestSubprocessCommandRunner:
    """Real process execution."""

    def test_implements_protocol(self):
        assert isinstance(SubprocessCommandRunner(), CommandRunner)

    def test_captures_output_and_exit_code(self, tmp_path):
        code = "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(3)"
        result = SubprocessCommandRunner().run((sys.executable, "-c", code), tmp_path, {"PATH": ""})
        assert result.exit_code == 3
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"

    def test_exact_environment(self, tmp_path):
        """The child sees exactly the given environment."""
        code = "import os; print(os.environ.get('CBUILD_MARK', 'missing'))"
        result = SubprocessCommandRunner().run((sys.executable, "-c", code), tmp_path, {"CBUILD_MARK": "here", "SYSTEMROOT": "C:\\Windows"})
        assert result.exit_code == 0
        assert result.stdout.strip() == "here"

    def test_runs_in_cwd(self, tmp_path):
        code = "import os; print(os.getcwd())"
        result = SubprocessCommandRunner().run((sys.executable, "-c", code), tmp_path, {})
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell syntax")
    def test_shell_string(self, tmp_path):
        result = SubprocessCommandRunner().run("echo $GREETING && exit 4", tmp_path, {"GREETING": "hi", "PATH": "/usr/bin:/bin"})
        assert result.exit_code == 4
        assert result.stdout.strip() == "hi"

    def test_missing_executable(self, tmp_path):
        result = SubprocessCommandRunner().run(("cbuild-no-such-binary-xyz",), tmp_path, {})
        assert result.exit_code == EXIT_COMMAND_NOT_FOUND

    def test_timeout(self, tmp_path):
        result = SubprocessCommandRunner().run((sys.executable, "-c", "import time; time.sleep(10)"), tmp_path, {}, timeout=0.5)
        assert result.exit_code == EXIT_TIMEOUT
        assert "Timed out" in result.stderr

    def test_end_to_end_with_executor(self, tmp_path):
        """A real command writes into the project directory."""
        component = ComponentDescriptor(
            name="touch",
            steps=(RunCommand((sys.executable, "-c", "open('built.txt', 'w').write('ok')")),),
        )
        result = StepExecutor(SubprocessCommandRunner(), FakeFetcher()).run(component, BuildEnvironment({}), tmp_path / "touch")
        assert result.status == BuildStatus.SUCCEEDED
        assert (Path(result.working_dir) / PROJECT_SUBDIR / "built.txt").read_text() == "ok"
