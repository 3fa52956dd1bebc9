from __future__ import annotations

import itertools
import os
import shutil
import signal
import stat
import threading
import time
from pathlib import Path

import pytest

from conftest import read_messages, read_records
from stepagent.emitter import Emitter
from stepagent.errors import CommandFailed, ScriptWriteFailed, SetupFailed, UndeterminedExit
from stepagent.executor import (
    SCRIPT_HEADER,
    STEP_ID_ENV,
    Session,
    StepRunner,
    materialize,
    new_token,
)
from stepagent.model import EXIT_UNKNOWN, Outcome, Step


class RecordingTokens:
    def __init__(self):
        self.issued = []
        self._counter = itertools.count()

    def __call__(self) -> str:
        token = f"tok{next(self._counter):06d}x{new_token()}"
        self.issued.append(token)
        return token


@pytest.fixture
def tokens():
    return RecordingTokens()


@pytest.fixture
def runner(tmp_path, shell_env, emitter_path, tokens):
    workdir = tmp_path / "src"
    workdir.mkdir()
    emitter = Emitter.open(emitter_path)
    session = Session(workdir, shell_env)
    with StepRunner(session, emitter, tmp_path / "step.sh", timeout=20, token_factory=tokens) as r:
        yield r
    emitter.close()


# ----------------------------------------------------------------------
# materialize
# ----------------------------------------------------------------------

def test_materialize_writes_header_and_body(tmp_path):
    path = tmp_path / "step.sh"
    materialize(path, Step(name="build", cmd="make all\nmake test"))

    assert path.read_text() == f"{SCRIPT_HEADER}\nmake all\nmake test\n"
    assert path.stat().st_mode & stat.S_IXUSR


def test_materialize_overwrites_previous_step(tmp_path):
    path = tmp_path / "step.sh"
    materialize(path, Step(name="one", cmd="echo one"))
    materialize(path, Step(name="two", cmd="echo two"))

    assert "echo one" not in path.read_text()
    assert path.read_text().endswith("echo two\n")


def test_materialize_failure_raises_script_write_failed(tmp_path):
    with pytest.raises(ScriptWriteFailed) as exc_info:
        materialize(tmp_path / "missing" / "step.sh", Step(name="build", cmd="make"))

    assert exc_info.value.step == "build"


# ----------------------------------------------------------------------
# tokens and command line
# ----------------------------------------------------------------------

def test_new_token_is_unique_over_many_steps():
    issued = [new_token() for _ in range(10_000)]

    assert len(set(issued)) == len(issued)
    assert all(len(t) == 32 for t in issued)


def test_command_line_sources_script_then_echoes_status():
    line = StepRunner.command_line("TOKEN", Path("/ws/step.sh"), "stepid", "unit tests")

    parts = line.split("; ")
    assert parts[0] == f"{STEP_ID_ENV}=stepid"
    assert parts[4] == ". /ws/step.sh </dev/null"
    assert parts[5] == "printf '\\n%s %s\\n' TOKEN $?"
    assert parts[-1] == "trap - EXIT"
    assert "'unit tests'" in line


# ----------------------------------------------------------------------
# sentinel protocol
# ----------------------------------------------------------------------

def test_successful_step_output_is_emitted_without_token(runner, emitter_path, tokens):
    result = runner.run_step(Step(name="hello", cmd="echo hello"))
    runner.emitter.flush()

    assert result.outcome is Outcome.SUCCESS
    assert result.code == 0
    messages = read_messages(emitter_path)
    assert "hello" in messages
    assert not any(t in m for t in tokens.issued for m in messages)


def test_exit_zero_recovers_status_through_trap(runner, emitter_path, tokens):
    result = runner.run_step(Step(name="hello", cmd="echo hello; exit 0"))
    runner.emitter.flush()

    assert result.ok
    messages = read_messages(emitter_path)
    assert "hello" in messages
    assert not any(tokens.issued[0] in m for m in messages)


def test_exit_code_is_reported_as_command_failure(runner):
    step = Step(name="boom", cmd="exit 7")
    result = runner.run_step(step)

    assert result.outcome is Outcome.COMMAND_FAILED
    assert result.code == 7
    with pytest.raises(CommandFailed) as exc_info:
        result.raise_for_outcome(step)
    assert exc_info.value.exit_code == 7


def test_last_command_status_is_the_step_status(runner):
    result = runner.run_step(Step(name="false", cmd="echo before\nfalse"))

    assert result.code == 1
    assert result.outcome is Outcome.COMMAND_FAILED


def test_shell_state_is_shared_between_steps(runner, emitter_path):
    runner.run_step(Step(name="prepare", cmd="export GREETING=hi\nmkdir -p sub\ncd sub"))
    result = runner.run_step(Step(name="use", cmd='echo "$GREETING from $(basename "$PWD")"'))
    runner.emitter.flush()

    assert result.ok
    assert "hi from sub" in read_messages(emitter_path)


def test_stderr_is_merged_into_the_log(runner, emitter_path):
    runner.run_step(Step(name="warn", cmd="echo oops >&2"))
    runner.emitter.flush()

    assert "oops" in read_messages(emitter_path)


def test_output_without_trailing_newline_is_kept(runner, emitter_path):
    result = runner.run_step(Step(name="partial", cmd="printf partial"))
    runner.emitter.flush()

    assert result.ok
    assert "partial" in read_messages(emitter_path)


def test_empty_output_lines_are_kept(runner, emitter_path):
    result = runner.run_step(Step(name="blank", cmd="echo first; echo; echo; echo last; echo"))
    runner.emitter.flush()

    assert result.ok
    assert read_messages(emitter_path) == ["first", "", "", "last", ""]


def test_verbose_shell_does_not_confuse_completion(runner, emitter_path, tokens):
    assert runner.run_step(Step(name="verbose", cmd="set -v")).ok

    result = runner.run_step(Step(name="after", cmd="echo ok"))
    runner.emitter.flush()

    assert result.ok
    assert runner.run_step(Step(name="third", cmd="exit 3")).code == 3
    runner.emitter.flush()
    messages = read_messages(emitter_path)
    assert "ok" in messages
    assert not any(t in m for t in tokens.issued for m in messages)


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash is not installed")
def test_traced_bash_step_reports_its_status(tmp_path, shell_env, emitter_path):
    with Emitter.open(emitter_path) as emitter:
        session = Session(tmp_path, shell_env, shell=shutil.which("bash"))
        with StepRunner(session, emitter, tmp_path / "step.sh", timeout=20) as runner:
            traced = runner.run_step(Step(name="trace", cmd="set -x"))
            after = runner.run_step(Step(name="after", cmd="echo ok; false"))

    assert traced.outcome is Outcome.SUCCESS
    assert after.outcome is Outcome.COMMAND_FAILED
    assert after.code == 1
    assert "ok" in read_messages(emitter_path)


def test_steps_do_not_read_session_input(runner, emitter_path):
    result = runner.run_step(Step(name="cat", cmd="cat; echo after-cat"))
    runner.emitter.flush()

    assert result.ok
    assert "after-cat" in read_messages(emitter_path)


def test_step_id_is_exported_and_differs_from_token(runner, emitter_path, tokens):
    runner.run_step(Step(name="id", cmd=f'echo "id=${STEP_ID_ENV}"'))
    runner.emitter.flush()

    ids = [m for m in read_messages(emitter_path) if m.startswith("id=")]
    assert len(ids) == 1
    assert len(ids[0]) > len("id=")
    assert tokens.issued[0] not in ids[0]


def test_each_step_gets_a_fresh_token(runner, emitter_path, tokens):
    for i in range(50):
        assert runner.run_step(Step(name=f"s{i}", cmd=f"echo line{i}")).ok
    runner.emitter.flush()

    assert len(set(tokens.issued)) == 50
    messages = read_messages(emitter_path)
    assert [m for m in messages if m.startswith("line")] == [f"line{i}" for i in range(50)]


def test_late_background_output_goes_to_next_step(runner, emitter_path):
    runner.emitter.announce_step(Step(name="bg", cmd="(sleep 0.3; echo late) &"))
    assert runner.run_step(Step(name="bg", cmd="(sleep 0.3; echo late) &")).ok
    runner.emitter.announce_step(Step(name="next", cmd="sleep 1; echo second"))
    assert runner.run_step(Step(name="next", cmd="sleep 1; echo second")).ok
    runner.emitter.flush()

    records = [r for r in read_records(emitter_path) if r["m"] in ("late", "second")]
    assert [r["m"] for r in records] == ["late", "second"]
    assert all(r["s"] == "next" for r in records)


# ----------------------------------------------------------------------
# undetermined exits
# ----------------------------------------------------------------------

def test_killed_session_is_undetermined(runner):
    step = Step(name="suicide", cmd="kill -9 $$")
    result = runner.run_step(step)

    assert result.outcome is Outcome.UNDETERMINED
    assert result.code == EXIT_UNKNOWN
    with pytest.raises(UndeterminedExit):
        result.raise_for_outcome(step)

    after = runner.run_step(Step(name="after", cmd="echo unreachable"))
    assert after.outcome is Outcome.UNDETERMINED


def test_hung_step_times_out(tmp_path, shell_env, emitter_path):
    with Emitter.open(emitter_path) as emitter:
        session = Session(tmp_path, shell_env)
        with StepRunner(session, emitter, tmp_path / "step.sh", timeout=0.5) as runner:
            started = time.monotonic()
            result = runner.run_step(Step(name="hang", cmd="sleep 30"))
            elapsed = time.monotonic() - started

    assert result.outcome is Outcome.UNDETERMINED
    assert "killed" in result.reason
    assert elapsed < 10
    assert not session.alive


def test_shell_killed_under_a_running_child_does_not_hang(tmp_path, shell_env, emitter_path):
    with Emitter.open(emitter_path) as emitter:
        session = Session(tmp_path, shell_env)
        with StepRunner(session, emitter, tmp_path / "step.sh", timeout=None) as runner:
            killer = threading.Timer(0.5, os.kill, args=(session.pid, signal.SIGKILL))
            killer.start()
            started = time.monotonic()
            result = runner.run_step(Step(name="sleeper", cmd="sleep 6"))
            elapsed = time.monotonic() - started
            killer.join()

    assert result.outcome is Outcome.UNDETERMINED
    assert result.code == EXIT_UNKNOWN
    assert elapsed < 3


# ----------------------------------------------------------------------
# setup script
# ----------------------------------------------------------------------

def test_setup_script_is_sourced_into_the_session(runner, tmp_path, emitter_path):
    script = tmp_path / "setup.sh"
    script.write_text("export FROM_SETUP=yes\n")
    runner.setup(script)
    runner.run_step(Step(name="check", cmd='echo "setup=$FROM_SETUP"'))
    runner.emitter.flush()

    assert "setup=yes" in read_messages(emitter_path)


def test_missing_setup_script_is_skipped(runner, tmp_path):
    runner.setup(tmp_path / "nope.sh")

    assert runner.run_step(Step(name="check", cmd="true")).ok


def test_failing_setup_script_raises(runner, tmp_path):
    script = tmp_path / "setup.sh"
    script.write_text("return 3\n")

    with pytest.raises(SetupFailed) as exc_info:
        runner.setup(script)
    assert exc_info.value.exit_code == 3


def test_session_close_is_idempotent(tmp_path, shell_env):
    session = Session(tmp_path, shell_env).start()
    assert session.alive

    session.close()
    session.close()

    assert not session.alive
    assert session.returncode is not None


def test_missing_shell_raises_launch_failed(tmp_path, shell_env):
    from stepagent.errors import LaunchFailed

    with pytest.raises(LaunchFailed):
        Session(tmp_path, shell_env, shell=os.fspath(tmp_path / "no-such-shell")).start()
