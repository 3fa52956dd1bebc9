# executor.py
from __future__ import annotations

import contextlib
import os
import queue
import shlex
import signal
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Iterator, List, Mapping, Optional

from .emitter import Emitter
from .errors import LaunchFailed, ScriptWriteFailed, SetupFailed
from .model import ExecutionResult, Step
from .ui.console import get_console

# Header of every materialized step script
SCRIPT_HEADER = "#!/bin/sh -e"

# Variables exported into the session for the duration of a step
STEP_ID_ENV = "STEPAGENT_STEP_ID"
STEP_NAME_ENV = "STEPAGENT_STEP_NAME"

_EOF = object()

# How often a blocked read checks whether the shell itself is still there
POLL_INTERVAL = 0.2

# Once the shell is gone, how long to wait for the pipe to reach end of stream
EXIT_GRACE = 1.0


class SessionClosed(Exception):
    """The shell session is no longer accepting input."""


class SessionTimeout(Exception):
    """No output line arrived before the read deadline."""


def new_token() -> str:
    """A fresh completion token: 128 random bits rendered as hex."""
    return uuid.uuid4().hex


def materialize(path: Path, step: Step) -> None:
    """
    Write `step`'s command body to an executable script at `path`.

    Raises:
        ScriptWriteFailed: If the file cannot be written
    """
    try:
        path.write_text(f"{SCRIPT_HEADER}\n{step.cmd}\n", encoding="utf-8")
        path.chmod(0o755)
    except OSError as e:
        raise ScriptWriteFailed(step.name, str(path), e.strerror or str(e)) from e


class Session:
    """
    One persistent shell process shared by every step of a build.

    Commands are written to the shell's stdin; stdout and stderr are merged
    and pumped line by line into a queue by a reader thread, so the read
    loop of each step can be bounded by a deadline.
    """

    def __init__(self, cwd: str | Path, env: Mapping[str, str], shell: str = "/bin/sh"):
        self.cwd = Path(cwd)
        self.env = dict(env)
        self.shell = shell
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._lines: queue.Queue = queue.Queue()
        self._eof = False
        self._closed = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    def start(self) -> Session:
        if self._proc is not None:
            return self
        try:
            self._proc = subprocess.Popen(
                [self.shell],
                cwd=str(self.cwd),
                env=self.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,  # own process group, so kill() reaches children too
            )
        except OSError as e:
            raise LaunchFailed(f"{self.shell}: {e.strerror or e}") from e

        self._reader = threading.Thread(
            target=self._pump,
            name=f"stepagent-session-{self.pid}",
            daemon=True,
        )
        self._reader.start()
        return self

    def _pump(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        try:
            for line in self._proc.stdout:
                self._lines.put(line.rstrip("\n"))
        finally:
            self._lines.put(_EOF)

    def send(self, line: str) -> None:
        """Submit one command line to the shell."""
        if not self.alive or self._proc.stdin is None:
            raise SessionClosed(f"shell exited with status {self.returncode}")
        try:
            self._proc.stdin.write(line + "\n")
            self._proc.stdin.flush()
        except (BrokenPipeError, ValueError) as e:
            raise SessionClosed(str(e)) from e

    def read_lines(self, timeout: Optional[float] = None) -> Iterator[str]:
        """
        Yield output lines until the stream ends.

        The generator is lazy and finite: it returns at end of stream and
        raises SessionTimeout once `timeout` seconds have passed since the
        first call without the caller having stopped iterating.

        A shell that exits while one of its children still holds the output
        pipe does not end the stream by itself. While waiting, the shell is
        polled; once it is gone its process group is killed, and whatever
        output is still in flight is yielded before returning.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        grace_deadline = None
        while not self._eof:
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                raise SessionTimeout(timeout)
            if grace_deadline is not None and now >= grace_deadline:
                # A writer outside the process group keeps the pipe open
                self._eof = True
                return

            wait = POLL_INTERVAL if deadline is None else min(POLL_INTERVAL, deadline - now)
            try:
                item = self._lines.get(timeout=wait)
            except queue.Empty:
                if grace_deadline is None and not self.alive:
                    get_console().print_debug(f"shell {self.pid} exited with status {self.returncode}")
                    self._kill_group()
                    grace_deadline = time.monotonic() + EXIT_GRACE
                continue
            if item is _EOF:
                self._eof = True
                return
            yield item

    def drain(self) -> List[str]:
        """Return every line already read but not yet consumed."""
        lines: List[str] = []
        while True:
            try:
                item = self._lines.get_nowait()
            except queue.Empty:
                return lines
            if item is _EOF:
                self._eof = True
                return lines
            lines.append(item)

    def kill(self) -> None:
        if not self.alive:
            return
        self._kill_group()

    def _kill_group(self) -> None:
        # The group outlives its leader while children remain in it
        try:
            os.killpg(self.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.kill()

    def close(self, timeout: float = 5.0) -> Optional[int]:
        """End the session (end of transmission on stdin) and reap the shell."""
        if self._proc is None or self._closed:
            return self.returncode
        self._closed = True

        if self._proc.stdin is not None:
            # The shell may already be gone; a broken pipe on close is expected then
            with contextlib.suppress(BrokenPipeError):
                self._proc.stdin.close()

        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            get_console().print_debug(f"shell {self.pid} did not exit after {timeout}s, killing it")
            self.kill()
            self._proc.wait()

        if self._reader is not None:
            self._reader.join(timeout=1.0)
        return self._proc.returncode

    def __enter__(self) -> Session:
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class StepRunner:
    """
    Runs steps one at a time in a Session and recovers their exit status.

    For every step a single line is submitted to the shell:

        <id vars>; trap "<marker>" EXIT; . <script> </dev/null; <marker>; trap - EXIT

    where the marker prints a newline, then `<token> $?`. The statements run
    in the same shell, so the printed status is the script's own `$?`. The
    EXIT trap reports the status of a script that calls `exit` (which also
    ends the session). The leading newline puts the token at the start of a
    line even after output without a trailing newline; only a line that
    starts with the token ends the step, so traced command lines
    (`set -x`, `set -v`) that merely contain it are ordinary output.
    """

    def __init__(
        self,
        session: Session,
        emitter: Emitter,
        script_path: Path,
        timeout: Optional[float] = None,
        token_factory: Callable[[], str] = new_token,
    ):
        self.session = session
        self.emitter = emitter
        self.script_path = Path(script_path)
        self.timeout = timeout
        self._new_token = token_factory

    def __enter__(self) -> StepRunner:
        self.session.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the session; late output (background jobs) goes to the emitter."""
        self.session.close()
        for line in self.session.drain():
            self.emitter.emit_line(line)

    @staticmethod
    def command_line(token: str, script: Path, step_id: str, step_name: str) -> str:
        marker = f"printf '\\n%s %s\\n' {token} $?"
        return "; ".join([
            f"{STEP_ID_ENV}={step_id}",
            f"{STEP_NAME_ENV}={shlex.quote(step_name)}",
            f"export {STEP_ID_ENV} {STEP_NAME_ENV}",
            f"trap {shlex.quote(marker)} EXIT",
            f". {shlex.quote(str(script))} </dev/null",
            marker,
            "trap - EXIT",
        ])

    def setup(self, script: Path) -> None:
        """Source `script` (if present) before the first step."""
        if not script.is_file():
            get_console().print_debug(f"No setup script at {script}")
            return
        result = self._execute(script, "setup")
        if not result.ok:
            raise SetupFailed(reason=result.reason or f"sourcing {script}", exit_code=result.code)

    def run_step(self, step: Step) -> ExecutionResult:
        materialize(self.script_path, step)
        return self._execute(self.script_path, step.name)

    def _execute(self, script: Path, step_name: str) -> ExecutionResult:
        token = self._new_token()
        self.emitter.add_redactions([token])

        try:
            self.session.send(self.command_line(token, script, uuid.uuid4().hex, step_name))
        except SessionClosed as e:
            return ExecutionResult.undetermined(f"shell session is not running: {e}")

        try:
            return self._read_status(token)
        except SessionTimeout:
            self.session.kill()
            return ExecutionResult.undetermined(
                f"no exit status within {self.timeout}s, shell session killed"
            )

    def _read_status(self, token: str) -> ExecutionResult:
        # The marker's leading newline leaves one empty line before the
        # terminator; an empty line is held back until the next line shows
        # whether it was step output.
        held_blank = False
        for line in self.session.read_lines(self.timeout):
            if not line.startswith(token):
                if held_blank:
                    self.emitter.emit_line("")
                held_blank = line == ""
                if not held_blank:
                    self.emitter.emit_line(line)
                continue

            fields = line[len(token):].split()
            if len(fields) != 1:
                return ExecutionResult.undetermined(f"malformed completion line: {line[len(token):].strip()!r}")
            try:
                code = int(fields[0])
            except ValueError:
                return ExecutionResult.undetermined(f"non-numeric exit status {fields[0]!r}")
            return ExecutionResult.from_status(code)

        if held_blank:
            self.emitter.emit_line("")
        return ExecutionResult.undetermined("shell session ended before the step completed")
