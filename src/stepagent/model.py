# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from .errors import CommandFailed, LaunchFailed, UndeterminedExit

# Exit code markers reported for steps that never produced a status of their own
EXIT_OK = 0
EXIT_UNKNOWN = 254
EXIT_LAUNCH = 255


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a build."""
    name: str
    cmd: str


@dataclass(frozen=True)
class Build:
    """
    A build as fetched from the control plane.

    `steps` keep their declaration order; the engine never reorders them.
    `environment` holds the declared (non-secret) build variables.
    """
    id: int
    job_id: int
    steps: Tuple[Step, ...]
    sha: str = ""
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Job:
    id: int
    name: str
    pipeline_id: int


@dataclass(frozen=True)
class Pipeline:
    id: int
    scm_uri: str         # e.g. "github.com:123456:main"
    scm_repo_name: str   # e.g. "org/repo"


@dataclass(frozen=True)
class Secret:
    """A secret name/value pair. The value never shows up in repr()."""
    name: str
    value: str = field(repr=False)


class BuildStatus(str, Enum):
    """Build status values understood by the control plane."""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class Outcome(str, Enum):
    SUCCESS = "success"
    COMMAND_FAILED = "command_failed"
    LAUNCH_FAILED = "launch_failed"
    UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class ExecutionResult:
    """Result of running one step in the shell session."""
    code: int
    outcome: Outcome
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def from_status(cls, code: int) -> ExecutionResult:
        if code == EXIT_OK:
            return cls(code=EXIT_OK, outcome=Outcome.SUCCESS)
        return cls(code=code, outcome=Outcome.COMMAND_FAILED)

    @classmethod
    def undetermined(cls, reason: str) -> ExecutionResult:
        return cls(code=EXIT_UNKNOWN, outcome=Outcome.UNDETERMINED, reason=reason)

    @classmethod
    def launch_failed(cls, reason: str) -> ExecutionResult:
        return cls(code=EXIT_LAUNCH, outcome=Outcome.LAUNCH_FAILED, reason=reason)

    def raise_for_outcome(self, step: Step) -> None:
        """Raise the matching LaunchError if the step did not succeed."""
        if self.outcome is Outcome.SUCCESS:
            return
        if self.outcome is Outcome.COMMAND_FAILED:
            raise CommandFailed(step=step.name, exit_code=self.code)
        if self.outcome is Outcome.LAUNCH_FAILED:
            raise LaunchFailed(reason=f"step '{step.name}': {self.reason}")
        raise UndeterminedExit(step=step.name, reason=self.reason or "no exit status")
