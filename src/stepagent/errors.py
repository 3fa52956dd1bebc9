# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class LaunchError(Exception):
    """Base class for every engine-level failure of a build."""


@dataclass
class WorkspaceConflict(LaunchError):
    """A workspace path already exists; workspaces are never reused."""
    path: str

    def __str__(self) -> str:
        return f"Cannot create workspace path {self.path!r}, path already exists."


@dataclass
class WorkspaceCreateFailed(LaunchError):
    path: str
    reason: str

    def __str__(self) -> str:
        return f"Cannot create workspace path {self.path!r}: {self.reason}"


@dataclass
class ArtifactWriteFailed(LaunchError):
    path: str
    reason: str

    def __str__(self) -> str:
        return f"creating artifact {self.path!r}: {self.reason}"


@dataclass
class ScriptWriteFailed(LaunchError):
    step: str
    path: str
    reason: str

    def __str__(self) -> str:
        return f"step '{self.step}': writing script {self.path!r}: {self.reason}"


@dataclass
class LaunchFailed(LaunchError):
    """The shell session (or a step in it) could not be started."""
    reason: str

    def __str__(self) -> str:
        return f"cannot start shell: {self.reason}"


@dataclass
class SetupFailed(LaunchError):
    reason: str
    exit_code: Optional[int] = None

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"setup failed: {self.reason}"
        return f"setup failed (exit={self.exit_code}): {self.reason}"


@dataclass
class CommandFailed(LaunchError):
    """
    The step's script ran and returned non-zero.

    This is an expected build outcome, not an agent defect.
    """
    step: str
    exit_code: int

    def __str__(self) -> str:
        return f"step '{self.step}' failed (exit={self.exit_code})"


@dataclass
class UndeterminedExit(LaunchError):
    """The session ended (or hung) before the step reported a status."""
    step: str
    reason: str

    def __str__(self) -> str:
        return f"step '{self.step}' ended without an exit status: {self.reason}"


@dataclass
class StatusReportFailed(LaunchError):
    action: str
    reason: str

    def __str__(self) -> str:
        return f"{self.action}: {self.reason}"


@dataclass
class InvalidTransition(LaunchError):
    current: str
    target: str

    def __str__(self) -> str:
        return f"invalid build state transition {self.current} -> {self.target}"
