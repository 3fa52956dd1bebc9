# git.py
# Small, focused wrapper around the Git CLI.
# Source checkout for a build goes through here so the launcher never
# calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from stepagent.errors import SetupFailed
from stepagent.workspace import ScmPath, Workspace


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its combined output as a clean string.

    Raises:
        SetupFailed: If git is missing or exits non-zero
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as e:
        raise SetupFailed("git command not found. Please install Git.") from e

    if proc.returncode != 0:
        raise SetupFailed(f"git {args[0]} failed: {proc.stderr.strip()}", exit_code=proc.returncode)

    return proc.stdout.strip()


def git_checkout(scm: ScmPath, sha: str, workspace: Workspace) -> Path:
    """
    Clone the pipeline repository into the workspace and check out `sha`.

    The branch from the SCM URI is used when the build carries no sha.
    Pull-request merging is not attempted.

    Returns:
        Path to the checked out source directory
    """
    dest = workspace.src / scm.repo
    _git(["clone", "--quiet", scm.https_url(), str(dest)])
    _git(["checkout", "--quiet", sha or scm.branch], cwd=dest)
    return dest
