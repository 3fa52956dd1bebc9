# workspace.py
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ArtifactWriteFailed, WorkspaceConflict, WorkspaceCreateFailed


@dataclass(frozen=True)
class Workspace:
    """The paths available to one build run."""
    root: Path
    src: Path
    artifacts: Path


@dataclass(frozen=True)
class ScmPath:
    host: str
    org: str
    repo: str
    branch: str

    def https_url(self) -> str:
        return f"https://{self.host}/{self.org}/{self.repo}"


def parse_scm_uri(scm_uri: str, scm_name: str) -> ScmPath:
    """
    Split a pipeline SCM reference into its parts.

    e.g. scm_uri "github.com:123456:main", scm_name "org/repo"
    """
    uri = scm_uri.split(":")
    org_repo = scm_name.split("/")

    if len(uri) != 3 or len(org_repo) != 2 or not all(uri) or not all(org_repo):
        raise ValueError(f"unable to parse scmUri {scm_uri!r} and scmName {scm_name!r}")

    return ScmPath(host=uri[0], org=org_repo[0], repo=org_repo[1], branch=uri[2])


def create_workspace(root: str | Path, *src_paths: str) -> Workspace:
    """
    Create a fresh workspace from path components.

    e.g. ("github.com", "org") creates
        <root>/src/github.com/org
        <root>/artifacts

    Both paths are checked before anything is created, so a conflict leaves
    the filesystem as it was.

    Raises:
        WorkspaceConflict: If either path already exists
        WorkspaceCreateFailed: If a directory cannot be created
    """
    root_p = Path(root)
    src = root_p.joinpath("src", *src_paths)
    artifacts = root_p / "artifacts"

    paths = [src, artifacts]
    for p in paths:
        if p.exists():
            raise WorkspaceConflict(str(p))

    for p in paths:
        try:
            p.mkdir(mode=0o777, parents=True)
        except OSError as e:
            raise WorkspaceCreateFailed(str(p), e.strerror or str(e)) from e

    return Workspace(root=root_p, src=src, artifacts=artifacts)


def write_artifact(directory: Path, name: str, data: Any) -> Path:
    """Write `data` as indented JSON to directory/name."""
    path = Path(directory) / name
    try:
        payload = json.dumps(data, indent=4)
    except (TypeError, ValueError) as e:
        raise ArtifactWriteFailed(str(path), f"marshaling artifact: {e}") from e

    try:
        path.write_text(payload, encoding="utf-8")
        path.chmod(0o644)
    except OSError as e:
        raise ArtifactWriteFailed(str(path), e.strerror or str(e)) from e

    return path
