from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from stepagent.agent.api_client import APIError
from stepagent.model import Build, BuildStatus, Job, Pipeline, Secret, Step
from stepagent.ui.console import Console, set_console


class FakeAPI:
    """In-memory control plane that records every call in order."""

    def __init__(
        self,
        build: Build,
        secrets: Optional[List[Secret]] = None,
        fail_on: tuple = (),
        fail_statuses: tuple = (),
    ):
        self.build = build
        self.job = Job(id=build.job_id, name="main", pipeline_id=7)
        self.pipeline = Pipeline(id=7, scm_uri="github.com:123456:main", scm_repo_name="acme/widgets")
        self.secrets = list(secrets or [])
        self.fail_on = set(fail_on)
        self.fail_statuses = set(fail_statuses)
        self.calls: List[tuple] = []

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise APIError(f"{name}: 503 Service Unavailable")

    def build_from_id(self, build_id):
        self.calls.append(("build_from_id", build_id))
        self._maybe_fail("build_from_id")
        return self.build

    def job_from_id(self, job_id):
        self.calls.append(("job_from_id", job_id))
        self._maybe_fail("job_from_id")
        return self.job

    def pipeline_from_id(self, pipeline_id):
        self.calls.append(("pipeline_from_id", pipeline_id))
        self._maybe_fail("pipeline_from_id")
        return self.pipeline

    def secrets_for_build(self, build):
        self.calls.append(("secrets_for_build", build.id))
        self._maybe_fail("secrets_for_build")
        return list(self.secrets)

    def update_step_start(self, build_id, step_name):
        self.calls.append(("start", step_name))
        self._maybe_fail("update_step_start")

    def update_step_stop(self, build_id, step_name, code):
        self.calls.append(("stop", step_name, code))
        self._maybe_fail("update_step_stop")

    def update_build_status(self, status, build_id):
        self.calls.append(("status", BuildStatus(status)))
        self._maybe_fail("update_build_status")
        if BuildStatus(status) in self.fail_statuses:
            raise APIError(f"status {status}: 502 Bad Gateway")

    @property
    def statuses(self) -> List[BuildStatus]:
        return [c[1] for c in self.calls if c[0] == "status"]

    @property
    def started(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "start"]

    @property
    def stops(self) -> List[tuple]:
        return [(c[1], c[2]) for c in self.calls if c[0] == "stop"]


def make_build(*steps: tuple, environment: Optional[Dict[str, str]] = None) -> Build:
    return Build(
        id=42,
        job_id=3,
        sha="0123456789abcdef",
        steps=tuple(Step(name=name, cmd=cmd) for name, cmd in steps),
        environment=dict(environment or {}),
    )


def read_records(path: Path) -> List[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def read_messages(path: Path) -> List[str]:
    return [r["m"] for r in read_records(path)]


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))
    yield


@pytest.fixture
def shell_env() -> Dict[str, str]:
    """Minimal environment for shell sessions under test."""
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


@pytest.fixture
def emitter_path(tmp_path: Path) -> Path:
    return tmp_path / "emitter.log"
