# launch.py
from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from . import settings
from .agent.api_client import APIError, ControlPlane
from .emitter import Emitter
from .environment import build_environment, environment_dict
from .errors import (
    CommandFailed,
    InvalidTransition,
    LaunchError,
    ScriptWriteFailed,
    SetupFailed,
    StatusReportFailed,
    UndeterminedExit,
    WorkspaceCreateFailed,
)
from .executor import Session, StepRunner
from .model import (
    EXIT_OK,
    EXIT_UNKNOWN,
    Build,
    BuildStatus,
    ExecutionResult,
    Job,
    Pipeline,
    Step,
)
from .ui.console import get_console
from .workspace import ScmPath, Workspace, create_workspace, parse_scm_uri, write_artifact

# Pseudo-step reported around workspace/environment preparation
SETUP_STEP = "stepagent-setup"

# Per-step script, overwritten for every step (lives in the workspace root)
STEP_SCRIPT = "step.sh"

Checkout = Callable[[ScmPath, str, Workspace], Path]


class BuildState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"

    @property
    def terminal(self) -> bool:
        return self in (BuildState.SUCCESS, BuildState.FAILURE)


_TRANSITIONS = {
    BuildState.PENDING: {BuildState.RUNNING},
    BuildState.RUNNING: {BuildState.SUCCESS, BuildState.FAILURE},
    BuildState.SUCCESS: set(),
    BuildState.FAILURE: set(),
}


def report_build_status(api: Optional[ControlPlane], status: BuildStatus, build_id: int | str) -> bool:
    """
    Report a terminal (or running) build status, logging instead of raising.

    Returns:
        True if the control plane accepted the update
    """
    if api is None:
        return False
    console = get_console()
    console.print_status(status.value)
    try:
        api.update_build_status(status, build_id)
    except APIError as e:
        console.print_error("Failed updating the build status", str(e))
        return False
    return True


class Launcher:
    """
    Runs one build: setup, then every step in order, fail-fast.

    Everything the run touches (control plane, workspace root, emitter
    target, shell) is handed in, so tests can build isolated launchers.
    """

    def __init__(
        self,
        api: ControlPlane,
        workspace_root: str | Path,
        emitter_path: str | Path,
        *,
        shell: str = settings.SHELL,
        step_timeout: Optional[float] = settings.STEP_TIMEOUT,
        setup_script: str = settings.SETUP_SCRIPT,
        checkout: Optional[Checkout] = None,
        base_env: Optional[Mapping[str, str]] = None,
        current_env: Optional[Mapping[str, str]] = None,
    ):
        self.api = api
        self.workspace_root = Path(workspace_root).absolute()
        self.emitter_path = Path(emitter_path)
        self.shell = shell
        self.step_timeout = step_timeout
        self.setup_script = setup_script
        self.checkout = checkout
        self.base_env = dict(base_env or {})
        self.current_env = current_env

        self.state = BuildState.PENDING
        self.workspace: Optional[Workspace] = None
        self.results: Dict[str, ExecutionResult] = {}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: BuildState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.state.value, target.value)
        get_console().print_debug(f"build state {self.state.value} -> {target.value}")
        self.state = target

    def _report(self, action: str, fn: Callable[..., None], *args) -> None:
        try:
            fn(*args)
        except APIError as e:
            raise StatusReportFailed(action, str(e)) from e

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, build_id: int | str) -> BuildStatus:
        """
        Run the build to a terminal state and report it.

        Engine failures never escape: they become a FAILURE status. Only
        unexpected faults (bugs) propagate, to be caught by the CLI guard.
        """
        if self.state is not BuildState.PENDING:
            raise InvalidTransition(self.state.value, BuildState.RUNNING.value)

        console = get_console()
        console.print_build_started(str(build_id), str(self.workspace_root))
        start_time = time.time()

        try:
            self.launch(build_id)
        except CommandFailed as e:
            console.print_failure(e.step, "Failure due to non-zero exit code", exit_code=e.exit_code)
            status = BuildStatus.FAILURE
        except UndeterminedExit as e:
            console.print_failure(
                e.step,
                str(e),
                exit_code=EXIT_UNKNOWN,
                hint="The shell session died or hung before the step reported its status.",
            )
            status = BuildStatus.FAILURE
        except (LaunchError, APIError) as e:
            console.print_error("Error running launcher", str(e))
            status = BuildStatus.FAILURE
        else:
            status = BuildStatus.SUCCESS

        self._finish(status, build_id)
        console.print_build_complete(status.value, duration=time.time() - start_time)
        return status

    def _finish(self, status: BuildStatus, build_id: int | str) -> None:
        target = BuildState.SUCCESS if status is BuildStatus.SUCCESS else BuildState.FAILURE
        self._transition(target)
        report_build_status(self.api, status, build_id)

    def launch(self, build_id: int | str) -> None:
        """
        Prepare the build and run its steps.

        Raises:
            LaunchError: For any setup, step or reporting failure
            APIError: If the build definition cannot be fetched
        """
        self._transition(BuildState.RUNNING)

        try:
            emitter = Emitter.open(self.emitter_path)
        except OSError as e:
            raise SetupFailed(f"opening emitter {self.emitter_path}: {e.strerror or e}") from e

        with emitter:
            self._report(f"updating {SETUP_STEP} start", self.api.update_step_start, build_id, SETUP_STEP)

            get_console().print_status(BuildStatus.RUNNING.value)
            self._report("updating build status to RUNNING", self.api.update_build_status, BuildStatus.RUNNING, build_id)

            try:
                build, source_dir, env = self._setup(build_id, emitter)
            except (LaunchError, APIError):
                self._stop_quietly(build_id, SETUP_STEP, EXIT_UNKNOWN)
                raise
            self._report(f"updating {SETUP_STEP} stop", self.api.update_step_stop, build_id, SETUP_STEP, EXIT_OK)

            session = Session(source_dir, environment_dict(env), shell=self.shell)
            with StepRunner(session, emitter, self.workspace.root / STEP_SCRIPT, timeout=self.step_timeout) as runner:
                runner.setup(source_dir / self.setup_script)
                for step in build.steps:
                    self._run_step(runner, emitter, build_id, step)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _fetch(self, build_id: int | str) -> Tuple[Build, Job, Pipeline]:
        console = get_console()
        try:
            console.print_fetch("Build", build_id)
            build = self.api.build_from_id(build_id)
            console.print_fetch("Job", build.job_id)
            job = self.api.job_from_id(build.job_id)
            console.print_fetch("Pipeline", job.pipeline_id)
            pipeline = self.api.pipeline_from_id(job.pipeline_id)
        except APIError as e:
            raise APIError(f"fetching build {build_id}: {e}") from e
        return build, job, pipeline

    def _setup(self, build_id: int | str, emitter: Emitter) -> Tuple[Build, Path, List[str]]:
        console = get_console()
        build, job, pipeline = self._fetch(build_id)

        try:
            scm = parse_scm_uri(pipeline.scm_uri, pipeline.scm_repo_name)
        except ValueError as e:
            raise SetupFailed(str(e)) from e

        console.print_info(f"Creating workspace in {self.workspace_root}")
        self.workspace = create_workspace(self.workspace_root, scm.host, scm.org)

        source_dir = self._source_dir(scm, build, self.workspace)

        write_artifact(self.workspace.artifacts, "steps.json", [
            {"name": s.name, "command": s.cmd} for s in build.steps
        ])
        write_artifact(self.workspace.artifacts, "environment.json", dict(build.environment))

        try:
            secrets = self.api.secrets_for_build(build)
        except APIError as e:
            raise APIError(f"fetching secrets for build {build.id}: {e}") from e
        emitter.add_redactions(s.value for s in secrets)

        env = build_environment(
            self._default_env(build, job, self.workspace, source_dir),
            self.current_env,
            build.environment,
            secrets,
        )
        return build, source_dir, env

    def _source_dir(self, scm: ScmPath, build: Build, workspace: Workspace) -> Path:
        if self.checkout is not None:
            get_console().print_info(f"Checking out {scm.https_url()} at {build.sha or scm.branch}")
            return self.checkout(scm, build.sha, workspace)

        source_dir = workspace.src / scm.repo
        try:
            source_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise WorkspaceCreateFailed(str(source_dir), e.strerror or str(e)) from e
        return source_dir

    def _default_env(self, build: Build, job: Job, workspace: Workspace, source_dir: Path) -> Dict[str, str]:
        env = {
            "CI": "true",
            "CONTINUOUS_INTEGRATION": "true",
            "STEPAGENT": "true",
            "STEPAGENT_BUILD_ID": str(build.id),
            "STEPAGENT_JOB_NAME": job.name,
            "STEPAGENT_SHA": build.sha,
            "STEPAGENT_SOURCE_DIR": str(source_dir),
            "STEPAGENT_ARTIFACTS_DIR": str(workspace.artifacts),
        }
        env.update(self.base_env)
        return env

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(self, runner: StepRunner, emitter: Emitter, build_id: int | str, step: Step) -> None:
        console = get_console()
        self._report(f"updating step start {step.name!r}", self.api.update_step_start, build_id, step.name)

        console.print_step(step.name)
        emitter.announce_step(step)

        write_error: Optional[ScriptWriteFailed] = None
        try:
            result = runner.run_step(step)
        except ScriptWriteFailed as e:
            write_error = e
            result = ExecutionResult.launch_failed(str(e))

        self.results[step.name] = result
        console.print_step_result(step.name, result.code)

        if result.ok:
            self._report(f"updating step stop {step.name!r}", self.api.update_step_stop, build_id, step.name, result.code)
            return

        # The step outcome is already decided; a failed report must not hide it
        self._stop_quietly(build_id, step.name, result.code)
        if write_error is not None:
            raise write_error
        result.raise_for_outcome(step)

    def _stop_quietly(self, build_id: int | str, step_name: str, code: int) -> None:
        try:
            self.api.update_step_stop(build_id, step_name, code)
        except APIError as e:
            get_console().print_error(f"Failed updating step stop {step_name!r}", str(e))


def run_build(
    api: ControlPlane,
    build_id: int | str,
    workspace_root: str | Path,
    emitter_path: str | Path,
    **options,
) -> BuildStatus:
    """Run one build with a fresh Launcher and return its terminal status."""
    return Launcher(api, workspace_root, emitter_path, **options).run(build_id)
