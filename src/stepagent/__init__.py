__version__ = "0.1.0"

from .emitter import Emitter
from .environment import build_environment
from .executor import Session, StepRunner, materialize
from .launch import Launcher, run_build
from .model import Build, BuildStatus, ExecutionResult, Outcome, Secret, Step
from .workspace import Workspace, create_workspace

__all__ = [
    "Emitter",
    "build_environment",
    "Session",
    "StepRunner",
    "materialize",
    "Launcher",
    "run_build",
    "Build",
    "BuildStatus",
    "ExecutionResult",
    "Outcome",
    "Secret",
    "Step",
    "Workspace",
    "create_workspace",
]
