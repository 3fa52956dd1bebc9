from __future__ import annotations
import os

API_URI = os.environ.get("STEPAGENT_API_URI", "http://localhost:8080")
WORKSPACE = os.environ.get("STEPAGENT_WORKSPACE", "/sd/workspace")
EMITTER = os.environ.get("STEPAGENT_EMITTER", "/var/run/sd/emitter")
SHELL = os.environ.get("STEPAGENT_SHELL", "/bin/sh")
SETUP_SCRIPT = os.environ.get("STEPAGENT_SETUP_SCRIPT", "scripts/setup.sh")
STEP_TIMEOUT = float(os.environ["STEPAGENT_STEP_TIMEOUT"]) if os.environ.get("STEPAGENT_STEP_TIMEOUT") else None

# The agent's own API token; removed from every build environment
TOKEN_ENV = "STEPAGENT_TOKEN"
