# environment.py
from __future__ import annotations

import os
from typing import Dict, Iterable, List, Mapping, Optional

from .model import Secret
from .settings import TOKEN_ENV
from .ui.console import get_console

# Variables that user-run commands must never inherit
ENV_DENYLIST = (
    TOKEN_ENV,
)


def build_environment(
    base: Mapping[str, str],
    current: Optional[Mapping[str, str]] = None,
    declared: Optional[Mapping[str, str]] = None,
    secrets: Iterable[Secret] = (),
) -> List[str]:
    """
    Merge every variable source into one flat, sorted list of "KEY=VALUE".

    Precedence (highest wins):
      secrets > declared build variables > base defaults > current environment

    Args:
        base: Defaults supplied by the caller (CI=true, build paths, ...)
        current: Inherited process environment (defaults to os.environ)
        declared: Variables declared by the build
        secrets: Secrets fetched for the build

    Returns:
        Sorted list of "KEY=VALUE" strings, denylisted keys removed
    """
    if current is None:
        current = os.environ

    combined: Dict[str, str] = {}

    # Start with the current environment
    for k, v in current.items():
        if not k or "=" in k:
            get_console().print_debug(f"WARN: bad environment key from base environment: {k!r}")
            continue
        combined[k] = v

    combined.update(base)
    combined.update(declared or {})

    for s in secrets:
        combined[s.name] = s.value

    # Delete any environment variables that we don't want the user to accidentally dump
    for k in ENV_DENYLIST:
        combined.pop(k, None)

    return [f"{k}={combined[k]}" for k in sorted(combined)]


def environment_dict(entries: Iterable[str]) -> Dict[str, str]:
    """Turn "KEY=VALUE" strings back into a mapping (for subprocess)."""
    env: Dict[str, str] = {}
    for e in entries:
        k, sep, v = e.partition("=")
        if not sep:
            continue
        env[k] = v
    return env
