# emitter.py
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Iterable, List, Optional, TextIO

from .model import Step

REDACTED = "***"


class Emitter:
    """
    Line-buffered sink for a build's live log.

    Every complete line is written to the target as one JSON record:
        {"t": <epoch ms>, "n": <line number>, "s": <step name>, "m": <message>}

    The message is never prefixed. Registered redactions (secret values,
    completion tokens) are replaced by "***" before anything is written.
    """

    def __init__(self, target: TextIO, redact: Iterable[str] = ()):
        self._target = target
        self._buffer = ""
        self._step: Optional[str] = None
        self._line_no = 0
        self._redactions: List[str] = []
        self._closed = False
        self.add_redactions(redact)

    @classmethod
    def open(cls, path: str | Path, redact: Iterable[str] = ()) -> Emitter:
        """Open (append to) the emitter file, e.g. a named pipe read by the log service."""
        return cls(open(path, "a", encoding="utf-8"), redact=redact)

    @property
    def step(self) -> Optional[str]:
        return self._step

    @property
    def closed(self) -> bool:
        return self._closed

    def add_redactions(self, values: Iterable[str]) -> None:
        for v in values:
            if v and v not in self._redactions:
                self._redactions.append(v)
        # Longest first so a secret containing another one is fully masked
        self._redactions.sort(key=len, reverse=True)

    def announce_step(self, step: Step) -> None:
        """Mark where `step`'s output begins in the emitted stream."""
        self._flush_partial()
        self._step = step.name
        self._emit(f"$ {step.cmd}")

    def write(self, text: str) -> int:
        if self._closed:
            raise ValueError("write to closed emitter")
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._emit(line.rstrip("\r"))
        return len(text)

    def emit_line(self, line: str) -> None:
        self.write(line + "\n")

    def flush(self) -> None:
        """Flush the target. A pending partial line stays buffered."""
        if not self._closed:
            self._target.flush()

    def close(self) -> None:
        """Flush any partial line and release the target. Safe to call twice."""
        if self._closed:
            return
        self._flush_partial()
        self._closed = True
        self._target.close()

    def __enter__(self) -> Emitter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _mask(self, message: str) -> str:
        for r in self._redactions:
            if r in message:
                message = message.replace(r, REDACTED)
        return message

    def _flush_partial(self) -> None:
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._emit(line)

    def _emit(self, message: str) -> None:
        self._line_no += 1
        record = {
            "t": int(time.time() * 1000),
            "n": self._line_no,
            "s": self._step,
            "m": self._mask(message),
        }
        self._target.write(json.dumps(record) + "\n")
        self._target.flush()
