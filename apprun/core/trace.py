from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import AppRunError, StepError

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"

INTERNAL_ERROR = "InternalError"


@dataclass(frozen=True)
class TraceEntry:
    index: int
    tool: str
    started_at: str
    duration_ms: int
    status: str
    tokens_used: Optional[int] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "index": self.index,
            "tool": self.tool,
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "status": self.status,
        }
        if self.tokens_used is not None:
            payload["tokens_used"] = self.tokens_used
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind
        if self.message is not None:
            payload["message"] = self.message
        return payload

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tool": self.tool,
            "latencyMs": self.duration_ms,
            "status": self.status,
        }
        if self.tokens_used is not None:
            payload["tokens"] = self.tokens_used
        return payload


def describe_error(exc: BaseException) -> Tuple[str, str]:
    """(error_kind, client-safe message) for a step failure."""
    if isinstance(exc, StepError):
        return exc.error_kind, exc.public_message
    if isinstance(exc, AppRunError):
        return exc.error_kind, "step failed"
    return INTERNAL_ERROR, "internal error"


class TraceRecorder:
    """Append-only, redacted record of step execution for one run."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._entries: List[TraceEntry] = []
        self._sealed = False

    def begin(self) -> float:
        return self.clock()

    def ok(self, index: int, tool: str, started: float, tokens_used: Optional[int] = None) -> TraceEntry:
        return self._append(index, tool, started, STATUS_OK, tokens_used=tokens_used)

    def error(self, index: int, tool: str, started: float, exc: BaseException) -> TraceEntry:
        kind, message = describe_error(exc)
        return self._append(index, tool, started, STATUS_ERROR, error_kind=kind, message=message)

    def skipped(self, index: int, tool: str) -> TraceEntry:
        return self._append(index, tool, self.clock(), STATUS_SKIPPED)

    def external(
        self,
        index: int,
        tool: str,
        *,
        status: str,
        latency_ms: int,
        tokens_used: Optional[int] = None,
    ) -> TraceEntry:
        entry = TraceEntry(
            index=index,
            tool=tool,
            started_at=_iso(self.clock()),
            duration_ms=max(int(latency_ms), 0),
            status=status,
            tokens_used=tokens_used,
        )
        self._push(entry)
        return entry

    def seal(self) -> Tuple[TraceEntry, ...]:
        self._sealed = True
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def _append(
        self,
        index: int,
        tool: str,
        started: float,
        status: str,
        *,
        tokens_used: Optional[int] = None,
        error_kind: Optional[str] = None,
        message: Optional[str] = None,
    ) -> TraceEntry:
        duration_ms = max(int((self.clock() - started) * 1000), 0)
        entry = TraceEntry(
            index=index,
            tool=tool,
            started_at=_iso(started),
            duration_ms=duration_ms,
            status=status,
            tokens_used=tokens_used,
            error_kind=error_kind,
            message=message,
        )
        self._push(entry)
        return entry

    def _push(self, entry: TraceEntry) -> None:
        if self._sealed:
            raise RuntimeError("Trace is sealed")
        self._entries.append(entry)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
