from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import StepError
from .trace import TraceEntry, TraceRecorder

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
PARTIAL = "partial"
FAILED = "failed"

TERMINAL = frozenset({COMPLETED, PARTIAL, FAILED})
_TRANSITIONS = {
    PENDING: frozenset({RUNNING}),
    RUNNING: TERMINAL,
}


def new_run_id() -> str:
    return "run_" + secrets.token_hex(8)


@dataclass(frozen=True)
class Run:
    id: str
    app_id: str
    user_id: Optional[str]
    mode: str
    inputs: Mapping[str, Any]
    status: str
    outputs: Mapping[str, Any]
    trace: Tuple[TraceEntry, ...]
    duration_ms: int
    created_at: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "user_id": self.user_id,
            "mode": self.mode,
            "status": self.status,
            "inputs": dict(self.inputs),
            "outputs": dict(self.outputs),
            "trace": [entry.to_dict() for entry in self.trace],
            "duration_ms": self.duration_ms,
            "created_at": self.created_at,
        }

    def wire_trace(self) -> List[Dict[str, Any]]:
        return [entry.to_wire() for entry in self.trace]


class RunBuilder:
    """Mutable run state while executing; produces a frozen :class:`Run`."""

    def __init__(
        self,
        app_id: str,
        *,
        mode: str,
        user_id: Optional[str],
        inputs: Mapping[str, Any],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.id = new_run_id()
        self.app_id = app_id
        self.mode = mode
        self.user_id = user_id
        self.inputs = dict(inputs)
        self.clock = clock
        self.status = PENDING
        self.outputs: Dict[str, Any] = {}
        self.recorder = TraceRecorder(clock)
        self.created = clock()

    def _transition(self, target: str) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise RuntimeError(f"Illegal run transition {self.status} -> {target}")
        self.status = target

    def start(self) -> None:
        self._transition(RUNNING)

    def merge(self, values: Mapping[str, Any]) -> None:
        if self.status != RUNNING:
            raise RuntimeError("Outputs can only be merged while running")
        self.outputs.update(values)

    def namespace(self) -> Dict[str, Any]:
        merged = dict(self.inputs)
        merged.update(self.outputs)
        return merged

    def finish(self, status: str, outputs: Mapping[str, Any]) -> Run:
        self._transition(status)
        return Run(
            id=self.id,
            app_id=self.app_id,
            user_id=self.user_id,
            mode=self.mode,
            inputs=MappingProxyType(dict(self.inputs)),
            status=status,
            outputs=MappingProxyType(dict(outputs)),
            trace=self.recorder.seal(),
            duration_ms=max(int((self.clock() - self.created) * 1000), 0),
            created_at=datetime.fromtimestamp(self.created, tz=timezone.utc).isoformat(),
        )


def decide_status(error: Optional[BaseException], has_outputs: bool) -> str:
    if error is None:
        return COMPLETED
    if isinstance(error, StepError) and error.transient and has_outputs:
        return PARTIAL
    return FAILED


def assemble_outputs(
    produced: Mapping[str, Any],
    outputs_schema: Mapping[str, str],
    status: str,
    logger: Any = None,
) -> Dict[str, Any]:
    if status == FAILED:
        return {}
    assembled = dict(produced)
    missing = [name for name in outputs_schema if name not in assembled]
    if missing and status == COMPLETED and logger is not None:
        logger.warning("Run completed without declared outputs: %s", ", ".join(sorted(missing)))
    return assembled
