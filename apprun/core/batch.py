"""Scheduled batch driver.

Runs saved apps for subscribed users in ``use`` mode, with no platform
fallback. A job only fires when its cadence allows today, its ``send_time``
matches the current UTC minute, and no terminal run exists for the same
app and user since the start of the UTC day.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import AppRunError
from .executor import execute
from .logging import get_logger
from .manifest import Manifest, validate_inputs
from .runtime import Runtime
from .store import has_terminal_run

CADENCES = ("daily", "weekdays")
DEFAULT_SEND_TIME = "08:00"

SENT = "sent"
SKIP_NO_EMAIL = "skip_no_email"
SKIP_CADENCE = "skip_cadence"
SKIP_TIME = "skip_time_mismatch"
SKIP_ALREADY_RAN = "skip_already_ran"
ERROR = "error"


@dataclass(frozen=True)
class ScheduledJob:
    manifest: Manifest
    user_id: str
    inputs: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobResult:
    app_id: str
    user_id: str
    status: str
    run_id: Optional[str] = None
    run_status: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"app_id": self.app_id, "user_id": self.user_id, "status": self.status}
        if self.run_id is not None:
            payload["run_id"] = self.run_id
            payload["run_status"] = self.run_status
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class BatchDispatcher:
    def __init__(self, runtime: Runtime, *, clock: Optional[Callable[[], float]] = None) -> None:
        if runtime.store is None:
            raise ValueError("Batch dispatch requires a runtime with a run store")
        self.runtime = runtime
        self.clock = clock or runtime.clock or time.time
        self.logger = get_logger("batch", runtime.settings.logs_dir)

    def dispatch(self, jobs: Iterable[ScheduledJob]) -> List[JobResult]:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        results = [self._dispatch_one(job, now) for job in jobs]
        sent = sum(1 for result in results if result.status == SENT)
        self.logger.info("Batch at %s: %s job(s), %s sent", now.strftime("%H:%M"), len(results), sent)
        return results

    def _dispatch_one(self, job: ScheduledJob, now: datetime) -> JobResult:
        manifest = job.manifest
        skip = self._guard(job, now)
        if skip is not None:
            return JobResult(manifest.id, job.user_id, skip)
        try:
            inputs = validate_inputs(manifest, job.inputs)
            run = execute(
                manifest,
                inputs,
                mode="use",
                runtime=self.runtime,
                user_id=job.user_id,
                fallback_allowed=False,
            )
            self.runtime.store.save(run)
        except AppRunError as exc:
            self.logger.warning("Batch job %s/%s rejected: %s", manifest.id, job.user_id, exc)
            return JobResult(manifest.id, job.user_id, ERROR, detail=str(exc))
        return JobResult(manifest.id, job.user_id, SENT, run_id=run.id, run_status=run.status)

    def _guard(self, job: ScheduledJob, now: datetime) -> Optional[str]:
        inputs = job.inputs
        if "email" in job.manifest.inputs_schema and not inputs.get("email"):
            return SKIP_NO_EMAIL
        cadence = inputs.get("cadence") or "daily"
        if cadence == "weekdays" and now.weekday() >= 5:
            return SKIP_CADENCE
        send_time = inputs.get("send_time") or DEFAULT_SEND_TIME
        if send_time != now.strftime("%H:%M"):
            return SKIP_TIME
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0).isoformat()
        if has_terminal_run(self.runtime.store, job.manifest.id, job.user_id, day_start):
            return SKIP_ALREADY_RAN
        return None
