from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .result import TERMINAL, Run


class RunStore(Protocol):
    def save(self, run: Run) -> None: ...

    def find(self, app_id: str, user_id: Optional[str], since: Optional[str] = None) -> List[Dict[str, Any]]: ...


class InMemoryRunStore:
    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def save(self, run: Run) -> None:
        with self._lock:
            self.records.append(run.to_record())

    def find(self, app_id: str, user_id: Optional[str], since: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self.records)
        return _filter(records, app_id, user_id, since)


class JsonlRunStore:
    """Append-only run log, one persisted record per line."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def save(self, run: Run) -> None:
        line = json.dumps(run.to_record(), sort_keys=True, ensure_ascii=True, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def find(self, app_id: str, user_id: Optional[str], since: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self._lock, self.path.open("r", encoding="utf-8") as handle:
            records = [json.loads(line) for line in handle if line.strip()]
        return _filter(records, app_id, user_id, since)


def has_terminal_run(store: RunStore, app_id: str, user_id: Optional[str], since: str) -> bool:
    return any(record.get("status") in TERMINAL for record in store.find(app_id, user_id, since))


def _filter(
    records: List[Dict[str, Any]], app_id: str, user_id: Optional[str], since: Optional[str]
) -> List[Dict[str, Any]]:
    matched = [r for r in records if r.get("app_id") == app_id and r.get("user_id") == user_id]
    if since is not None:
        matched = [r for r in matched if str(r.get("created_at", "")) >= since]
    return sorted(matched, key=lambda r: str(r.get("created_at", "")))
