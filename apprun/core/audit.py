from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


class NullAuditLogger:
    def record(self, event: Dict[str, Any]) -> None:
        return


class FileAuditLogger:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record(self, event: Dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("ts", time.time())
        line = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


class MemoryAuditLogger:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def record(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))


def load_audit_logger(config: Any, logs_dir: Optional[Path]) -> Any:
    if not config:
        return NullAuditLogger()
    if config is True:
        if logs_dir is None:
            return MemoryAuditLogger()
        return FileAuditLogger(logs_dir / "audit.jsonl")
    if isinstance(config, dict):
        logger_type = config.get("type", "file")
        if logger_type == "file":
            path = config.get("path") or (logs_dir / "audit.jsonl" if logs_dir else None)
            if path is None:
                raise ValueError("File audit logger needs a path or logs_dir")
            return FileAuditLogger(Path(path))
        if logger_type == "memory":
            return MemoryAuditLogger()
        if logger_type == "null":
            return NullAuditLogger()
        raise ValueError(f"Unknown audit logger type: {logger_type}")
    if hasattr(config, "record"):
        return config
    return NullAuditLogger()
