from __future__ import annotations

import secrets
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from apprun.core.errors import InvalidInputError
from apprun.core.handler_api import API_VERSION, HandlerContext, HandlerMeta, ToolHandler, ToolOutput
from apprun.core.tokens import CapabilityToken


class TodoStore(Protocol):
    def add(self, user_id: str, item: Dict[str, Any]) -> int: ...


class InMemoryTodoStore:
    def __init__(self) -> None:
        self.items: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def add(self, user_id: str, item: Dict[str, Any]) -> int:
        with self._lock:
            bucket = self.items.setdefault(user_id, [])
            bucket.append(dict(item))
            return len(bucket)


class TodoAdd(ToolHandler):
    """Adds a todo. Persists only for signed-in ``use`` runs; otherwise simulated."""

    def __init__(self, store: Optional[TodoStore] = None) -> None:
        self.store = store if store is not None else InMemoryTodoStore()

    def meta(self) -> HandlerMeta:
        return HandlerMeta(
            name="todo.add",
            api_version=API_VERSION,
            handler_version="0.1.0",
            capability="todo.write",
            provider=None,
            outputs=("todo", "total"),
            primary_output="todo",
            description="Adds an item to the user's todo list.",
        )

    def invoke(self, token: CapabilityToken, args: Mapping[str, Any], ctx: HandlerContext) -> ToolOutput:
        self.verify_token(token, ctx)
        title = str(args.get("title") or "").strip()
        if not title:
            raise InvalidInputError("todo.add requires a title")
        item = {
            "id": "td_" + secrets.token_hex(4),
            "title": title,
            "due": str(args.get("due") or "").strip(),
            "done": False,
            "created_at": datetime.fromtimestamp(ctx.now(), tz=timezone.utc).isoformat(),
        }
        if ctx.mode == "use" and ctx.user_id:
            total = self.store.add(ctx.user_id, item)
            return ToolOutput(fields={"todo": item, "total": total})
        return ToolOutput(fields={"todo": item, "total": 1}, metadata={"simulated": True})
