from __future__ import annotations

import inspect
from typing import Any, Dict, Iterable, List, Optional

from .handler_api import API_VERSION, HandlerMeta, ToolHandler


def _major(version: str) -> str:
    return version.split(".")[0]


class HandlerRegistry:
    """Closed tool registry: one handler per tool id, frozen after startup."""

    def __init__(self, handlers: Iterable[Any] = ()) -> None:
        self._handlers: Dict[str, ToolHandler] = {}
        self._frozen = False
        for handler in handlers:
            self.register(handler)

    def register(self, provider: Any) -> ToolHandler:
        if self._frozen:
            raise RuntimeError("Handler registry is frozen")
        handler = _instantiate_handler(provider)
        meta = handler.meta()
        _check_compatibility(meta)
        if meta.name in self._handlers:
            raise ValueError(f"Duplicate handler for tool {meta.name}")
        self._handlers[meta.name] = handler
        return handler

    def freeze(self) -> "HandlerRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def has(self, tool: str) -> bool:
        return tool in self._handlers

    def get(self, tool: str) -> ToolHandler:
        if tool not in self._handlers:
            raise KeyError(f"Handler not found: {tool}")
        return self._handlers[tool]

    def meta(self, tool: str) -> HandlerMeta:
        return self.get(tool).meta()

    def tools(self) -> List[str]:
        return sorted(self._handlers)

    def hosts(self) -> List[str]:
        """Provider hosts the registered handlers call."""
        return sorted({host for h in self._handlers.values() for host in h.meta().hosts})

    def provider_map(self) -> Dict[str, Optional[str]]:
        return {h.meta().capability: h.meta().provider for h in self._handlers.values()}


def builtin_handlers(todo_store: Any = None) -> List[ToolHandler]:
    from apprun.handlers_builtin.activities_lookup import ActivitiesLookup
    from apprun.handlers_builtin.email_send import EmailSend
    from apprun.handlers_builtin.image_process import ImageProcess
    from apprun.handlers_builtin.llm_complete import LlmComplete
    from apprun.handlers_builtin.todo_add import TodoAdd

    return [
        LlmComplete(),
        ImageProcess(),
        EmailSend(),
        ActivitiesLookup(),
        TodoAdd(todo_store),
    ]


def default_registry(todo_store: Any = None, extra: Iterable[Any] = ()) -> HandlerRegistry:
    registry = HandlerRegistry(builtin_handlers(todo_store))
    for handler in extra:
        registry.register(handler)
    return registry.freeze()


def _check_compatibility(meta: HandlerMeta) -> None:
    if _major(meta.api_version) != _major(API_VERSION):
        raise RuntimeError(
            f"Handler API version mismatch: host {API_VERSION} vs handler {meta.api_version}"
        )


def _instantiate_handler(provider: Any) -> ToolHandler:
    obj = provider
    if inspect.isclass(obj):
        obj = obj()
    if not isinstance(obj, ToolHandler):
        raise RuntimeError(f"Registered object is not a ToolHandler: {type(obj)}")
    return obj
