from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from apprun.core.audit import MemoryAuditLogger
from apprun.core.credentials import StaticPlatformCredentials
from apprun.core.runtime import build_runtime
from apprun.core.vault import InMemoryVault


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ProviderStub:
    """Scripted provider endpoints behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def route(self, path: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get(request.url.path)
        if responder is None:
            return httpx.Response(404, json={"error": "not found"})
        return responder(request)

    def bodies(self, path: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


def chat_reply(text: str, tokens: int = 42) -> Callable[[httpx.Request], httpx.Response]:
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": text}}],
                "usage": {"total_tokens": tokens},
            },
        )

    return responder


def echo_chat(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    prompt = body["messages"][-1]["content"]
    return httpx.Response(
        200,
        json={"choices": [{"message": {"content": f"echo: {prompt}"}}], "usage": {"total_tokens": 10}},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> ProviderStub:
    stub = ProviderStub()
    stub.route("/v1/chat/completions", echo_chat)
    return stub


@pytest.fixture
def make_runtime(provider: ProviderStub):
    clients: List[httpx.Client] = []

    def factory(
        config: Optional[Dict[str, Any]] = None,
        *,
        vault: Optional[InMemoryVault] = None,
        platform_keys: Optional[Dict[str, str]] = None,
        try_keys: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ):
        client = httpx.Client(transport=httpx.MockTransport(provider))
        clients.append(client)
        kwargs.setdefault("audit", MemoryAuditLogger())
        return build_runtime(
            config,
            vault=vault if vault is not None else InMemoryVault(),
            platform=StaticPlatformCredentials(
                platform_keys if platform_keys is not None else {"openai": "sk-platform-0000000000"},
                try_keys if try_keys is not None else {"openai": "sk-try-000000000000"},
            ),
            http=client,
            **kwargs,
        )

    yield factory
    for client in clients:
        client.close()


def llm_manifest(**overrides: Any) -> Dict[str, Any]:
    manifest: Dict[str, Any] = {
        "id": "draft-and-polish",
        "name": "Draft and polish",
        "inputs": {"topic": {"type": "string", "required": True}},
        "outputs": {"draft": {"type": "string"}, "final": {"type": "string"}},
        "permissions": ["openai.chat"],
        "runtime": {
            "steps": [
                {"tool": "llm.complete", "args": {"prompt": "Draft about {{topic}}"}, "output": "draft"},
                {"tool": "llm.complete", "args": {"prompt": "Polish: {{draft}}"}, "output": "final"},
            ]
        },
    }
    manifest.update(overrides)
    return manifest
