from __future__ import annotations

import base64
import json
import logging

import httpx
import pytest

from apprun.core.config import normalize_runtime_config
from apprun.core.credentials import Credential
from apprun.core.errors import (
    AuthFailedError,
    InvalidInputError,
    ProviderError,
    QuotaExceededError,
    RateLimitedError,
    ScopeMismatchError,
    TokenExpiredError,
)
from apprun.core.governor import Governor, Limits
from apprun.core.handler_api import API_VERSION, HandlerContext
from apprun.core.registry import HandlerRegistry, default_registry
from apprun.core.tokens import TokenMinter
from apprun.handlers_builtin.activities_lookup import ActivitiesLookup
from apprun.handlers_builtin.email_send import EmailSend, render_html
from apprun.handlers_builtin.image_process import ImageProcess
from apprun.handlers_builtin.llm_complete import LlmComplete
from apprun.handlers_builtin.todo_add import InMemoryTodoStore, TodoAdd

from conftest import FakeClock, ProviderStub, chat_reply

PNG = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake").decode()


def _ctx(tool, stub=None, *, mode="try", user_id=None, clock=None, limits=None):
    clock = clock or FakeClock()
    settings = normalize_runtime_config()
    governor = Governor(allowlist=default_registry().hosts(), clock=clock)
    http = httpx.Client(transport=httpx.MockTransport(stub)) if stub is not None else None
    return HandlerContext(
        run_id="run_test",
        mode=mode,
        user_id=user_id,
        budget=governor.open_budget(limits or Limits(), mode),
        governor=governor,
        clock=clock,
        logger=logging.getLogger("apprun.test"),
        settings=settings.handler(tool),
        http=http,
    )


def _token(ctx, capability, provider=None, secret=None, run_id=None):
    minter = TokenMinter(60, clock=ctx.clock)
    credential = Credential(provider=provider, source="platform" if secret else "none", secret=secret)
    return minter.mint(run_id or ctx.run_id, capability, credential)


def test_default_registry_is_closed_and_versioned():
    registry = default_registry()
    assert registry.tools() == ["activities.lookup", "email.send", "image.process", "llm.complete", "todo.add"]
    assert registry.frozen
    for tool in registry.tools():
        meta = registry.meta(tool)
        assert meta.api_version.split(".")[0] == API_VERSION.split(".")[0]
        assert meta.handler_version
    assert registry.provider_map()["openai.chat"] == "openai"
    assert registry.provider_map()["todo.write"] is None
    with pytest.raises(RuntimeError):
        registry.register(ActivitiesLookup())


def test_registry_rejects_duplicates_and_unknown_lookups():
    registry = HandlerRegistry([ActivitiesLookup])
    with pytest.raises(ValueError):
        registry.register(ActivitiesLookup())
    with pytest.raises(KeyError):
        registry.get("shell.exec")


def test_llm_complete_chat_completions():
    stub = ProviderStub()
    stub.route("/v1/chat/completions", chat_reply("## Hello", tokens=77))
    ctx = _ctx("llm.complete", stub)
    token = _token(ctx, "openai.chat", "openai", "sk-try")
    out = LlmComplete().invoke(token, {"prompt": "Say hi", "system": "Be brief."}, ctx)
    assert out.fields == {"markdown": "## Hello"}
    assert out.tokens_used == 77
    request = stub.requests[0]
    assert request.headers["authorization"] == "Bearer sk-try"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-mini"
    assert body["messages"][0]["content"].startswith("Be brief.")
    assert body["messages"][1] == {"role": "user", "content": "Say hi"}


def test_llm_complete_uses_web_search_for_urls():
    stub = ProviderStub()
    stub.route(
        "/v1/responses",
        lambda request: httpx.Response(
            200,
            json={
                "output": [
                    {"type": "web_search_call"},
                    {"type": "message", "content": [{"type": "output_text", "text": "Summary"}]},
                ],
                "usage": {"input_tokens": 10, "output_tokens": 5},
            },
        ),
    )
    ctx = _ctx("llm.complete", stub)
    token = _token(ctx, "openai.chat", "openai", "sk-try")
    out = LlmComplete().invoke(token, {"prompt": "Summarize https://example.com/post"}, ctx)
    assert out.fields["markdown"] == "Summary"
    assert out.tokens_used == 15
    assert json.loads(stub.requests[0].content)["tools"] == [{"type": "web_search"}]


@pytest.mark.parametrize(
    "status, error",
    [(429, RateLimitedError), (401, AuthFailedError), (400, InvalidInputError), (500, ProviderError)],
)
def test_llm_complete_maps_http_failures(status, error):
    stub = ProviderStub()
    stub.route("/v1/chat/completions", lambda request: httpx.Response(status, text="sk-leaky provider text"))
    ctx = _ctx("llm.complete", stub)
    token = _token(ctx, "openai.chat", "openai", "sk-try")
    with pytest.raises(error) as excinfo:
        LlmComplete().invoke(token, {"prompt": "hi"}, ctx)
    assert "sk-leaky" not in str(excinfo.value)


def test_llm_complete_requires_prompt_and_secret():
    ctx = _ctx("llm.complete")
    with pytest.raises(InvalidInputError):
        LlmComplete().invoke(_token(ctx, "openai.chat", "openai", "sk-try"), {"prompt": "  "}, ctx)
    with pytest.raises(AuthFailedError):
        LlmComplete().invoke(_token(ctx, "openai.chat", "openai"), {"prompt": "hi"}, ctx)


def test_handlers_reject_foreign_tokens():
    ctx = _ctx("llm.complete")
    handler = LlmComplete()
    with pytest.raises(ScopeMismatchError):
        handler.invoke(_token(ctx, "email.send", "resend", "re_x"), {"prompt": "hi"}, ctx)
    with pytest.raises(ScopeMismatchError):
        handler.invoke(_token(ctx, "openai.chat", "openai", "sk", run_id="run_other"), {"prompt": "hi"}, ctx)
    token = _token(ctx, "openai.chat", "openai", "sk")
    ctx.clock.advance(120)
    with pytest.raises(TokenExpiredError):
        handler.invoke(token, {"prompt": "hi"}, ctx)


def test_network_policy_blocks_provider_calls():
    stub = ProviderStub()
    stub.route("/v1/chat/completions", chat_reply("never"))
    ctx = _ctx("llm.complete", stub, limits=Limits(network_policy="none"))
    with pytest.raises(QuotaExceededError):
        LlmComplete().invoke(_token(ctx, "openai.chat", "openai", "sk"), {"prompt": "hi"}, ctx)
    assert stub.requests == []


def test_image_process_returns_data_url():
    stub = ProviderStub()
    stub.route(
        "/v1beta/models/gemini-2.5-flash-image:generateContent",
        lambda request: httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "QUJD"}}]}}],
                "usageMetadata": {"totalTokenCount": 1290},
            },
        ),
    )
    ctx = _ctx("image.process", stub)
    token = _token(ctx, "gemini.image", "gemini", "AIza-key")
    out = ImageProcess().invoke(token, {"image": PNG, "instruction": "Make it pop"}, ctx)
    assert out.fields["image"] == "data:image/png;base64,QUJD"
    assert out.tokens_used == 1290
    request = stub.requests[0]
    assert request.headers["x-goog-api-key"] == "AIza-key"
    assert "key=" not in str(request.url)
    part = json.loads(request.content)["contents"][0]["parts"][1]["inline_data"]
    assert part["mime_type"] == "image/png"


def test_image_process_validates_payload():
    ctx = _ctx("image.process")
    token = _token(ctx, "gemini.image", "gemini", "AIza-key")
    with pytest.raises(InvalidInputError):
        ImageProcess().invoke(token, {}, ctx)
    with pytest.raises(InvalidInputError):
        ImageProcess().invoke(token, {"image": "data:image/svg+xml;base64,PHN2Zz4="}, ctx)
    with pytest.raises(InvalidInputError):
        ImageProcess().invoke(token, {"image": "data:image/png;base64,***"}, ctx)
    ctx.settings["max_image_bytes"] = 4
    with pytest.raises(InvalidInputError):
        ImageProcess().invoke(token, {"image": PNG}, ctx)


def test_email_send_posts_escaped_html():
    stub = ProviderStub()
    stub.route("/emails", lambda request: httpx.Response(200, json={"id": "em_123"}))
    ctx = _ctx("email.send", stub)
    token = _token(ctx, "email.send", "resend", "re_key")
    out = EmailSend().invoke(token, {"to": "a@b.co", "content": "<b>hi</b>\nthere"}, ctx)
    assert out.fields["email_id"] == "em_123"
    body = json.loads(stub.requests[0].content)
    assert body["to"] == ["a@b.co"]
    assert body["subject"] == "Your AppFeed Result"
    assert "&lt;b&gt;hi&lt;/b&gt;<br>there" in body["html"]


def test_email_send_rejects_bad_input():
    ctx = _ctx("email.send")
    token = _token(ctx, "email.send", "resend", "re_key")
    with pytest.raises(InvalidInputError):
        EmailSend().invoke(token, {"to": "nobody", "content": "x"}, ctx)
    with pytest.raises(InvalidInputError):
        EmailSend().invoke(token, {"to": "a@b.co", "content": ""}, ctx)
    assert render_html("a & b").count("&amp;") == 1


def test_activities_lookup_catalog():
    ctx = _ctx("activities.lookup")
    token = _token(ctx, "activities.read")
    out = ActivitiesLookup().invoke(token, {"city": "San Francisco", "vibe": "family", "limit": "2"}, ctx)
    assert [i["rank"] for i in out.fields["items"]] == [1, 2]
    assert out.fields["items"][0]["name"] == "California Academy of Sciences"

    fallback = ActivitiesLookup().invoke(token, {"city": "Nowhere", "vibe": "unknown", "limit": 99}, ctx)
    assert len(fallback.fields["items"]) == 5
    assert fallback.fields["items"][0]["name"] == "Lady Bird Lake loop"
    assert len(ActivitiesLookup().invoke(token, {"limit": -3}, ctx).fields["items"]) == 1


def test_tokens_of_closed_runs_are_rejected():
    ctx = _ctx("activities.lookup")
    ctx.minter = TokenMinter(60, clock=ctx.clock)
    token = ctx.minter.mint(ctx.run_id, "activities.read", Credential(provider=None, source="none"))
    handler = ActivitiesLookup()
    assert handler.invoke(token, {"city": "austin"}, ctx).fields["items"]
    ctx.minter.close_run(ctx.run_id)
    with pytest.raises(TokenExpiredError):
        handler.invoke(token, {"city": "austin"}, ctx)


def test_provider_hosts_come_from_handler_meta():
    assert default_registry().hosts() == [
        "api.openai.com",
        "api.resend.com",
        "generativelanguage.googleapis.com",
    ]
    assert normalize_runtime_config().network.allowlist == []


def test_todo_add_persists_only_in_use_mode():
    store = InMemoryTodoStore()
    handler = TodoAdd(store)
    use_ctx = _ctx("todo.add", mode="use", user_id="u1")
    out = handler.invoke(_token(use_ctx, "todo.write"), {"title": "Buy milk"}, use_ctx)
    assert out.fields["total"] == 1
    assert store.items["u1"][0]["title"] == "Buy milk"

    try_ctx = _ctx("todo.add", user_id="u1")
    simulated = handler.invoke(_token(try_ctx, "todo.write"), {"title": "Other"}, try_ctx)
    assert simulated.metadata == {"simulated": True}
    assert len(store.items["u1"]) == 1
    with pytest.raises(InvalidInputError):
        handler.invoke(_token(try_ctx, "todo.write"), {"title": " "}, try_ctx)
