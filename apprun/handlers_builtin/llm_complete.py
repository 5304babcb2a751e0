from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional

from apprun.core.errors import AuthFailedError, InvalidInputError, ProviderError
from apprun.core.handler_api import API_VERSION, HandlerContext, HandlerMeta, HttpToolHandler, ToolOutput
from apprun.core.tokens import CapabilityToken

_URL_RE = re.compile(r"https?://\S+")

DEFAULT_SYSTEM = "You are a helpful AI assistant."
STYLE_GUIDE = """

OUTPUT GUIDELINES:
- Use clear markdown formatting with headers (##, ###)
- Use bullet points or numbered lists where appropriate
- Keep paragraphs short and scannable
- Use **bold** for emphasis
"""


class LlmComplete(HttpToolHandler):
    def meta(self) -> HandlerMeta:
        return HandlerMeta(
            name="llm.complete",
            api_version=API_VERSION,
            handler_version="0.2.0",
            capability="openai.chat",
            provider="openai",
            outputs=("markdown",),
            primary_output="markdown",
            hosts=("api.openai.com",),
            description="Text completion via OpenAI; switches to web search when the prompt carries a URL.",
        )

    def invoke(self, token: CapabilityToken, args: Mapping[str, Any], ctx: HandlerContext) -> ToolOutput:
        self.verify_token(token, ctx)
        if not token.secret:
            raise AuthFailedError("llm.complete requires an OpenAI key")

        prompt = str(args.get("prompt") or "").strip()
        if not prompt:
            raise InvalidInputError("llm.complete requires a prompt")
        system = str(args.get("system") or "").strip() or DEFAULT_SYSTEM
        instructions = system + STYLE_GUIDE

        settings = ctx.settings
        base_url = str(settings.get("base_url", "https://api.openai.com")).rstrip("/")
        model = args.get("model") or settings.get("model", "gpt-4o-mini")
        max_tokens = int(settings.get("max_tokens", 500))
        temperature = float(args.get("temperature", settings.get("temperature", 0.7)))
        headers = {"Authorization": f"Bearer {token.secret}"}

        use_search = bool(settings.get("web_search", True)) and bool(_URL_RE.search(prompt))
        if use_search:
            ctx.logger.info("llm.complete: URL in prompt, using web search")
            data = self.post_json(
                ctx,
                f"{base_url}/v1/responses",
                payload={
                    "model": model,
                    "input": prompt,
                    "instructions": instructions,
                    "tools": [{"type": "web_search"}],
                    "temperature": temperature,
                    "max_output_tokens": max_tokens,
                },
                headers=headers,
            )
            text = _responses_text(data)
        else:
            data = self.post_json(
                ctx,
                f"{base_url}/v1/chat/completions",
                payload={
                    "model": model,
                    "messages": [
                        {"role": "system", "content": instructions},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                headers=headers,
            )
            text = _chat_text(data)

        if not text:
            raise ProviderError("llm.complete returned no content")
        limit = int(settings.get("max_output_chars", 8000))
        if len(text) > limit:
            text = text[:limit]
        return ToolOutput(
            fields={"markdown": text},
            tokens_used=_usage_tokens(data),
            metadata={"model": model, "web_search": use_search},
        )


def _chat_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return ""
    return str(message.get("content") or "").strip()


def _responses_text(data: Dict[str, Any]) -> str:
    output = data.get("output")
    if isinstance(output, str):
        return output.strip()
    if isinstance(output, list):
        parts: List[str] = []
        for item in output:
            if not isinstance(item, dict):
                continue
            if item.get("text"):
                parts.append(str(item["text"]))
                continue
            content = item.get("content")
            if isinstance(content, list):
                texts = [str(c["text"]) for c in content if isinstance(c, dict) and c.get("text")]
                if texts:
                    parts.append("\n".join(texts))
        return "\n\n".join(parts).strip()
    return str(data.get("output_text") or data.get("text") or "").strip()


def _usage_tokens(data: Dict[str, Any]) -> Optional[int]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("total_tokens")
    if isinstance(total, int):
        return total
    pieces = [usage.get(k) for k in ("prompt_tokens", "completion_tokens", "input_tokens", "output_tokens")]
    counted = [p for p in pieces if isinstance(p, int)]
    return sum(counted) if counted else None
