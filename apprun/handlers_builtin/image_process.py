from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from apprun.core.errors import AuthFailedError, InvalidInputError, ProviderError
from apprun.core.handler_api import API_VERSION, HandlerContext, HandlerMeta, HttpToolHandler, ToolOutput
from apprun.core.tokens import CapabilityToken

_DATA_URL_RE = re.compile(r"^data:(image/[A-Za-z0-9.+-]+);base64,(.+)$", re.DOTALL)
_ALLOWED_MIME = ("image/png", "image/jpeg", "image/webp", "image/gif")

DEFAULT_INSTRUCTION = "Transform this image artistically"


class ImageProcess(HttpToolHandler):
    def meta(self) -> HandlerMeta:
        return HandlerMeta(
            name="image.process",
            api_version=API_VERSION,
            handler_version="0.2.0",
            capability="gemini.image",
            provider="gemini",
            outputs=("image", "markdown"),
            primary_output="image",
            hosts=("generativelanguage.googleapis.com",),
            description="Image-to-image generation via Gemini.",
        )

    def invoke(self, token: CapabilityToken, args: Mapping[str, Any], ctx: HandlerContext) -> ToolOutput:
        self.verify_token(token, ctx)
        if not token.secret:
            raise AuthFailedError("image.process requires a Gemini key")

        settings = ctx.settings
        mime_type, data = _split_image(args.get("image"), int(settings.get("max_image_bytes", 5 * 1024 * 1024)))
        instruction = str(args.get("instruction") or "").strip() or DEFAULT_INSTRUCTION
        base_url = str(settings.get("base_url", "https://generativelanguage.googleapis.com")).rstrip("/")
        model = settings.get("model", "gemini-2.5-flash-image")

        result = self.post_json(
            ctx,
            f"{base_url}/v1beta/models/{model}:generateContent",
            payload={
                "contents": [
                    {
                        "parts": [
                            {"text": instruction},
                            {"inline_data": {"mime_type": mime_type, "data": data}},
                        ]
                    }
                ],
                "generationConfig": {
                    "responseModalities": ["Image"],
                    "imageConfig": {"aspectRatio": "1:1"},
                },
            },
            headers={"x-goog-api-key": token.secret},
        )

        parts = _parts(result)
        image = next((p.get("inline_data") or p.get("inlineData") for p in parts if p.get("inline_data") or p.get("inlineData")), None)
        tokens = _usage_tokens(result)
        if image is None:
            text = next((str(p["text"]) for p in parts if p.get("text")), "")
            if not text:
                raise ProviderError("image.process returned no image")
            return ToolOutput(fields={"markdown": text}, tokens_used=tokens, metadata={"model": model})

        out_mime = image.get("mime_type") or image.get("mimeType") or "image/png"
        return ToolOutput(
            fields={
                "image": f"data:{out_mime};base64,{image.get('data', '')}",
                "markdown": "**Image transformed successfully!**",
            },
            tokens_used=tokens,
            metadata={"model": model},
        )


def _split_image(value: Any, max_bytes: int) -> Tuple[str, str]:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError("image.process requires an image")
    match = _DATA_URL_RE.match(value.strip())
    if match:
        mime_type, data = match.group(1).lower(), match.group(2)
    else:
        mime_type, data = "image/jpeg", value.strip()
    if mime_type not in _ALLOWED_MIME:
        raise InvalidInputError(f"Unsupported image type {mime_type}")
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError("Image payload is not valid base64") from exc
    if len(raw) > max_bytes:
        raise InvalidInputError(f"Image exceeds {max_bytes} bytes")
    return mime_type, data


def _parts(result: Dict[str, Any]) -> list:
    candidates = result.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None
    return [p for p in parts or [] if isinstance(p, dict)]


def _usage_tokens(result: Dict[str, Any]) -> Optional[int]:
    usage = result.get("usageMetadata")
    if isinstance(usage, dict) and isinstance(usage.get("totalTokenCount"), int):
        return usage["totalTokenCount"]
    return None
