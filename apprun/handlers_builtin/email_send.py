from __future__ import annotations

import html
import re
from typing import Any, Mapping

from apprun.core.errors import AuthFailedError, InvalidInputError, ProviderError
from apprun.core.handler_api import API_VERSION, HandlerContext, HandlerMeta, HttpToolHandler, ToolOutput
from apprun.core.tokens import CapabilityToken

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_SUBJECT = "Your AppFeed Result"


class EmailSend(HttpToolHandler):
    def meta(self) -> HandlerMeta:
        return HandlerMeta(
            name="email.send",
            api_version=API_VERSION,
            handler_version="0.2.0",
            capability="email.send",
            provider="resend",
            outputs=("markdown", "email_id"),
            primary_output="markdown",
            hosts=("api.resend.com",),
            description="Sends an HTML email through Resend.",
        )

    def invoke(self, token: CapabilityToken, args: Mapping[str, Any], ctx: HandlerContext) -> ToolOutput:
        self.verify_token(token, ctx)
        if not token.secret:
            raise AuthFailedError("email.send requires a Resend key")

        to = str(args.get("to") or "").strip()
        content = str(args.get("content") or "")
        if not _EMAIL_RE.match(to):
            raise InvalidInputError("email.send requires a valid recipient address")
        if not content.strip():
            raise InvalidInputError("email.send requires content")
        settings = ctx.settings
        limit = int(settings.get("max_content_chars", 20000))
        if len(content) > limit:
            raise InvalidInputError(f"Email content exceeds {limit} characters")

        base_url = str(settings.get("base_url", "https://api.resend.com")).rstrip("/")
        data = self.post_json(
            ctx,
            f"{base_url}/emails",
            payload={
                "from": settings.get("sender", "AppFeed <noreply@clipcade.com>"),
                "to": [to],
                "subject": str(args.get("subject") or "").strip() or DEFAULT_SUBJECT,
                "html": render_html(content),
            },
            headers={"Authorization": f"Bearer {token.secret}"},
        )
        email_id = data.get("id")
        if not email_id:
            raise ProviderError("email.send response is missing an id")
        ctx.logger.info("email.send delivered message %s", email_id)
        return ToolOutput(
            fields={"markdown": f"**Email sent successfully!**\n\nSent to: {to}", "email_id": str(email_id)},
        )


def render_html(content: str) -> str:
    body = html.escape(content).replace("\n", "<br>")
    return (
        '<div style="font-family: system-ui, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<div style="background: #f5f5f5; padding: 20px; border-radius: 8px;">'
        f"{body}"
        "</div></div>"
    )
