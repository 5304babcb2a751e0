from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .credentials import Credential
from .errors import ScopeMismatchError, TokenError, TokenExpiredError


@dataclass(frozen=True)
class CapabilityToken:
    token_id: str
    run_id: str
    permission: str
    scope: str
    issued_at: float
    expires_at: float
    credential: Credential = field(repr=False, compare=False)

    @property
    def secret(self) -> Optional[str]:
        return self.credential.secret

    def describe(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "run_id": self.run_id,
            "permission": self.permission,
            "expires_at": self.expires_at,
        }


class TokenMinter:
    def __init__(
        self,
        max_ttl_s: float = 60.0,
        *,
        signing_key: Optional[bytes] = None,
        clock: Callable[[], float] = time.time,
        audit: Any = None,
    ) -> None:
        self.max_ttl_s = max_ttl_s
        self.clock = clock
        self.audit = audit
        self._signing_key = signing_key or secrets.token_bytes(32)
        self._closed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def mint(
        self,
        run_id: str,
        permission: str,
        credential: Credential,
        deadline: Optional[float] = None,
    ) -> CapabilityToken:
        now = self.clock()
        expires_at = now + self.max_ttl_s
        if deadline is not None:
            expires_at = min(expires_at, deadline)
        token = CapabilityToken(
            token_id="cap_" + secrets.token_hex(8),
            run_id=run_id,
            permission=permission,
            scope=permission,
            issued_at=now,
            expires_at=expires_at,
            credential=credential,
        )
        self._audit("token.mint", **token.describe())
        return token

    def close_run(self, run_id: str) -> None:
        now = self.clock()
        with self._lock:
            # Tokens of runs closed longer than one TTL ago have expired on their own.
            self._closed = {k: t for k, t in self._closed.items() if t + self.max_ttl_s > now}
            self._closed[run_id] = now
        self._audit("token.revoke", run_id=run_id)

    def is_closed(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._closed

    def check(self, token: CapabilityToken, capability: str) -> None:
        if token.scope != capability:
            raise ScopeMismatchError(token.scope, capability)
        if token.expires_at <= self.clock() or self.is_closed(token.run_id):
            raise TokenExpiredError(token.permission)

    def to_bearer(self, token: CapabilityToken) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {
            "jti": token.token_id,
            "sub": token.run_id,
            "scope": token.scope,
            "iat": int(token.issued_at),
            "exp": token.expires_at,
        }
        message = f"{_b64url(json.dumps(header).encode())}.{_b64url(json.dumps(payload).encode())}"
        signature = hmac.new(self._signing_key, message.encode(), hashlib.sha256).digest()
        return f"{message}.{_b64url(signature)}"

    def verify_bearer(self, value: str, scope: str) -> Dict[str, Any]:
        parts = value.split(".")
        if len(parts) != 3:
            raise TokenError("Malformed bearer token")
        header_b64, payload_b64, signature_b64 = parts
        message = f"{header_b64}.{payload_b64}"
        expected = hmac.new(self._signing_key, message.encode(), hashlib.sha256).digest()
        try:
            actual = _b64url_decode(signature_b64)
            payload = json.loads(_b64url_decode(payload_b64))
        except ValueError as exc:
            raise TokenError("Malformed bearer token") from exc
        if not hmac.compare_digest(expected, actual):
            raise TokenError("Bearer token signature mismatch")
        if payload.get("scope") != scope:
            raise ScopeMismatchError(str(payload.get("scope")), scope)
        if payload.get("exp", 0) <= self.clock() or self.is_closed(str(payload.get("sub"))):
            raise TokenExpiredError(scope)
        return payload

    def _audit(self, event: str, **data: Any) -> None:
        if self.audit is None:
            return
        payload = {"event": event}
        payload.update(data)
        self.audit.record(payload)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
