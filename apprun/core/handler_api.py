from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TYPE_CHECKING

import httpx

from .errors import (
    AuthFailedError,
    InvalidInputError,
    ProviderError,
    RateLimitedError,
    ScopeMismatchError,
    TokenExpiredError,
    ToolError,
    ToolTimeoutError,
)
from .tokens import CapabilityToken, TokenMinter

if TYPE_CHECKING:  # pragma: no cover
    from .governor import Governor, RunBudget


API_VERSION = "1.0.0"


@dataclass(frozen=True)
class HandlerMeta:
    name: str
    api_version: str
    handler_version: str
    capability: str
    provider: Optional[str] = None
    outputs: Tuple[str, ...] = ()
    primary_output: Optional[str] = None
    hosts: Tuple[str, ...] = ()
    description: str = ""


@dataclass
class ToolOutput:
    fields: Dict[str, Any]
    tokens_used: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerContext:
    run_id: str
    mode: str
    user_id: Optional[str]
    budget: "RunBudget"
    governor: "Governor"
    clock: Callable[[], float]
    logger: logging.Logger
    settings: Dict[str, Any] = field(default_factory=dict)
    http: Optional[httpx.Client] = None
    minter: Optional[TokenMinter] = None

    def now(self) -> float:
        return self.clock()

    def remaining_s(self) -> float:
        return self.governor.remaining_s(self.budget)

    def check_url(self, url: str) -> None:
        self.governor.check_url(self.budget, url)


class ToolHandler(ABC):
    """One capability implementation. Handlers are registered once at startup."""

    @abstractmethod
    def meta(self) -> HandlerMeta:
        raise NotImplementedError

    @abstractmethod
    def invoke(self, token: CapabilityToken, args: Mapping[str, Any], ctx: HandlerContext) -> ToolOutput:
        raise NotImplementedError

    def verify_token(self, token: CapabilityToken, ctx: HandlerContext) -> None:
        capability = self.meta().capability
        if token.scope != capability or token.permission != capability:
            raise ScopeMismatchError(token.scope, capability)
        if token.run_id != ctx.run_id:
            raise ScopeMismatchError(token.scope, capability)
        if ctx.minter is not None:
            # Also rejects tokens of runs that have already closed.
            ctx.minter.check(token, capability)
        elif token.expires_at <= ctx.now():
            raise TokenExpiredError(token.permission)


class HttpToolHandler(ToolHandler):
    """Base for handlers that call a provider over HTTP."""

    def post_json(
        self,
        ctx: HandlerContext,
        url: str,
        *,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        ctx.check_url(url)
        timeout = max(ctx.remaining_s(), 0.001)
        try:
            if ctx.http is not None:
                response = ctx.http.post(url, json=payload, headers=headers, timeout=timeout)
            else:
                with httpx.Client(timeout=timeout) as client:
                    response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ToolTimeoutError(f"{self.meta().name} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.meta().name} transport failure: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            ctx.logger.warning("%s returned HTTP %s", self.meta().name, response.status_code)
            raise status_error(self.meta().name, response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.meta().name} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.meta().name} returned an unexpected payload")
        return data


def status_error(name: str, status: int) -> ToolError:
    message = f"{name} failed with HTTP {status}"
    if status == 429:
        return RateLimitedError(message)
    if status in (401, 403):
        return AuthFailedError(message)
    if status in (408, 504):
        return ToolTimeoutError(message)
    if 400 <= status < 500:
        return InvalidInputError(message)
    return ProviderError(message)
