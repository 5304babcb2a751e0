from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from .errors import QuotaExceededError

NET_NONE = "none"
NET_ALLOWLIST = "allowlist"
NET_OPEN = "open"
NETWORK_POLICIES = (NET_NONE, NET_ALLOWLIST, NET_OPEN)


@dataclass(frozen=True)
class Ceiling:
    timeout_ms: int
    tokens: int


DEFAULT_CEILINGS = {
    "try": Ceiling(timeout_ms=10000, tokens=4000),
    "use": Ceiling(timeout_ms=60000, tokens=20000),
}


@dataclass(frozen=True)
class Limits:
    timeout_ms: Optional[int] = None
    token_budget: Optional[int] = None
    network_policy: str = NET_ALLOWLIST
    allow_hosts: Tuple[str, ...] = ()


@dataclass
class RunBudget:
    mode: str
    timeout_ms: int
    token_budget: int
    network_policy: str
    allow_hosts: FrozenSet[str]
    started_at: float
    deadline: float
    tokens_used: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "timeout_ms": self.timeout_ms,
            "token_budget": self.token_budget,
            "tokens_used": self.tokens_used,
            "network_policy": self.network_policy,
        }


class Governor:
    """Per-mode wall-clock, token and network ceilings."""

    def __init__(
        self,
        ceilings: Optional[Mapping[str, Ceiling]] = None,
        allowlist: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ceilings = dict(ceilings or DEFAULT_CEILINGS)
        self.allowlist = frozenset(host.lower() for host in allowlist)
        self.clock = clock

    def ceiling(self, mode: str) -> Ceiling:
        if mode not in self.ceilings:
            raise ValueError(f"No ceiling configured for mode {mode}")
        return self.ceilings[mode]

    def open_budget(self, limits: Limits, mode: str) -> RunBudget:
        ceiling = self.ceiling(mode)
        timeout_ms = ceiling.timeout_ms
        if limits.timeout_ms is not None:
            timeout_ms = min(int(limits.timeout_ms), ceiling.timeout_ms)
        token_budget = ceiling.tokens
        if limits.token_budget is not None:
            token_budget = min(int(limits.token_budget), ceiling.tokens)
        now = self.clock()
        return RunBudget(
            mode=mode,
            timeout_ms=timeout_ms,
            token_budget=token_budget,
            network_policy=limits.network_policy,
            allow_hosts=self.allowlist | frozenset(h.lower() for h in limits.allow_hosts),
            started_at=now,
            deadline=now + timeout_ms / 1000.0,
        )

    def check_budget(self, budget: RunBudget) -> None:
        with budget._lock:
            if self.clock() >= budget.deadline:
                raise QuotaExceededError("deadline", f"Run exceeded {budget.timeout_ms}ms wall-clock budget")
            if budget.tokens_used >= budget.token_budget:
                raise QuotaExceededError("tokens", f"Run spent its {budget.token_budget} token budget")

    def charge(self, budget: RunBudget, tokens: Optional[int]) -> None:
        if not tokens:
            return
        with budget._lock:
            budget.tokens_used += int(tokens)

    def remaining_s(self, budget: RunBudget) -> float:
        return max(budget.deadline - self.clock(), 0.0)

    def check_url(self, budget: RunBudget, url: str) -> None:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        if parts.scheme not in ("http", "https") or not host:
            raise QuotaExceededError("network", "Outbound URL is not an http(s) URL")
        if budget.network_policy == NET_OPEN:
            return
        if budget.network_policy == NET_ALLOWLIST and host in budget.allow_hosts:
            return
        raise QuotaExceededError("network", f"Outbound host {host} is not allowed")
