from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from .audit import load_audit_logger
from .config import RuntimeSettings, normalize_runtime_config
from .credentials import CredentialResolver, EnvPlatformCredentials, PlatformCredentialProvider
from .governor import Ceiling, Governor
from .logging import get_event_logger, get_logger
from .registry import HandlerRegistry, default_registry
from .tokens import TokenMinter
from .vault import InMemoryVault, SecretVault


@dataclass
class Runtime:
    """Long-lived collaborators shared by every run. Holds no per-run state."""

    settings: RuntimeSettings
    registry: HandlerRegistry
    resolver: CredentialResolver
    minter: TokenMinter
    governor: Governor
    clock: Callable[[], float] = time.time
    audit: Any = None
    events: Any = None
    logger: logging.Logger = field(default_factory=lambda: get_logger("executor"))
    http: Optional[httpx.Client] = None
    store: Any = None


def build_runtime(
    config: Optional[Dict[str, Any]] = None,
    *,
    vault: Optional[SecretVault] = None,
    platform: Optional[PlatformCredentialProvider] = None,
    registry: Optional[HandlerRegistry] = None,
    clock: Callable[[], float] = time.time,
    http: Optional[httpx.Client] = None,
    store: Any = None,
    audit: Any = None,
) -> Runtime:
    settings = normalize_runtime_config(config)
    logs_dir = settings.logs_dir
    registry = registry or default_registry()
    if not registry.frozen:
        registry.freeze()
    audit_logger = audit if audit is not None else load_audit_logger(settings.audit, logs_dir)

    if platform is None:
        platform = EnvPlatformCredentials(settings.platform_keys, settings.try_keys)
    resolver = CredentialResolver(
        vault if vault is not None else InMemoryVault(),
        platform,
        registry.provider_map(),
        audit=audit_logger,
    )

    signing_key = os.environ.get(settings.signing_key_env)
    minter = TokenMinter(
        settings.token_ttl_s,
        signing_key=signing_key.encode("utf-8") if signing_key else None,
        clock=clock,
        audit=audit_logger,
    )
    ceilings = {
        mode: Ceiling(timeout_ms=c.timeout_ms, tokens=c.tokens) for mode, c in settings.ceilings.items()
    }
    # Handlers may always reach their own provider hosts.
    allowlist = list(settings.network.allowlist) + registry.hosts()
    governor = Governor(ceilings, allowlist, clock=clock)

    return Runtime(
        settings=settings,
        registry=registry,
        resolver=resolver,
        minter=minter,
        governor=governor,
        clock=clock,
        audit=audit_logger,
        events=get_event_logger(logs_dir),
        logger=get_logger("executor", logs_dir),
        http=http,
        store=store,
    )
