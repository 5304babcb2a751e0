from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from .errors import CredentialMissingError
from .logging import get_logger
from .vault import SecretVault

SOURCE_USER = "user"
SOURCE_PLATFORM = "platform"
SOURCE_PLATFORM_TRY = "platform-try"
SOURCE_NONE = "none"

MODES = ("try", "use")


@dataclass(frozen=True)
class Credential:
    provider: Optional[str]
    source: str
    user_id: Optional[str] = None
    secret: Optional[str] = field(default=None, repr=False, compare=False)

    def describe(self) -> dict:
        return {"provider": self.provider, "source": self.source}


class PlatformCredentialProvider(Protocol):
    def get(self, provider: str, *, constrained: bool) -> Optional[str]: ...


class StaticPlatformCredentials:
    def __init__(
        self,
        keys: Optional[Mapping[str, str]] = None,
        try_keys: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._keys = dict(keys or {})
        self._try_keys = dict(try_keys or {})

    def get(self, provider: str, *, constrained: bool) -> Optional[str]:
        if constrained and self._try_keys.get(provider):
            return self._try_keys[provider]
        return self._keys.get(provider) or None


class EnvPlatformCredentials:
    """Reads platform keys from the environment on every lookup."""

    def __init__(
        self,
        key_envs: Mapping[str, str],
        try_key_envs: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._key_envs = dict(key_envs)
        self._try_key_envs = dict(try_key_envs or {})
        self._environ = environ

    def get(self, provider: str, *, constrained: bool) -> Optional[str]:
        env = self._environ if self._environ is not None else os.environ
        if constrained:
            name = self._try_key_envs.get(provider)
            if name and env.get(name):
                return env[name]
        name = self._key_envs.get(provider)
        if not name:
            return None
        return env.get(name) or None


class NoPlatformCredentials:
    def get(self, provider: str, *, constrained: bool) -> Optional[str]:
        return None


class CredentialResolver:
    def __init__(
        self,
        vault: SecretVault,
        platform: PlatformCredentialProvider,
        providers: Mapping[str, Optional[str]],
        *,
        audit: Any = None,
    ) -> None:
        self.vault = vault
        self.platform = platform
        self.providers = dict(providers)
        self.audit = audit
        self.logger = get_logger("credentials")

    def provider_for(self, permission: str) -> Optional[str]:
        if permission not in self.providers:
            raise CredentialMissingError(permission)
        return self.providers[permission]

    def resolve(
        self,
        user_id: Optional[str],
        permission: str,
        mode: str,
        fallback_allowed: bool,
    ) -> Credential:
        if mode not in MODES:
            raise ValueError(f"Unknown run mode: {mode}")
        provider = self.provider_for(permission)
        if provider is None:
            return Credential(provider=None, source=SOURCE_NONE, user_id=user_id)

        if mode == "try":
            secret = self.platform.get(provider, constrained=True)
            credential = self._build(provider, SOURCE_PLATFORM_TRY, None, secret)
        else:
            credential = None
            if user_id:
                secret = self.vault.get_secret(user_id, provider)
                credential = self._build(provider, SOURCE_USER, user_id, secret)
            if credential is None and fallback_allowed:
                secret = self.platform.get(provider, constrained=False)
                credential = self._build(provider, SOURCE_PLATFORM, user_id, secret)

        if credential is None:
            self.logger.info("No credential for permission %s (mode=%s)", permission, mode)
            self._audit("credential.missing", permission=permission, mode=mode)
            raise CredentialMissingError(permission)
        self._audit("credential.resolved", permission=permission, mode=mode, **credential.describe())
        return credential

    def _build(
        self, provider: str, source: str, user_id: Optional[str], secret: Optional[str]
    ) -> Optional[Credential]:
        if not secret:
            return None
        return Credential(provider=provider, source=source, user_id=user_id, secret=secret)

    def _audit(self, event: str, **data: Any) -> None:
        if self.audit is None:
            return
        payload = {"event": event}
        payload.update(data)
        self.audit.record(payload)
