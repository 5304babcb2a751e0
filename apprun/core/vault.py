"""Adapters over the external secret vault.

The runtime never stores secrets. It reads sealed ciphertexts owned by an
external store and opens them for the duration of a single lookup.
"""

from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Tuple

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as random_bytes

from .logging import get_logger

KEY_HEX_LENGTH = SecretBox.KEY_SIZE * 2


class SecretVault(Protocol):
    def get_secret(self, user_id: str, provider: str) -> Optional[str]: ...


class InMemoryVault:
    def __init__(self, secrets: Optional[Mapping[Tuple[str, str], str]] = None) -> None:
        self._secrets: Dict[Tuple[str, str], str] = dict(secrets or {})

    def put(self, user_id: str, provider: str, secret: str) -> None:
        self._secrets[(user_id, provider)] = secret

    def get_secret(self, user_id: str, provider: str) -> Optional[str]:
        return self._secrets.get((user_id, provider))


def load_key(key_hex: str) -> bytes:
    if not key_hex or len(key_hex) < KEY_HEX_LENGTH:
        raise ValueError(f"Vault key missing or too short; expected {KEY_HEX_LENGTH} hex characters")
    return bytes.fromhex(key_hex[:KEY_HEX_LENGTH])


def seal_secret(plaintext: str, key: bytes) -> str:
    box = SecretBox(key)
    sealed = box.encrypt(plaintext.encode("utf-8"), random_bytes(SecretBox.NONCE_SIZE))
    return base64.b64encode(bytes(sealed)).decode("ascii")


def open_secret(payload_b64: str, key: bytes) -> str:
    box = SecretBox(key)
    return box.decrypt(base64.b64decode(payload_b64)).decode("utf-8")


class SealedSecretVault:
    def __init__(self, sealed: Mapping[Tuple[str, str], str], key: bytes) -> None:
        self._sealed = dict(sealed)
        self._key = key
        self.logger = get_logger("vault")

    def get_secret(self, user_id: str, provider: str) -> Optional[str]:
        payload = self._sealed.get((user_id, provider))
        if payload is None:
            return None
        try:
            return open_secret(payload, self._key)
        except (CryptoError, ValueError):
            self.logger.warning("Could not open sealed secret for provider %s", provider)
            return None


def load_sealed_vault(path: Path, key_env: str, environ: Optional[Mapping[str, str]] = None) -> SealedSecretVault:
    """Load ``{user_id: {provider: sealed}}`` from a JSON file."""
    env = environ if environ is not None else os.environ
    key = load_key(env.get(key_env, ""))
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Sealed secrets file must be a JSON object")
    sealed = {
        (str(user_id), str(provider)): str(payload)
        for user_id, providers in data.items()
        for provider, payload in (providers or {}).items()
    }
    return SealedSecretVault(sealed, key)
