from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_CONFIG: Dict[str, Any] = {
    "ceilings": {
        "try": {"timeout_ms": 10000, "tokens": 4000},
        "use": {"timeout_ms": 60000, "tokens": 20000},
    },
    "token_ttl_s": 60,
    "signing_key_env": "APPRUN_TOKEN_SIGNING_KEY",
    "network": {
        "allowlist": [],
    },
    "platform_keys": {
        "openai": "OPENAI_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "resend": "RESEND_API_KEY",
    },
    "try_keys": {
        "openai": "APPRUN_TRY_OPENAI_API_KEY",
    },
    "vault_key_env": "APPRUN_VAULT_KEY",
    "handlers": {
        "llm.complete": {
            "base_url": "https://api.openai.com",
            "model": "gpt-4o-mini",
            "max_tokens": 500,
            "max_output_chars": 8000,
            "temperature": 0.7,
            "web_search": True,
        },
        "image.process": {
            "base_url": "https://generativelanguage.googleapis.com",
            "model": "gemini-2.5-flash-image",
            "max_image_bytes": 5 * 1024 * 1024,
        },
        "email.send": {
            "base_url": "https://api.resend.com",
            "sender": "AppFeed <noreply@clipcade.com>",
            "max_content_chars": 20000,
        },
    },
    "audit": None,
    "logs_dir": None,
}


class CeilingSettings(BaseModel):
    timeout_ms: int = Field(gt=0)
    tokens: int = Field(gt=0)


class NetworkSettings(BaseModel):
    allowlist: List[str] = Field(default_factory=list)


class RuntimeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ceilings: Dict[str, CeilingSettings]
    token_ttl_s: float = Field(gt=0)
    signing_key_env: str
    network: NetworkSettings
    platform_keys: Dict[str, str] = Field(default_factory=dict)
    try_keys: Dict[str, str] = Field(default_factory=dict)
    vault_key_env: str
    handlers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    audit: Any = None
    logs_dir: Optional[Path] = None

    def ceiling(self, mode: str) -> CeilingSettings:
        if mode not in self.ceilings:
            raise ValueError(f"No ceiling configured for mode {mode}")
        return self.ceilings[mode]

    def handler(self, tool: str) -> Dict[str, Any]:
        return dict(self.handlers.get(tool, {}))


def load_runtime_config(path: Path) -> Dict[str, Any]:
    data = _load_data(path)
    if not isinstance(data, dict):
        raise ValueError("Runtime config must be a JSON object")
    return data


def normalize_runtime_config(config: Optional[Dict[str, Any]] = None) -> RuntimeSettings:
    merged = json.loads(json.dumps(DEFAULT_CONFIG))
    if config:
        merged = _deep_merge(merged, config)
    return RuntimeSettings.model_validate(merged)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _load_data(path: Path) -> Any:
    if path.suffix in {".yaml", ".yml"}:
        import yaml

        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    if path.suffix == ".toml":
        import tomllib

        with path.open("rb") as handle:
            return tomllib.load(handle)
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
