from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, Optional

from .api import run_app
from .core.config import load_runtime_config, normalize_runtime_config
from .core.errors import ValidationError
from .core.manifest import check, load_manifest, validate as validate_manifest
from .core.runtime import build_runtime
from .core.store import JsonlRunStore
from .core.vault import load_sealed_vault


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(prog="apprun")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate")
    validate.add_argument("-m", "--manifest", required=True)

    for name in ("run", "trace"):
        cmd = sub.add_parser(name)
        cmd.add_argument("-m", "--manifest", required=True)
        cmd.add_argument("-i", "--inputs", required=False)
        cmd.add_argument("-c", "--config", required=False)
        cmd.add_argument("--mode", choices=("try", "use"), default="try")
        cmd.add_argument("--user", required=False)
        cmd.add_argument("--no-fallback", action="store_true")
        cmd.add_argument("--secrets", required=False)
        cmd.add_argument("--store", required=False)
        cmd.add_argument("--demo", action="store_true")

    args = parser.parse_args(argv)
    raw = load_manifest(Path(args.manifest))

    if args.command == "validate":
        manifest, diagnostics = check(raw)
        if diagnostics.has_errors():
            print(json.dumps(diagnostics.to_list(), indent=2, sort_keys=True))
            raise SystemExit(1)
        payload: Dict[str, Any] = {"status": "ok", "id": manifest.id, "digest": manifest.digest}
        warnings = diagnostics.to_list()
        if warnings:
            payload["warnings"] = warnings
        print(json.dumps(payload, indent=2, sort_keys=True))
        return

    config = load_runtime_config(Path(args.config)) if args.config else None
    settings = normalize_runtime_config(config)
    vault = load_sealed_vault(Path(args.secrets), settings.vault_key_env) if args.secrets else None
    store = JsonlRunStore(Path(args.store)) if args.store else None
    runtime = build_runtime(config, vault=vault, store=store)

    try:
        manifest = validate_manifest(raw, runtime.registry)
        inputs = _load_inputs(args.inputs)
        if args.demo and not inputs:
            inputs = dict(manifest.demo_inputs)
        run = run_app(
            manifest,
            inputs,
            user_id=args.user,
            mode=args.mode,
            fallback_allowed=not args.no_fallback,
            runtime=runtime,
        )
    except ValidationError as exc:
        print(json.dumps(exc.to_list(), indent=2, sort_keys=True))
        raise SystemExit(1)

    if args.command == "trace":
        print(json.dumps(run.wire_trace(), indent=2, sort_keys=True))
    else:
        print(json.dumps(run.to_record(), indent=2, sort_keys=True, default=str))
    if run.status == "failed":
        raise SystemExit(2)


def _load_inputs(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Inputs must be a JSON object")
    return data


if __name__ == "__main__":
    main()
