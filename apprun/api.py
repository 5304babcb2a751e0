from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional, Union

from .core.credentials import MODES
from .core.executor import execute
from .core.manifest import Manifest, load_manifest, validate, validate_inputs
from .core.result import Run
from .core.runtime import Runtime, build_runtime


def run_app(
    manifest: Union[Manifest, Mapping[str, Any]],
    inputs: Optional[Mapping[str, Any]] = None,
    *,
    user_id: Optional[str] = None,
    mode: str = "try",
    fallback_allowed: bool = True,
    runtime: Optional[Runtime] = None,
) -> Run:
    """Execute one app run.

    ``ValidationError`` (and its subclasses) is raised before anything runs.
    Once execution starts, step failures are reported in the returned run's
    status and trace rather than raised.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown run mode: {mode}")
    runtime = runtime or build_runtime()
    if not isinstance(manifest, Manifest):
        manifest = validate(manifest, runtime.registry)
    resolved = validate_inputs(manifest, inputs)
    run = execute(
        manifest,
        resolved,
        mode=mode,
        runtime=runtime,
        user_id=user_id,
        fallback_allowed=fallback_allowed,
    )
    if runtime.store is not None:
        runtime.store.save(run)
    return run


def load(path: Union[Path, str], runtime: Optional[Runtime] = None) -> Manifest:
    registry = runtime.registry if runtime is not None else None
    return validate(load_manifest(Path(path)), registry)