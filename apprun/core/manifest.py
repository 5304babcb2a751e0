from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Union

import jsonschema
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from .canonical import digest
from .diagnostics import Diagnostics
from .errors import InputValidationError
from .governor import NETWORK_POLICIES, NET_ALLOWLIST, Limits
from .handler_api import HandlerMeta
from .registry import HandlerRegistry, default_registry
from .template import TemplateSyntaxError, references

DEFAULT_VERSION = "0.1.0"

INPUT_TYPES = {
    "string",
    "text",
    "number",
    "integer",
    "boolean",
    "image",
    "email",
    "url",
    "array",
    "object",
}
STRING_TYPES = {"string", "text", "image", "email", "url"}

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class InputModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: str
    required: bool = False
    enum: Optional[List[Any]] = None
    default: Any = None


class LimitsModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    timeoutMs: Optional[int] = None
    tokens: Optional[int] = None
    net: str = NET_ALLOWLIST
    allow: List[str] = Field(default_factory=list)


class StepModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    output: Union[str, Dict[str, str], None] = None


class RuntimeModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    engine: str = "inline"
    limits: LimitsModel = Field(default_factory=LimitsModel)
    steps: List[StepModel] = Field(default_factory=list)


class RemoteModel(BaseModel):
    url: str
    method: str = "POST"


class ManifestModel(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str
    name: str
    version: str = DEFAULT_VERSION
    inputs: Dict[str, InputModel] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    permissions: List[str] = Field(default_factory=list)
    runtime: RuntimeModel = Field(default_factory=RuntimeModel)
    demo: Dict[str, Any] = Field(default_factory=dict)
    run: Optional[RemoteModel] = None


@dataclass(frozen=True)
class InputSpec:
    type: str
    required: bool = False
    enum: Optional[Tuple[Any, ...]] = None
    default: Any = None

    @property
    def has_default(self) -> bool:
        return self.default is not None


@dataclass(frozen=True)
class Step:
    tool: str
    args: Mapping[str, Any] = field(default_factory=dict)
    output: Union[str, Mapping[str, str], None] = None

    def output_fields(self, meta: HandlerMeta) -> Dict[str, str]:
        """Maps namespace key -> handler output field."""
        if self.output is None:
            return {name: name for name in meta.outputs}
        if isinstance(self.output, str):
            return {self.output: meta.primary_output or ""}
        return dict(self.output)


@dataclass(frozen=True)
class RemoteTarget:
    url: str
    method: str = "POST"


@dataclass(frozen=True)
class Manifest:
    id: str
    name: str
    version: str
    inputs_schema: Mapping[str, InputSpec]
    outputs_schema: Mapping[str, str]
    permissions: FrozenSet[str]
    steps: Tuple[Step, ...]
    limits: Limits
    engine: str = "inline"
    demo_inputs: Mapping[str, Any] = field(default_factory=dict)
    remote: Optional[RemoteTarget] = None
    digest: str = ""

    @property
    def is_remote(self) -> bool:
        return self.remote is not None


def load_manifest(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Manifest must be a JSON object")
    return data


def default_schema_path() -> Path:
    return Path(__file__).resolve().parent.parent / "schemas" / "manifest.schema.json"


@lru_cache(maxsize=4)
def _schema_validator(schema_path: str) -> jsonschema.Draft202012Validator:
    with open(schema_path, "r", encoding="utf-8") as handle:
        schema = json.load(handle)
    return jsonschema.Draft202012Validator(schema)


def validate_manifest_schema(raw: Dict[str, Any], schema_path: Optional[Path] = None) -> Diagnostics:
    diagnostics = Diagnostics()
    validator = _schema_validator(str(schema_path or default_schema_path()))
    for error in sorted(validator.iter_errors(raw), key=str):
        diagnostics.error(
            "E-MANIFEST-SCHEMA",
            error.message,
            location="/".join(str(x) for x in error.path) or "manifest",
        )
    return diagnostics


def validate(
    raw: Mapping[str, Any],
    registry: Optional[HandlerRegistry] = None,
    *,
    schema_path: Optional[Path] = None,
) -> Manifest:
    """Normalize and statically check a manifest.

    Raises ``UnknownReferenceError`` for unresolved template references and
    ``ValidationError`` for everything else. Never mutates ``raw``.
    """
    manifest, diagnostics = check(raw, registry, schema_path=schema_path)
    diagnostics.raise_for_errors()
    if manifest is None:
        raise RuntimeError("Manifest check produced no manifest and no errors")
    return manifest


def check(
    raw: Mapping[str, Any],
    registry: Optional[HandlerRegistry] = None,
    *,
    schema_path: Optional[Path] = None,
) -> Tuple[Optional[Manifest], Diagnostics]:
    registry = registry or _builtin_registry()
    data: Dict[str, Any] = json.loads(json.dumps(raw))
    diagnostics = validate_manifest_schema(data, schema_path)
    if diagnostics.has_errors():
        return None, diagnostics

    try:
        model = ManifestModel.model_validate(data)
    except ModelValidationError as exc:
        diagnostics.error("E-MANIFEST-MODEL", str(exc), location="manifest")
        return None, diagnostics

    inputs = _check_inputs(model, diagnostics)
    outputs = _check_outputs(model, diagnostics)
    limits = _check_limits(model, diagnostics)
    remote = _check_remote(model, diagnostics)
    steps = _check_steps(model, registry, set(inputs), diagnostics)

    if diagnostics.has_errors():
        return None, diagnostics

    manifest = Manifest(
        id=model.id,
        name=model.name,
        version=model.version,
        inputs_schema=MappingProxyType(inputs),
        outputs_schema=MappingProxyType(outputs),
        permissions=frozenset(model.permissions),
        steps=steps,
        limits=limits,
        engine=model.runtime.engine,
        demo_inputs=MappingProxyType(dict(model.demo.get("sampleInputs") or {})),
        remote=remote,
        digest=digest(data),
    )
    return manifest, diagnostics


def _check_inputs(model: ManifestModel, diagnostics: Diagnostics) -> Dict[str, InputSpec]:
    inputs: Dict[str, InputSpec] = {}
    for name, spec in model.inputs.items():
        location = f"inputs.{name}"
        if spec.type not in INPUT_TYPES:
            diagnostics.error("E-INPUT-TYPE", f"Unknown input type '{spec.type}' for {name}", location)
            continue
        if spec.enum is not None and spec.default is not None and spec.default not in spec.enum:
            diagnostics.error("E-INPUT-DEFAULT", f"Default for {name} is not one of its enum values", location)
        if spec.default is not None and _type_error(spec.type, spec.default):
            diagnostics.error("E-INPUT-DEFAULT", f"Default for {name} is not a valid {spec.type}", location)
        inputs[name] = InputSpec(
            type=spec.type,
            required=spec.required,
            enum=tuple(spec.enum) if spec.enum is not None else None,
            default=spec.default,
        )
    return inputs


def _check_outputs(model: ManifestModel, diagnostics: Diagnostics) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    for name, value in model.outputs.items():
        kind = value.get("type") if isinstance(value, dict) else value
        if kind not in INPUT_TYPES:
            diagnostics.warn("W-OUTPUT-TYPE", f"Unknown output type '{kind}' for {name}", f"outputs.{name}")
        outputs[name] = str(kind)
    return outputs


def _check_limits(model: ManifestModel, diagnostics: Diagnostics) -> Limits:
    limits = model.runtime.limits
    if limits.net not in NETWORK_POLICIES:
        diagnostics.error(
            "E-LIMITS",
            f"Unknown network policy '{limits.net}', expected one of {list(NETWORK_POLICIES)}",
            "runtime.limits.net",
        )
    return Limits(
        timeout_ms=limits.timeoutMs,
        token_budget=limits.tokens,
        network_policy=limits.net,
        allow_hosts=tuple(limits.allow),
    )


def _check_remote(model: ManifestModel, diagnostics: Diagnostics) -> Optional[RemoteTarget]:
    if model.run is None:
        if not model.runtime.steps:
            diagnostics.error("E-RUNTIME", "Manifest declares neither runtime.steps nor run.url", "runtime")
        return None
    if model.runtime.steps:
        diagnostics.error("E-RUNTIME", "Manifest declares both runtime.steps and run.url", "run")
    if not model.run.url.startswith(("https://", "http://")):
        diagnostics.error("E-RUNTIME", "run.url must be an http(s) URL", "run.url")
    return RemoteTarget(url=model.run.url, method=model.run.method.upper())


def _check_steps(
    model: ManifestModel,
    registry: HandlerRegistry,
    available: Set[str],
    diagnostics: Diagnostics,
) -> Tuple[Step, ...]:
    input_names = set(available)
    permissions = set(model.permissions)
    steps = [
        Step(tool=raw.tool, args=MappingProxyType(raw.args), output=raw.output) for raw in model.runtime.steps
    ]
    produced = [_output_keys(step, registry) for step in steps]
    for index, step in enumerate(steps):
        location = f"runtime.steps.{index}"
        raw_step = model.runtime.steps[index]
        # Names only this step or a later one produces; a default does not excuse them.
        pending = set().union(*produced[index:]) - available

        try:
            refs = references(raw_step.args)
        except TemplateSyntaxError as exc:
            diagnostics.error("E-TEMPLATE-SYNTAX", str(exc), location)
            refs = []
        for ref in refs:
            if ref.name in available or (ref.has_default and ref.name not in pending):
                continue
            diagnostics.error(
                "E-STEP-REF",
                f"Step {index} references '{ref.name}', which is not a declared input or an earlier output",
                location,
                reference=ref.name,
            )

        if not registry.has(step.tool):
            diagnostics.error("E-STEP-TOOL", f"Unknown tool '{step.tool}'", location)
            # Keep named outputs visible so later steps don't cascade into E-STEP-REF.
            available.update(produced[index])
            continue
        meta = registry.meta(step.tool)
        if meta.capability not in permissions:
            diagnostics.error(
                "E-STEP-PERMISSION",
                f"Tool '{step.tool}' requires permission '{meta.capability}', which is not declared",
                location,
            )

        for key, source in step.output_fields(meta).items():
            if source not in meta.outputs:
                diagnostics.error(
                    "E-STEP-OUTPUT",
                    f"Tool '{step.tool}' has no output field '{source}'",
                    location,
                )
            if key in input_names:
                diagnostics.error("E-STEP-OUTPUT", f"Output '{key}' shadows an input", location)
            available.add(key)
    return tuple(steps)


def _output_keys(step: Step, registry: HandlerRegistry) -> Set[str]:
    if registry.has(step.tool):
        return set(step.output_fields(registry.meta(step.tool)))
    if isinstance(step.output, str):
        return {step.output}
    if isinstance(step.output, Mapping):
        return set(step.output)
    return set()


def validate_inputs(manifest: Manifest, inputs: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Apply declared defaults and check types. Undeclared keys are dropped."""
    supplied = dict(inputs or {})
    diagnostics = Diagnostics()
    resolved: Dict[str, Any] = {}
    for name, spec in manifest.inputs_schema.items():
        location = f"inputs.{name}"
        value = supplied.get(name)
        if value is None or value == "":
            if spec.has_default:
                resolved[name] = spec.default
            elif spec.required:
                diagnostics.error("E-INPUT-REQUIRED", f"Missing required input '{name}'", location)
            continue
        value = _coerce(spec.type, value)
        if _type_error(spec.type, value):
            diagnostics.error("E-INPUT-TYPE", f"Input '{name}' is not a valid {spec.type}", location)
            continue
        if spec.enum is not None and value not in spec.enum:
            diagnostics.error("E-INPUT-ENUM", f"Input '{name}' must be one of {list(spec.enum)}", location)
            continue
        resolved[name] = value
    if diagnostics.has_errors():
        raise InputValidationError(diagnostics.errors()[0], diagnostics)
    return resolved


def _coerce(kind: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    try:
        if kind == "integer":
            return int(text)
        if kind == "number":
            return float(text) if any(c in text for c in ".eE") else int(text)
    except ValueError:
        return value
    if kind == "boolean" and text.lower() in ("true", "false"):
        return text.lower() == "true"
    return value


def _type_error(kind: str, value: Any) -> bool:
    if kind in STRING_TYPES:
        if not isinstance(value, str):
            return True
        if kind == "email":
            return not _EMAIL_PATTERN.match(value)
        if kind == "url":
            return not value.startswith(("http://", "https://"))
        return False
    if kind == "integer":
        return isinstance(value, bool) or not isinstance(value, int)
    if kind == "number":
        return isinstance(value, bool) or not isinstance(value, (int, float))
    if kind == "boolean":
        return not isinstance(value, bool)
    if kind == "array":
        return not isinstance(value, list)
    if kind == "object":
        return not isinstance(value, dict)
    return True


@lru_cache(maxsize=1)
def _builtin_registry() -> HandlerRegistry:
    return default_registry()
