"""The ``{{name}}`` / ``{{name||default}}`` substitution language.

Templates are parsed into a tuple of :class:`Literal` and :class:`Reference`
tokens and evaluated against a plain mapping. Only name lookup with an
optional default is supported; anything else inside the braces is a syntax
error.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import TemplateReferenceError

OPEN = "{{"
CLOSE = "}}"
DEFAULT_SEP = "||"

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class TemplateSyntaxError(ValueError):
    pass


@dataclass(frozen=True)
class Literal:
    value: str
    kind: str = "literal"


@dataclass(frozen=True)
class Reference:
    name: str
    default: Optional[str] = None
    kind: str = "reference"

    @property
    def has_default(self) -> bool:
        return self.default is not None


Token = Union[Literal, Reference]


def parse(text: str) -> Tuple[Token, ...]:
    tokens: List[Token] = []
    pos = 0
    while True:
        start = text.find(OPEN, pos)
        if start < 0:
            break
        end = text.find(CLOSE, start + len(OPEN))
        if end < 0:
            raise TemplateSyntaxError(f"Unterminated reference at offset {start}")
        if start > pos:
            tokens.append(Literal(text[pos:start]))
        tokens.append(_parse_reference(text[start + len(OPEN) : end], start))
        pos = end + len(CLOSE)
    if pos < len(text):
        tokens.append(Literal(text[pos:]))
    return tuple(tokens)


def _parse_reference(expr: str, offset: int) -> Reference:
    name, sep, default = expr.partition(DEFAULT_SEP)
    name = name.strip()
    if not _NAME_PATTERN.match(name):
        raise TemplateSyntaxError(f"Invalid reference {expr!r} at offset {offset}")
    if not sep:
        return Reference(name)
    return Reference(name, default.strip())


def iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_strings(item)


def references(value: Any) -> List[Reference]:
    """All references in ``value``, walking nested lists and dicts."""
    found: List[Reference] = []
    for text in iter_strings(value):
        found.extend(tok for tok in parse(text) if isinstance(tok, Reference))
    return found


def interpolate(value: Any, namespace: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return render(value, namespace)
    if isinstance(value, Mapping):
        return {key: interpolate(item, namespace) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, namespace) for item in value]
    return value


def render(text: str, namespace: Mapping[str, Any]) -> Any:
    tokens = parse(text)
    # A lone reference keeps the type of the value it points at.
    if len(tokens) == 1 and isinstance(tokens[0], Reference):
        return _lookup(tokens[0], namespace)
    parts = []
    for token in tokens:
        if isinstance(token, Literal):
            parts.append(token.value)
        else:
            parts.append(_stringify(_lookup(token, namespace)))
    return "".join(parts)


def _lookup(ref: Reference, namespace: Mapping[str, Any]) -> Any:
    value = namespace.get(ref.name)
    if value is None or (value == "" and ref.has_default):
        if ref.has_default:
            return ref.default
        raise TemplateReferenceError(ref.name)
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return str(value)
