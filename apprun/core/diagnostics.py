from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from .errors import UnknownReferenceError, ValidationError


@dataclass
class Diagnostic:
    code: str
    message: str
    severity: str = "ERROR"
    location: Optional[str] = None
    hints: List[str] = field(default_factory=list)
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "location": self.location,
            "hints": self.hints,
            "data": self.data,
        }


class Diagnostics:
    def __init__(self) -> None:
        self.items: List[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> None:
        self.items.append(diagnostic)

    def error(self, code: str, message: str, location: Optional[str] = None, **data: Any) -> None:
        self.add(Diagnostic(code=code, message=message, location=location, data=data or None))

    def warn(self, code: str, message: str, location: Optional[str] = None) -> None:
        self.add(Diagnostic(code=code, message=message, severity="WARN", location=location))

    def extend(self, diagnostics: Iterable[Diagnostic] | "Diagnostics") -> None:
        if isinstance(diagnostics, Diagnostics):
            self.items.extend(diagnostics.items)
        else:
            self.items.extend(diagnostics)

    def has_errors(self) -> bool:
        return any(d.severity == "ERROR" for d in self.items)

    def errors(self) -> List[Diagnostic]:
        return [d for d in self.items if d.severity == "ERROR"]

    def codes(self) -> List[str]:
        return [d.code for d in self.items]

    def raise_for_errors(self) -> None:
        if not self.has_errors():
            return
        # Reference errors win so authoring mistakes get the more specific type.
        refs = [d for d in self.errors() if d.code == "E-STEP-REF"]
        if refs:
            raise UnknownReferenceError(refs[0], self)
        raise ValidationError(self.errors()[0], self)

    def to_list(self) -> List[dict]:
        return [d.to_dict() for d in self.items]
