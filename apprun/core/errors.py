from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .diagnostics import Diagnostic, Diagnostics


class AppRunError(Exception):
    """Base class for everything the runtime raises on purpose."""

    @property
    def error_kind(self) -> str:
        return type(self).__name__


class ValidationError(AppRunError):
    def __init__(self, diagnostic: "Diagnostic", diagnostics: Optional["Diagnostics"] = None):
        super().__init__(diagnostic.message)
        self.diagnostic = diagnostic
        self.diagnostics = diagnostics

    def to_list(self) -> List[dict]:
        if self.diagnostics is not None:
            return self.diagnostics.to_list()
        return [self.diagnostic.to_dict()]


class UnknownReferenceError(ValidationError):
    pass


class InputValidationError(ValidationError):
    pass


class StepError(AppRunError):
    """Raised inside a step; converted into a trace entry at the step boundary."""

    # Fixed, client-safe description. Never carries provider text.
    public_message = "step failed"
    transient = False


class TemplateReferenceError(StepError):
    public_message = "template reference could not be resolved"

    def __init__(self, name: str):
        super().__init__(f"Unresolved template reference: {name}")
        self.name = name


class CredentialMissingError(StepError):
    public_message = "no credential available for required permission"

    def __init__(self, permission: str):
        super().__init__(f"No credential available for permission {permission}")
        self.permission = permission


class TokenError(StepError):
    public_message = "capability token rejected"


class ScopeMismatchError(TokenError):
    def __init__(self, scope: str, capability: str):
        super().__init__(f"Token scope {scope} does not match capability {capability}")
        self.scope = scope
        self.capability = capability


class TokenExpiredError(TokenError):
    def __init__(self, permission: str):
        super().__init__(f"Capability token for {permission} has expired")
        self.permission = permission


class ToolError(StepError):
    kind = "provider-error"
    public_message = "tool failed"


class ToolTimeoutError(ToolError):
    kind = "timeout"
    public_message = "tool timed out"
    transient = True


class RateLimitedError(ToolError):
    kind = "rate-limited"
    public_message = "provider rate limit reached"
    transient = True


class InvalidInputError(ToolError):
    kind = "invalid-input"
    public_message = "tool rejected its input"


class ProviderError(ToolError):
    kind = "provider-error"
    public_message = "provider returned an error"
    transient = True


class AuthFailedError(ToolError):
    kind = "auth-failed"
    public_message = "provider rejected the credential"


class HandlerContractError(StepError):
    """A handler returned a result missing a field it declares."""

    public_message = "tool returned an incomplete result"


class QuotaExceededError(StepError):
    public_message = "run budget exhausted"
    transient = True

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Quota exceeded: {reason}")
        self.reason = reason
