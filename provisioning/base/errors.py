from typing import Any, Dict, List, Optional


class ProvisioningError(Exception):
    """
    Base class for every terminal failure surfaced to callers.
    Carries a machine-readable `kind`/`reason` plus an optional raw excerpt
    of the remote response so the caller can decide what to show.
    """
    kind = "provisioning_error"
    retryable = False

    def __init__(self, message: str, reason: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.kind
        self.detail = detail
        self.stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind, "reason": self.reason, "message": self.message}
        if self.stage:
            data["stage"] = self.stage
        if self.detail:
            data["detail"] = self.detail
        return data


class PreconditionError(ProvisioningError):
    """Missing or unusable input (no agreed date, unresolvable technician...)."""
    kind = "precondition"


class NotFoundError(ProvisioningError):
    """Local record or portal row could not be located."""
    kind = "not_found"


class AuthenticationError(ProvisioningError):
    """Bad credentials or missing configuration. Never retried."""
    kind = "authentication"


class SessionExpiredError(ProvisioningError):
    """The portal silently dropped the session mid-workflow."""
    kind = "session_expired"
    retryable = True


class TransportError(ProvisioningError):
    """Network failure or an unexpected HTTP status from the remote side."""
    kind = "transport"

    def __init__(self, message: str, status: Optional[int] = None, response: Any = None,
                 reason: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, reason=reason, detail=detail)
        self.status = status
        self.response = response

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class RetryExhaustedError(TransportError):
    """A retryable status persisted through every allowed attempt."""
    kind = "retry_exhausted"

    def __init__(self, message: str, status: Optional[int] = None, response: Any = None,
                 attempts: int = 0, detail: Optional[str] = None):
        super().__init__(message, status=status, response=response, detail=detail)
        self.attempts = attempts


class RemoteValidationError(ProvisioningError):
    """The portal re-rendered the form with inline errors instead of redirecting."""
    kind = "remote_validation"

    def __init__(self, message: str, errors: Optional[List[str]] = None,
                 missing_fields: Optional[List[str]] = None, detail: Optional[str] = None):
        super().__init__(message, reason="form_rejected", detail=detail)
        self.errors = errors or []
        self.missing_fields = missing_fields or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        data["missing_fields"] = self.missing_fields
        return data
