from typing import Optional, Dict, Any


class CostPulseException(Exception):
    """Base exception for all CostPulse errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationError(CostPulseException):
    """Raised when run configuration is invalid or missing."""
    pass


# --- Billing source errors ---

class SourceError(CostPulseException):
    """Raised when the billing/usage source fails."""
    def __init__(
        self,
        message: str,
        code: str = "source_error",
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, code, details)
        self.status_code = status_code


class TransientSourceError(SourceError):
    """Throttling, 5xx or connection failures. Retried with backoff."""
    pass


class SourceRejectionError(SourceError):
    """The source reports the dataset is unsupported for this subscription. Skipped."""
    pass


class SourceRequestError(SourceError):
    """Non-transient source failure (4xx other than 429, malformed request)."""
    pass


class CredentialError(SourceError):
    """Credentials could not be resolved or were refused. Fatal for the job."""
    pass


# --- Pipeline errors ---

class RecordValidationError(CostPulseException):
    """Raised when a raw record fails validation. The record is dropped and counted."""
    def __init__(self, message: str, field: Optional[str] = None, reason: str = "invalid"):
        super().__init__(message, code=f"validation_{reason}", details={"field": field})
        self.field = field
        self.reason = reason


class SinkError(CostPulseException):
    """Raised when the time-series sink cannot be read or written. Fatal for the job."""
    pass


class AIAnalysisError(CostPulseException):
    """Raised when the language-model call or response parsing fails."""
    pass


class DeliveryError(CostPulseException):
    """Raised when the mail relay rejects the report or the send budget is exhausted."""
    def __init__(
        self,
        message: str,
        code: str = "delivery_failed",
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, code, details)
        self.status_code = status_code


class RunTimeoutError(CostPulseException):
    """Raised when a run exceeds its configured maximum duration."""
    pass
