"""
Exception classes for the certificate monitor.

All exceptions inherit from CertMonitorError and carry a machine-readable
code, a human-readable message and optional structured details. Probe
failures are deliberately absent here: they are recorded as a status on the
domain record (see models.ProbeFailure) and never raised.
"""

from typing import Optional


class CertMonitorError(Exception):
    """Base exception for all certificate monitor errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(CertMonitorError):
    """Raised when a domain name or query argument is invalid."""

    pass


class ConfigError(CertMonitorError):
    """Raised when configuration cannot be loaded or is inconsistent."""

    pass


class RecordNotFoundError(CertMonitorError):
    """Raised when a domain record id or name does not exist."""

    pass


class TemplateError(CertMonitorError):
    """Raised when a notification template is malformed (save time only)."""

    pass


class DeliveryFailure(CertMonitorError):
    """Raised by a channel when a message is rejected or the endpoint is unreachable."""

    pass


class PartialBatchFailure(CertMonitorError):
    """
    Raised when some ids of a batch mutation failed.

    ``details["failed"]`` maps every failed id to its reason and
    ``details["succeeded"]`` lists the ids that were applied.
    """

    pass


class ProviderError(CertMonitorError):
    """Raised when the authoritative domain listing could not be obtained."""

    pass


class RenewalError(CertMonitorError):
    """Raised when a renewal cannot be scheduled (e.g. no ACME account email)."""

    pass


class PersistenceError(CertMonitorError):
    """Raised when persistence operations fail (file I/O, HMAC validation)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation fails, indicating data tampering."""

    pass
