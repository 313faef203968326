"""
Enumeration types for the certificate monitor.

These enums provide type-safe constants for record statuses, notification
event kinds, channels and task states throughout the system.
"""

from enum import Enum


class CertStatus(Enum):
    """Health status of a monitored domain, in decreasing order of severity."""

    UNRESOLVABLE = "unresolvable"
    EXPIRED = "expired"
    WARNING = "warning"
    ACTIVE = "active"
    PENDING = "pending"

    @property
    def has_certificate(self) -> bool:
        """True when days_remaining is a meaningful countdown."""
        return self in (CertStatus.EXPIRED, CertStatus.WARNING, CertStatus.ACTIVE)


class EventKind(Enum):
    """Kinds of notification events produced by the reconciler."""

    STATUS_ALERT = "status-alert"
    DOMAIN_ADDED = "domain-added"
    DOMAIN_REMOVED = "domain-removed"
    RENEW_RESULT = "renew-result"


class ChannelKind(Enum):
    """Supported notification channels."""

    WEBHOOK = "webhook"
    TELEGRAM = "telegram"


class DeliveryState(Enum):
    """Per (domain, event kind) delivery state machine."""

    IDLE = "idle"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


class RenewState(Enum):
    """Progress of the last renewal requested for a record."""

    SCHEDULED = "scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskState(Enum):
    """Lifecycle of a fire-and-forget task."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskKind(Enum):
    """Manual triggers that run as fire-and-forget tasks."""

    SCAN = "scan"
    SYNC = "sync"
    RENEW = "renew"
    TEST_NOTIFICATION = "test-notification"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class DomainValidationErrorCode(Enum):
    """Error codes for domain name validation failures."""

    EMPTY_INPUT = "empty_input"
    FORBIDDEN_CHARS = "forbidden_chars"
    IDNA_ERROR = "idna_error"
    WILDCARD = "wildcard"
    NOT_A_HOSTNAME = "not_a_hostname"
