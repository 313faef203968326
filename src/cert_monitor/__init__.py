"""
Cert Monitor - TLS certificate and reachability monitoring with alerting.

This package probes a fleet of domains (DNS, TLS handshake, HTTP, registration
expiry), classifies each into one authoritative health status, and notifies
webhook and Telegram channels about transitions using editable templates.
"""

__version__ = "0.1.0"
__author__ = "Cert Monitor Team"

from cert_monitor.exceptions import (
    CertMonitorError,
    ValidationError,
    ConfigError,
    RecordNotFoundError,
    TemplateError,
    DeliveryFailure,
    PartialBatchFailure,
    ProviderError,
    RenewalError,
    PersistenceError,
    TamperingError,
)
from cert_monitor.enums import (
    CertStatus,
    EventKind,
    ChannelKind,
    DeliveryState,
    RenewState,
    TaskState,
    TaskKind,
    LogLevel,
    DomainValidationErrorCode,
)
from cert_monitor.domain_validator import (
    DomainValidator,
    DomainValidationResult,
    DomainValidationError,
)
from cert_monitor.config import (
    ScanConfig,
    RetryConfig,
    PersistenceConfig,
    LoggingConfig,
    ProviderConfig,
    RenewalConfig,
    ServerConfig,
    SystemConfig,
    load_config_from_env,
)
from cert_monitor.models import (
    DNSFacet,
    TLSFacet,
    HTTPFacet,
    RegistrationFacet,
    Measurement,
    ProbeFailure,
    DomainRecord,
    ProviderDomain,
    NotificationEvent,
    NotificationSettings,
    DeliveryRecord,
    BatchResult,
    QueryPage,
    DashboardStats,
    RenewOutcome,
)
from cert_monitor.classifier import Classification, Classifier
from cert_monitor.templates import TemplateEngine, DEFAULT_TEMPLATES
from cert_monitor.state_store import StateStore, SettingsRepository
from cert_monitor.audit_logger import AuditLogger, LogEntry
from cert_monitor.rdap_client import RDAPClient
from cert_monitor.probe import Prober, NetworkProber
from cert_monitor.providers import (
    DomainProvider,
    StaticProvider,
    CloudflareProvider,
    Renewer,
    CommandRenewer,
)
from cert_monitor.task_queue import TaskQueue, TaskRecord
from cert_monitor.reconciler import Reconciler, UpsertOutcome, SyncOutcome
from cert_monitor.notifications import (
    NotificationChannel,
    WebhookChannel,
    TelegramChannel,
    NotificationDispatcher,
)
from cert_monitor.scheduler import Scheduler, ScheduledTask
from cert_monitor.orchestrator import ScanOrchestrator, ScanReport
from cert_monitor.service import MonitorService
from cert_monitor.cli import main as cli_main, create_parser


__all__ = [
    "__version__",
    # Exceptions
    "CertMonitorError",
    "ValidationError",
    "ConfigError",
    "RecordNotFoundError",
    "TemplateError",
    "DeliveryFailure",
    "PartialBatchFailure",
    "ProviderError",
    "RenewalError",
    "PersistenceError",
    "TamperingError",
    # Enums
    "CertStatus",
    "EventKind",
    "ChannelKind",
    "DeliveryState",
    "RenewState",
    "TaskState",
    "TaskKind",
    "LogLevel",
    "DomainValidationErrorCode",
    # Domain Validator
    "DomainValidator",
    "DomainValidationResult",
    "DomainValidationError",
    # Config
    "ScanConfig",
    "RetryConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "ProviderConfig",
    "RenewalConfig",
    "ServerConfig",
    "SystemConfig",
    "load_config_from_env",
    # Models
    "DNSFacet",
    "TLSFacet",
    "HTTPFacet",
    "RegistrationFacet",
    "Measurement",
    "ProbeFailure",
    "DomainRecord",
    "ProviderDomain",
    "NotificationEvent",
    "NotificationSettings",
    "DeliveryRecord",
    "BatchResult",
    "QueryPage",
    "DashboardStats",
    "RenewOutcome",
    # Classifier
    "Classification",
    "Classifier",
    # Templates
    "TemplateEngine",
    "DEFAULT_TEMPLATES",
    # State Store
    "StateStore",
    "SettingsRepository",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Probing
    "RDAPClient",
    "Prober",
    "NetworkProber",
    # Providers
    "DomainProvider",
    "StaticProvider",
    "CloudflareProvider",
    "Renewer",
    "CommandRenewer",
    # Tasks
    "TaskQueue",
    "TaskRecord",
    # Reconciler
    "Reconciler",
    "UpsertOutcome",
    "SyncOutcome",
    # Notifications
    "NotificationChannel",
    "WebhookChannel",
    "TelegramChannel",
    "NotificationDispatcher",
    # Scheduler
    "Scheduler",
    "ScheduledTask",
    # Orchestrator
    "ScanOrchestrator",
    "ScanReport",
    # Service
    "MonitorService",
    # CLI
    "cli_main",
    "create_parser",
]
