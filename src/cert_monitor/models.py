"""
Data models for the certificate monitor.

This module defines the structures exchanged between components: raw probe
measurements, the authoritative per-domain record, notification events and
settings, and the result shapes returned to the API layer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

from .enums import CertStatus, ChannelKind, EventKind, RenewState
from .exceptions import PartialBatchFailure


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# --- Probe measurements -----------------------------------------------------


@dataclass
class DNSFacet:
    """Outcome of resolving the domain name."""

    resolved: bool
    addresses: list[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TLSFacet:
    """Outcome of the TLS handshake and the certificate presented."""

    handshake_ok: bool
    issuer: str = ""
    subject_alt_names: list[str] = field(default_factory=list)
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    protocol_version: str = ""
    error: Optional[str] = None

    @property
    def certificate_retrieved(self) -> bool:
        return self.not_after is not None


@dataclass
class HTTPFacet:
    """HTTP liveness; status_code is 0 when no response was received."""

    status_code: int = 0
    latency_ms: int = 0
    error: Optional[str] = None


@dataclass
class RegistrationFacet:
    """Domain-registration expiry, when the registry exposes it."""

    expiry: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class Measurement:
    """Structured result of probing one domain. Each facet fails independently."""

    domain: str
    dns: DNSFacet
    tls: TLSFacet
    http: HTTPFacet = field(default_factory=HTTPFacet)
    registration: RegistrationFacet = field(default_factory=RegistrationFacet)
    measured_at: datetime = field(default_factory=utcnow)


@dataclass
class ProbeFailure:
    """The probe could not produce a measurement at all (timeout, crash)."""

    domain: str
    reason: str
    measured_at: datetime = field(default_factory=utcnow)


ProbeResult = Union[Measurement, ProbeFailure]


# --- Domain record ------------------------------------------------------------


@dataclass
class DomainRecord:
    """Authoritative state for one monitored domain."""

    id: str
    domain_name: str

    # Provider linkage (informational)
    zone_id: str = ""
    zone_name: str = ""
    record_id: str = ""
    is_proxied: bool = False

    # Operator controls
    is_ignored: bool = False
    auto_renew: bool = False

    # Certificate facts
    issuer: str = ""
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    sans: list[str] = field(default_factory=list)

    # Reachability facts
    tls_version: str = ""
    http_status_code: int = 0
    latency: int = 0
    ip_addresses: list[str] = field(default_factory=list)
    domain_expiry_date: Optional[datetime] = None
    domain_days_left: Optional[int] = None

    # Derived
    status: CertStatus = CertStatus.PENDING
    days_remaining: int = 0
    error_msg: str = ""
    last_check_time: Optional[datetime] = None

    # Polling support for asynchronous operations
    renew_state: Optional[RenewState] = None
    renew_detail: str = ""
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "domain_name": self.domain_name,
            "cf_zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "cf_record_id": self.record_id,
            "is_proxied": self.is_proxied,
            "is_ignored": self.is_ignored,
            "auto_renew": self.auto_renew,
            "issuer": self.issuer,
            "not_before": to_iso(self.not_before),
            "not_after": to_iso(self.not_after),
            "sans": list(self.sans),
            "tls_version": self.tls_version,
            "http_status_code": self.http_status_code,
            "latency": self.latency,
            "ip_addresses": list(self.ip_addresses),
            "domain_expiry_date": to_iso(self.domain_expiry_date),
            "domain_days_left": self.domain_days_left,
            "status": self.status.value,
            "days_remaining": self.days_remaining,
            "error_msg": self.error_msg,
            "last_check_time": to_iso(self.last_check_time),
            "renew_state": self.renew_state.value if self.renew_state else None,
            "renew_detail": self.renew_detail,
            "version": self.version,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DomainRecord":
        renew_state = data.get("renew_state")
        return cls(
            id=data["id"],
            domain_name=data["domain_name"],
            zone_id=data.get("cf_zone_id", ""),
            zone_name=data.get("zone_name", ""),
            record_id=data.get("cf_record_id", ""),
            is_proxied=bool(data.get("is_proxied", False)),
            is_ignored=bool(data.get("is_ignored", False)),
            auto_renew=bool(data.get("auto_renew", False)),
            issuer=data.get("issuer", ""),
            not_before=parse_iso(data.get("not_before")),
            not_after=parse_iso(data.get("not_after")),
            sans=list(data.get("sans") or []),
            tls_version=data.get("tls_version", ""),
            http_status_code=int(data.get("http_status_code") or 0),
            latency=int(data.get("latency") or 0),
            ip_addresses=list(data.get("ip_addresses") or []),
            domain_expiry_date=parse_iso(data.get("domain_expiry_date")),
            domain_days_left=data.get("domain_days_left"),
            status=CertStatus(data.get("status", CertStatus.PENDING.value)),
            days_remaining=int(data.get("days_remaining") or 0),
            error_msg=data.get("error_msg", ""),
            last_check_time=parse_iso(data.get("last_check_time")),
            renew_state=RenewState(renew_state) if renew_state else None,
            renew_detail=data.get("renew_detail", ""),
            version=int(data.get("version") or 0),
            created_at=parse_iso(data.get("created_at")) or utcnow(),
        )


@dataclass
class ProviderDomain:
    """One entry of the authoritative domain list."""

    domain_name: str
    zone_id: str = ""
    zone_name: str = ""
    record_id: str = ""
    proxied: bool = False


# --- Notifications ------------------------------------------------------------


@dataclass
class NotificationEvent:
    """Ephemeral event produced by the reconciler and consumed once by the dispatcher."""

    kind: EventKind
    domain: str
    variables: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    # Identity of the record write that produced the event
    record_id: str = ""
    version: int = 0

    @property
    def old_status(self) -> str:
        return self.variables.get("OldStatus", "")

    @property
    def new_status(self) -> str:
        return self.variables.get("NewStatus", "")


@dataclass
class ChannelSettings:
    """Common settings of a delivery channel."""

    enabled: bool = False
    # Per event kind overrides (EventKind.value -> template); empty means shared
    templates: dict[str, str] = field(default_factory=dict)

    def template_for(self, kind: EventKind) -> str:
        return self.templates.get(kind.value, "")


@dataclass
class WebhookSettings(ChannelSettings):
    url: str = ""


@dataclass
class TelegramSettings(ChannelSettings):
    bot_token: str = ""
    chat_id: str = ""


@dataclass
class EventSettings:
    """Enable flag and shared template for one event kind."""

    enabled: bool = True
    template: str = ""


def _default_events() -> dict[EventKind, EventSettings]:
    return {kind: EventSettings() for kind in EventKind}


@dataclass
class NotificationSettings:
    """Process-wide notification configuration, stored as a single keyed entity."""

    webhook: WebhookSettings = field(default_factory=WebhookSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    events: dict[EventKind, EventSettings] = field(default_factory=_default_events)
    acme_email: str = ""

    def channel(self, kind: ChannelKind) -> ChannelSettings:
        if kind == ChannelKind.WEBHOOK:
            return self.webhook
        return self.telegram

    def event(self, kind: EventKind) -> EventSettings:
        return self.events.get(kind) or EventSettings()

    def iter_templates(self) -> Iterator[tuple[str, str]]:
        """Yield (location, template) for every stored template string."""
        for kind, event_settings in self.events.items():
            yield f"events.{kind.value}.template", event_settings.template
        for channel_kind in ChannelKind:
            for kind_value, template in self.channel(channel_kind).templates.items():
                yield f"{channel_kind.value}.templates.{kind_value}", template

    def to_dict(self) -> dict:
        return {
            "webhook_enabled": self.webhook.enabled,
            "webhook_url": self.webhook.url,
            "webhook_templates": dict(self.webhook.templates),
            "telegram_enabled": self.telegram.enabled,
            "telegram_bot_token": self.telegram.bot_token,
            "telegram_chat_id": self.telegram.chat_id,
            "telegram_templates": dict(self.telegram.templates),
            "events": {
                kind.value: {"enabled": es.enabled, "template": es.template}
                for kind, es in self.events.items()
            },
            "acme_email": self.acme_email,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NotificationSettings":
        """
        Build settings from the flat wire format.

        Unknown event kinds are rejected; missing keys fall back to defaults so
        that older clients posting only the channel fields keep working.
        """
        data = data or {}
        events = _default_events()
        for kind_value, raw in (data.get("events") or {}).items():
            kind = EventKind(kind_value)
            raw = raw or {}
            events[kind] = EventSettings(
                enabled=bool(raw.get("enabled", True)),
                template=str(raw.get("template") or ""),
            )

        return cls(
            webhook=WebhookSettings(
                enabled=bool(data.get("webhook_enabled", False)),
                url=str(data.get("webhook_url") or ""),
                templates=_clean_templates(data.get("webhook_templates")),
            ),
            telegram=TelegramSettings(
                enabled=bool(data.get("telegram_enabled", False)),
                bot_token=str(data.get("telegram_bot_token") or ""),
                chat_id=str(data.get("telegram_chat_id") or ""),
                templates=_clean_templates(data.get("telegram_templates")),
            ),
            events=events,
            acme_email=str(data.get("acme_email") or ""),
        )


def _clean_templates(raw: Optional[dict]) -> dict[str, str]:
    templates: dict[str, str] = {}
    for kind_value, template in (raw or {}).items():
        EventKind(kind_value)
        templates[kind_value] = str(template or "")
    return templates


@dataclass
class DeliveryRecord:
    """Outcome of delivering one event to one channel."""

    event_kind: str
    domain: str
    channel: str
    success: bool
    attempts: int
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event_kind": self.event_kind,
            "domain": self.domain,
            "channel": self.channel,
            "success": self.success,
            "attempts": self.attempts,
            "error": self.error,
            "timestamp": to_iso(self.timestamp),
        }


# --- Result shapes ------------------------------------------------------------


@dataclass
class BatchResult:
    """Aggregated outcome of a batch mutation."""

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure enumerating every failed id."""
        if self.failed:
            raise PartialBatchFailure(
                code="partial_batch_failure",
                message=f"{len(self.failed)} of "
                f"{len(self.failed) + len(self.succeeded)} ids failed",
                details={"succeeded": list(self.succeeded), "failed": dict(self.failed)},
            )

    def to_dict(self) -> dict:
        return {"succeeded": list(self.succeeded), "failed": dict(self.failed)}


@dataclass
class QueryPage:
    """One page of records plus the unpaginated total."""

    records: list[DomainRecord]
    total: int
    page: int
    limit: int

    def to_dict(self) -> dict:
        return {
            "data": [record.to_dict() for record in self.records],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
        }


@dataclass
class DashboardStats:
    """Aggregate over non-ignored records."""

    total_domains: int
    status_counts: dict[str, int]
    expiry_counts: dict[str, int]
    issuer_counts: dict[str, int]

    def to_dict(self) -> dict:
        return {
            "total_domains": self.total_domains,
            "status_counts": dict(self.status_counts),
            "expiry_counts": dict(self.expiry_counts),
            "issuer_counts": dict(self.issuer_counts),
        }


@dataclass
class RenewOutcome:
    """Result reported by the renewal collaborator."""

    success: bool
    detail: str = ""
