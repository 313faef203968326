"""
Record Store / Reconciler for the certificate monitor.

Owns the authoritative DomainRecord per monitored domain. Probe results are
classified and persisted here, transitions are detected and turned into
NotificationEvents, and the query/mutation surface used by the API lives
here as well.

Every read-modify-write of a record runs under a per-domain asyncio lock, so
two concurrent results for the same domain can never interleave; writes for
different domains proceed independently.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from .audit_logger import AuditLogger
from .classifier import Classifier, days_until
from .domain_validator import DomainValidator
from .enums import CertStatus, EventKind, RenewState, TaskKind
from .exceptions import RecordNotFoundError, RenewalError, ValidationError
from .models import (
    BatchResult,
    DashboardStats,
    DomainRecord,
    Measurement,
    NotificationEvent,
    ProbeFailure,
    ProbeResult,
    ProviderDomain,
    QueryPage,
    RenewOutcome,
    utcnow,
)
from .providers import Renewer
from .state_store import DOMAINS, SettingsRepository, StateStore
from .task_queue import TaskQueue, TaskRecord


EventSink = Callable[[NotificationEvent], None]

STATUS_ACTIVE_ONLY = "active_only"
SORT_KEYS = ("expiry_asc", "expiry_desc", "domain_asc", "domain_desc", "last_check_desc")
DEFAULT_SORT = "expiry_asc"
TRI_STATE = ("", "true", "false")
EXPIRY_BUCKETS = {"d7": 7, "d30": 30}
MAX_PAGE_SIZE = 1000


@dataclass
class UpsertOutcome:
    """The stored record after a probe result plus the events it produced."""

    record: DomainRecord
    events: list[NotificationEvent] = field(default_factory=list)


@dataclass
class SyncOutcome:
    """What a provider sync changed."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    invalid: dict[str, str] = field(default_factory=dict)
    events: list[NotificationEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "updated": list(self.updated),
            "invalid": dict(self.invalid),
        }


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else ""


def _fmt_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else ""


def event_variables(record: DomainRecord, now: datetime, **extra: str) -> dict[str, str]:
    """Variable set available to every template for this record."""
    variables = {
        "Domain": record.domain_name,
        "Zone": record.zone_name,
        "Status": record.status.value,
        "DaysRemaining": str(record.days_remaining) if record.status.has_certificate else "",
        "ExpiryDate": _fmt_date(record.not_after),
        "Issuer": record.issuer,
        "IP": ", ".join(record.ip_addresses),
        "TLSVersion": record.tls_version,
        "HTTPCode": str(record.http_status_code) if record.http_status_code else "",
        "Details": record.error_msg,
        "Time": _fmt_time(now),
    }
    variables.update(extra)
    return variables


class Reconciler:
    """
    Applies probe results and provider listings to the stored records.

    Args:
        store: Keyed entity store holding records and settings
        classifier: Status classifier (default lead window when omitted)
        validator: Canonicalizes domain names used as the reconciliation key
        event_sink: Receives every emitted NotificationEvent (e.g. the dispatcher)
        logger: Optional audit logger
        clock: Source of "now"; injectable for tests
        renewer: Renewal collaborator; renewals are rejected without one
        task_queue: Queue used to run renewals in the background
    """

    def __init__(
        self,
        store: StateStore,
        classifier: Optional[Classifier] = None,
        validator: Optional[DomainValidator] = None,
        event_sink: Optional[EventSink] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        renewer: Optional[Renewer] = None,
        task_queue: Optional[TaskQueue] = None,
    ) -> None:
        self._store = store
        self._classifier = classifier or Classifier()
        self._validator = validator or DomainValidator()
        self._event_sink = event_sink
        self._logger = logger
        self._clock = clock
        self._renewer = renewer
        self._tasks = task_queue
        self._settings = SettingsRepository(store)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Re-probe hook run after a successful renewal
        self.reprobe: Optional[Callable[[str], Awaitable[object]]] = None

    @property
    def classifier(self) -> Classifier:
        return self._classifier

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._event_sink = sink

    # --- Probe results --------------------------------------------------------

    async def upsert_from_probe(
        self,
        domain_name: str,
        result: ProbeResult,
        now: Optional[datetime] = None,
    ) -> UpsertOutcome:
        """
        Load-or-create the record, classify the result and persist it.

        A status-alert is emitted only when the new status differs from the
        previously stored one and the record is not ignored.
        """
        name = self._validator.canonicalize(domain_name)

        async with self._locks[name]:
            now = now or self._clock()
            record = self._load(name) or self._new_record(name, now)
            old_status = record.status

            self._apply_result(record, result, now)
            record.version += 1
            self._persist(record)

            events = []
            if record.status != old_status:
                self._log_info(
                    f"Status transition for {name}: {old_status.value} -> {record.status.value}",
                    {
                        "domain": name,
                        "old_status": old_status.value,
                        "new_status": record.status.value,
                        "days_remaining": record.days_remaining,
                        "ignored": record.is_ignored,
                    },
                )
                if not record.is_ignored:
                    events.append(
                        NotificationEvent(
                            kind=EventKind.STATUS_ALERT,
                            domain=name,
                            variables=event_variables(
                                record,
                                now,
                                OldStatus=old_status.value,
                                NewStatus=record.status.value,
                            ),
                            created_at=now,
                            record_id=record.id,
                            version=record.version,
                        )
                    )

        self._emit(events)
        return UpsertOutcome(record=record, events=events)

    def _apply_result(self, record: DomainRecord, result: ProbeResult, now: datetime) -> None:
        classification = self._classifier.classify(record, result, now)

        # Probe facts describe only the latest attempt
        record.tls_version = ""
        record.http_status_code = 0
        record.latency = 0

        if isinstance(result, Measurement):
            record.ip_addresses = list(result.dns.addresses)
            tls = result.tls
            if tls.certificate_retrieved:
                record.issuer = tls.issuer
                record.not_before = tls.not_before
                record.not_after = tls.not_after
                record.sans = list(tls.subject_alt_names)
                record.tls_version = tls.protocol_version
            record.http_status_code = result.http.status_code
            record.latency = result.http.latency_ms
            if result.registration.expiry is not None:
                record.domain_expiry_date = result.registration.expiry
                record.domain_days_left = days_until(result.registration.expiry, now)
        elif isinstance(result, ProbeFailure):
            record.ip_addresses = []

        record.status = classification.status
        record.days_remaining = classification.days_remaining
        record.error_msg = classification.error_msg
        record.last_check_time = now

    async def reclassify_all(self, now: Optional[datetime] = None) -> list[NotificationEvent]:
        """
        Re-derive every record's status from its stored facts.

        Used after the lead window changes or when time alone moves a
        certificate across a boundary between scans.
        """
        emitted: list[NotificationEvent] = []
        for name in self._names():
            async with self._locks[name]:
                record = self._load(name)
                if record is None:
                    continue
                now_ = now or self._clock()
                classification = self._classifier.classify(record, None, now_)
                if classification.status == record.status and classification.days_remaining == record.days_remaining:
                    continue
                old_status = record.status
                record.status = classification.status
                record.days_remaining = classification.days_remaining
                record.version += 1
                self._persist(record)
                if old_status != record.status and not record.is_ignored:
                    emitted.append(
                        NotificationEvent(
                            kind=EventKind.STATUS_ALERT,
                            domain=name,
                            variables=event_variables(
                                record, now_, OldStatus=old_status.value, NewStatus=record.status.value
                            ),
                            created_at=now_,
                            record_id=record.id,
                            version=record.version,
                        )
                    )
        self._emit(emitted)
        return emitted

    # --- Provider sync --------------------------------------------------------

    async def sync_from_provider(self, known_domains: Iterable[ProviderDomain]) -> SyncOutcome:
        """
        Reconcile the stored records against a complete provider listing.

        New domains are created as pending and announced; domains missing from
        the listing are deleted and announced unless ignored; linkage of
        existing records is refreshed silently. Idempotent.
        """
        outcome = SyncOutcome()
        wanted: dict[str, ProviderDomain] = {}
        for entry in known_domains:
            result = self._validator.validate(entry.domain_name)
            if not result.valid:
                outcome.invalid[entry.domain_name] = result.error.message
                continue
            wanted[result.canonical_domain] = entry

        now = self._clock()
        with self._store.deferred_save():
            for name, entry in wanted.items():
                async with self._locks[name]:
                    record = self._load(name)
                    if record is None:
                        record = self._new_record(name, now)
                        self._link(record, entry)
                        record.version += 1
                        self._persist(record)
                        outcome.added.append(name)
                        outcome.events.append(
                            NotificationEvent(
                                kind=EventKind.DOMAIN_ADDED,
                                domain=name,
                                variables=event_variables(record, now),
                                created_at=now,
                            )
                        )
                    elif self._link(record, entry):
                        record.version += 1
                        self._persist(record)
                        outcome.updated.append(name)

            for name in self._names():
                if name in wanted:
                    continue
                async with self._locks[name]:
                    record = self._load(name)
                    if record is None:
                        continue
                    self._store.delete(DOMAINS, name)
                    outcome.removed.append(name)
                    if not record.is_ignored:
                        outcome.events.append(
                            NotificationEvent(
                                kind=EventKind.DOMAIN_REMOVED,
                                domain=name,
                                variables=event_variables(record, now),
                                created_at=now,
                            )
                        )
                lock = self._locks.get(name)
                if lock is not None and not lock.locked():
                    del self._locks[name]

        if outcome.added or outcome.removed or outcome.invalid:
            self._log_info(
                "Provider sync applied",
                {
                    "added": outcome.added,
                    "removed": outcome.removed,
                    "updated": len(outcome.updated),
                    "invalid": outcome.invalid,
                },
            )
        self._emit(outcome.events)
        return outcome

    @staticmethod
    def _link(record: DomainRecord, entry: ProviderDomain) -> bool:
        """Copy provider linkage onto the record; True if anything changed."""
        linkage = (entry.zone_id, entry.zone_name.lower(), entry.record_id, entry.proxied)
        current = (record.zone_id, record.zone_name, record.record_id, record.is_proxied)
        if linkage == current:
            return False
        record.zone_id, record.zone_name, record.record_id, record.is_proxied = linkage
        return True

    # --- Queries --------------------------------------------------------------

    def query(
        self,
        page: int = 1,
        page_size: int = 20,
        sort: str = DEFAULT_SORT,
        status: str = "",
        proxied: str = "",
        ignored: str = "",
        zone: str = "",
    ) -> QueryPage:
        """
        Filtered, sorted, 1-indexed page of records plus the unpaginated total.

        ``status="active_only"`` means "not unresolvable and not ignored";
        ``ignored`` and ``proxied`` take "", "true" or "false".

        Raises:
            ValidationError: On an unknown status, sort key or tri-state value
        """
        if page < 1:
            raise ValidationError("invalid_page", f"page must be >= 1, got {page}")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(
                "invalid_page_size", f"limit must be between 1 and {MAX_PAGE_SIZE}, got {page_size}"
            )
        sort = sort or DEFAULT_SORT
        if sort not in SORT_KEYS:
            raise ValidationError(
                "invalid_sort", f"Unknown sort key: {sort}", {"allowed": list(SORT_KEYS)}
            )
        if status and status != STATUS_ACTIVE_ONLY:
            try:
                wanted_status: Optional[CertStatus] = CertStatus(status)
            except ValueError:
                raise ValidationError(
                    "invalid_status",
                    f"Unknown status filter: {status}",
                    {"allowed": [STATUS_ACTIVE_ONLY] + [s.value for s in CertStatus]},
                ) from None
        else:
            wanted_status = None
        for label, value in (("ignored", ignored), ("proxied", proxied)):
            if value not in TRI_STATE:
                raise ValidationError(
                    f"invalid_{label}", f"{label} must be '', 'true' or 'false', got {value!r}"
                )

        records = [r for r in self._all_records() if self._matches(r, status, wanted_status, proxied, ignored, zone)]
        records = self._sort(records, sort)

        start = (page - 1) * page_size
        return QueryPage(
            records=records[start:start + page_size],
            total=len(records),
            page=page,
            limit=page_size,
        )

    @staticmethod
    def _matches(
        record: DomainRecord,
        status: str,
        wanted_status: Optional[CertStatus],
        proxied: str,
        ignored: str,
        zone: str,
    ) -> bool:
        if status == STATUS_ACTIVE_ONLY:
            if record.status == CertStatus.UNRESOLVABLE or record.is_ignored:
                return False
        elif wanted_status is not None and record.status != wanted_status:
            return False
        if ignored and record.is_ignored != (ignored == "true"):
            return False
        if proxied and record.is_proxied != (proxied == "true"):
            return False
        if zone and record.zone_name != zone.lower():
            return False
        return True

    @staticmethod
    def _sort(records: list[DomainRecord], sort: str) -> list[DomainRecord]:
        def no_countdown(r: DomainRecord) -> bool:
            return not r.status.has_certificate

        if sort == "expiry_asc":
            return sorted(records, key=lambda r: (no_countdown(r), r.days_remaining, r.domain_name))
        if sort == "expiry_desc":
            return sorted(records, key=lambda r: (no_countdown(r), -r.days_remaining, r.domain_name))
        if sort == "domain_asc":
            return sorted(records, key=lambda r: r.domain_name)
        if sort == "domain_desc":
            return sorted(records, key=lambda r: r.domain_name, reverse=True)
        # last_check_desc
        return sorted(
            records,
            key=lambda r: (
                r.last_check_time is None,
                -(r.last_check_time.timestamp() if r.last_check_time else 0.0),
                r.domain_name,
            ),
        )

    def list_zones(self) -> list[str]:
        return sorted({r.zone_name for r in self._all_records() if r.zone_name})

    def get_record(self, record_id: str) -> DomainRecord:
        for record in self._all_records():
            if record.id == record_id:
                return record
        raise RecordNotFoundError(
            code="record_not_found",
            message=f"No domain record with id {record_id}",
            details={"id": record_id},
        )

    def get_by_name(self, domain_name: str) -> Optional[DomainRecord]:
        return self._load(self._validator.canonicalize(domain_name))

    def monitored_names(self) -> list[str]:
        """Names of records that scans should probe (ignored ones are skipped)."""
        return sorted(r.domain_name for r in self._all_records() if not r.is_ignored)

    def stats(self, now: Optional[datetime] = None) -> DashboardStats:
        """Aggregate over non-ignored records only."""
        records = [r for r in self._all_records() if not r.is_ignored]

        status_counts = {s.value: 0 for s in CertStatus}
        expiry_counts = {bucket: 0 for bucket in EXPIRY_BUCKETS}
        issuer_counts: dict[str, int] = {}

        for record in records:
            status_counts[record.status.value] += 1
            if record.status in (CertStatus.ACTIVE, CertStatus.WARNING):
                for bucket, limit in EXPIRY_BUCKETS.items():
                    if 0 <= record.days_remaining <= limit:
                        expiry_counts[bucket] += 1
            if record.issuer:
                issuer_counts[record.issuer] = issuer_counts.get(record.issuer, 0) + 1

        return DashboardStats(
            total_domains=len(records),
            status_counts=status_counts,
            expiry_counts=expiry_counts,
            issuer_counts=issuer_counts,
        )

    # --- Operator mutations ---------------------------------------------------

    async def set_ignored(self, record_id: str, value: bool) -> DomainRecord:
        """Set is_ignored; facts and status are left untouched. Idempotent."""
        return await self._set_flag(record_id, "is_ignored", value)

    async def set_auto_renew(self, record_id: str, value: bool) -> DomainRecord:
        return await self._set_flag(record_id, "auto_renew", value)

    async def _set_flag(self, record_id: str, flag: str, value: bool) -> DomainRecord:
        name = self.get_record(record_id).domain_name
        async with self._locks[name]:
            record = self._load(name)
            if record is None or record.id != record_id:
                raise RecordNotFoundError(
                    code="record_not_found",
                    message=f"No domain record with id {record_id}",
                    details={"id": record_id},
                )
            if getattr(record, flag) != value:
                setattr(record, flag, value)
                record.version += 1
                self._persist(record)
                self._log_info(
                    f"{flag} set to {value} for {name}", {"domain": name, "id": record_id}
                )
            return record

    async def batch_set_ignored(self, ids: Iterable[str], value: bool) -> BatchResult:
        """
        Apply set_ignored to every id and report one aggregated outcome.

        Missing ids are listed in ``failed`` with their reason; the others
        are applied regardless.
        """
        result = BatchResult()
        with self._store.deferred_save():
            for record_id in ids:
                try:
                    await self.set_ignored(record_id, value)
                except RecordNotFoundError as e:
                    result.failed[record_id] = e.message
                else:
                    result.succeeded.append(record_id)
        if result.failed:
            self._log_warn(
                "Batch ignore partially failed",
                {"succeeded": len(result.succeeded), "failed": result.failed},
            )
        return result

    # --- Renewal --------------------------------------------------------------

    async def trigger_renew(self, domain_name: str) -> TaskRecord:
        """
        Schedule a renewal and return at once; completion emits renew-result.

        Raises:
            RecordNotFoundError: If the domain is not monitored
            RenewalError: If no ACME email is configured or renewal is unavailable
        """
        name = self._validator.canonicalize(domain_name)
        if self._load(name) is None:
            raise RecordNotFoundError(
                code="record_not_found",
                message=f"Domain is not monitored: {name}",
                details={"domain": name},
            )
        email = self._settings.get().acme_email
        if not email:
            raise RenewalError(
                code="acme_email_missing",
                message="Set an ACME account email before requesting renewals",
            )
        if self._renewer is None or self._tasks is None:
            raise RenewalError(
                code="renewal_unavailable",
                message="No renewal command is configured",
            )

        async with self._locks[name]:
            record = self._load(name)
            if record is None:
                raise RecordNotFoundError(
                    code="record_not_found",
                    message=f"Domain is not monitored: {name}",
                    details={"domain": name},
                )
            record.renew_state = RenewState.SCHEDULED
            record.renew_detail = ""
            record.version += 1
            self._persist(record)

        return self._tasks.submit(
            TaskKind.RENEW,
            lambda: self._run_renew(name, email),
            key=name,
            coalesce=True,
        )

    async def _run_renew(self, name: str, email: str) -> dict:
        try:
            outcome = await self._renewer.renew(name, email)
        except Exception as e:
            # The record must leave "scheduled" whatever the renewer does
            outcome = RenewOutcome(False, f"Renewal crashed: {type(e).__name__}: {e}")
        await self.record_renew_result(name, outcome)
        if outcome.success and self.reprobe is not None:
            await self.reprobe(name)
        return {"domain": name, "success": outcome.success, "detail": outcome.detail}

    async def record_renew_result(self, domain_name: str, outcome: RenewOutcome) -> Optional[NotificationEvent]:
        """Store the renewal outcome on the record and emit renew-result."""
        name = self._validator.canonicalize(domain_name)
        async with self._locks[name]:
            record = self._load(name)
            if record is None:
                return None
            now = self._clock()
            record.renew_state = RenewState.SUCCEEDED if outcome.success else RenewState.FAILED
            record.renew_detail = outcome.detail
            record.version += 1
            self._persist(record)

        if outcome.success:
            self._log_info(f"Renewal succeeded for {name}", {"domain": name})
        else:
            self._log_warn(f"Renewal failed for {name}", {"domain": name, "detail": outcome.detail})

        if record.is_ignored:
            return None
        event = NotificationEvent(
            kind=EventKind.RENEW_RESULT,
            domain=name,
            variables=event_variables(
                record,
                now,
                Result="success" if outcome.success else "failure",
                Details=outcome.detail,
            ),
            created_at=now,
        )
        self._emit([event])
        return event

    # --- Storage helpers ------------------------------------------------------

    def _new_record(self, name: str, now: datetime) -> DomainRecord:
        return DomainRecord(id=uuid.uuid4().hex, domain_name=name, created_at=now)

    def _load(self, name: str) -> Optional[DomainRecord]:
        data = self._store.get(DOMAINS, name)
        return DomainRecord.from_dict(data) if data else None

    def _persist(self, record: DomainRecord) -> None:
        self._store.put(DOMAINS, record.domain_name, record.to_dict())

    def _names(self) -> list[str]:
        return self._store.keys(DOMAINS)

    def _all_records(self) -> list[DomainRecord]:
        return [DomainRecord.from_dict(data) for data in self._store.values(DOMAINS)]

    def _emit(self, events: list[NotificationEvent]) -> None:
        if self._event_sink is None:
            return
        for event in events:
            self._event_sink(event)

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info("Reconciler", message, data)

    def _log_warn(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.warn("Reconciler", message, data)
