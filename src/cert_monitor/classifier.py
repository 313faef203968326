"""
Classifier for certificate health.

Maps a raw probe result (or its absence) plus the prior record to one
authoritative status. Rules are evaluated in severity order and the first
match wins:

1. unresolvable - the probe failed, DNS failed, or no certificate was retrieved
2. expired      - not_after is in the past
3. warning      - not_after falls inside the lead window
4. active       - certificate valid and outside the lead window
5. pending      - no probe has completed yet

The classifier knows nothing about is_ignored; ignoring is a filter applied by
the reconciler so the underlying health signal is never destroyed.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .enums import CertStatus
from .models import DomainRecord, Measurement, ProbeFailure, ProbeResult, utcnow


SECONDS_PER_DAY = 86400
UNRESOLVABLE_DAYS_SENTINEL = 0


@dataclass
class Classification:
    """Status and derived fields produced by the classifier."""

    status: CertStatus
    days_remaining: int
    error_msg: str = ""


def days_until(instant: datetime, now: datetime) -> int:
    """Whole days from now until instant, floored (negative once passed)."""
    return math.floor((instant - now).total_seconds() / SECONDS_PER_DAY)


class Classifier:
    """Pure status classifier with a configurable warning lead window."""

    DEFAULT_WARNING_DAYS = 30

    def __init__(self, warning_days: int = DEFAULT_WARNING_DAYS) -> None:
        if warning_days < 0:
            raise ValueError(f"warning_days must be >= 0, got {warning_days}")
        self._warning_window = timedelta(days=warning_days)
        self._warning_days = warning_days

    @property
    def warning_days(self) -> int:
        return self._warning_days

    def classify(
        self,
        prior: Optional[DomainRecord],
        result: Optional[ProbeResult],
        now: Optional[datetime] = None,
    ) -> Classification:
        """
        Classify a domain.

        Args:
            prior: The stored record, or None if the domain is new
            result: A fresh Measurement/ProbeFailure, or None to re-derive the
                status from the prior record's stored facts
            now: Evaluation instant (defaults to the current UTC time)

        Returns:
            Classification with status, days_remaining and error_msg
        """
        now = now or utcnow()

        if result is None:
            return self.classify_record(prior, now) if prior else self._pending()

        if isinstance(result, ProbeFailure):
            return self._unresolvable(result.reason or "probe failed")

        return self._classify_measurement(result, now)

    def classify_record(self, record: DomainRecord, now: Optional[datetime] = None) -> Classification:
        """Re-derive the status of a record purely from its stored facts."""
        now = now or utcnow()

        if record.last_check_time is None:
            return self._pending()
        if record.error_msg:
            return self._unresolvable(record.error_msg)
        if record.not_after is None:
            return self._unresolvable("no certificate retrieved")
        return self._classify_expiry(record.not_after, now)

    def _classify_measurement(self, measurement: Measurement, now: datetime) -> Classification:
        if not measurement.dns.resolved:
            return self._unresolvable(
                f"DNS resolution failed: {measurement.dns.error or 'no addresses'}"
            )

        tls = measurement.tls
        if not tls.certificate_retrieved:
            return self._unresolvable(
                f"TLS handshake failed: {tls.error or 'no certificate presented'}"
            )

        return self._classify_expiry(tls.not_after, now)

    def _classify_expiry(self, not_after: datetime, now: datetime) -> Classification:
        remaining = not_after - now
        days = days_until(not_after, now)

        if remaining.total_seconds() <= 0:
            return Classification(status=CertStatus.EXPIRED, days_remaining=days)

        if remaining < self._warning_window:
            return Classification(status=CertStatus.WARNING, days_remaining=days)

        return Classification(status=CertStatus.ACTIVE, days_remaining=days)

    @staticmethod
    def _unresolvable(reason: str) -> Classification:
        return Classification(
            status=CertStatus.UNRESOLVABLE,
            days_remaining=UNRESOLVABLE_DAYS_SENTINEL,
            error_msg=reason,
        )

    @staticmethod
    def _pending() -> Classification:
        return Classification(status=CertStatus.PENDING, days_remaining=0)
