"""
Scan Orchestrator for the certificate monitor.

Runs one scan cycle: every non-ignored record is probed concurrently, up to
``max_workers`` at a time, with a hard per-probe timeout, and each result is
handed to the reconciler. A probe that hangs, crashes or times out becomes a
ProbeFailure for that domain only; the rest of the cycle continues.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .audit_logger import AuditLogger
from .config import ScanConfig
from .exceptions import CertMonitorError
from .models import ProbeFailure, ProbeResult, to_iso, utcnow
from .probe import Prober
from .reconciler import Reconciler, UpsertOutcome


@dataclass
class ScanReport:
    """Summary of one scan cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    transitions: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "scanned": self.scanned,
            "transitions": self.transitions,
            "status_counts": dict(self.status_counts),
            "errors": dict(self.errors),
            "duration_ms": round(self.duration_ms, 1),
        }


class ScanOrchestrator:
    """
    Coordinates probing and reconciliation for a scan cycle.

    Args:
        reconciler: Receives every probe result
        prober: Probe capability (network or fake)
        config: Worker pool size and per-probe timeout
        logger: Optional audit logger
    """

    def __init__(
        self,
        reconciler: Reconciler,
        prober: Prober,
        config: Optional[ScanConfig] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._reconciler = reconciler
        self._prober = prober
        self._config = config or ScanConfig()
        self._logger = logger
        self._last_report: Optional[ScanReport] = None

    @property
    def last_report(self) -> Optional[ScanReport]:
        return self._last_report

    async def run_cycle(self, domains: Optional[list[str]] = None) -> ScanReport:
        """
        Probe every monitored domain (or the given subset) once.

        Returns:
            ScanReport with counts and per-domain errors
        """
        names = list(domains) if domains is not None else self._reconciler.monitored_names()
        report = ScanReport(started_at=utcnow())
        start = time.perf_counter()

        self._log_info(
            "Scan cycle started",
            {"domains": len(names), "max_workers": self._config.max_workers},
        )

        semaphore = asyncio.Semaphore(max(1, self._config.max_workers))

        async def run_one(name: str) -> UpsertOutcome:
            async with semaphore:
                return await self.probe_domain(name)

        results = await asyncio.gather(*(run_one(n) for n in names), return_exceptions=True)

        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                report.errors[name] = f"{type(outcome).__name__}: {outcome}"
                self._log_error(f"Reconciling {name} failed", outcome, {"domain": name})
                continue
            report.scanned += 1
            report.transitions += len(outcome.events)
            status = outcome.record.status.value
            report.status_counts[status] = report.status_counts.get(status, 0) + 1

        report.finished_at = utcnow()
        report.duration_ms = (time.perf_counter() - start) * 1000
        self._last_report = report

        self._log_info("Scan cycle finished", report.to_dict())
        return report

    async def probe_domain(self, name: str) -> UpsertOutcome:
        """Probe a single domain and reconcile the result."""
        result = await self._probe(name)
        return await self._reconciler.upsert_from_probe(name, result)

    async def _probe(self, name: str) -> ProbeResult:
        timeout = self._config.probe_timeout_seconds
        try:
            return await asyncio.wait_for(self._prober.probe(name), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeFailure(domain=name, reason=f"probe timed out after {timeout:g}s")
        except CertMonitorError as e:
            return ProbeFailure(domain=name, reason=e.message)
        except Exception as e:
            # A broken probe is recorded as a status, never raised
            self._log_error(f"Probe crashed for {name}", e, {"domain": name})
            return ProbeFailure(domain=name, reason=f"{type(e).__name__}: {e}")

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info("ScanOrchestrator", message, data)

    def _log_error(self, message: str, error: BaseException, data: dict) -> None:
        if self._logger:
            self._logger.log_error("ScanOrchestrator", message, error, data)
