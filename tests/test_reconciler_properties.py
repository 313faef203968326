"""
Property-based tests for the Reconciler.

Covers transition detection and alert emission, provider sync idempotence,
ignore semantics, the query surface, dashboard stats and renewal gating.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from cert_monitor.enums import CertStatus, EventKind, RenewState, TaskState
from cert_monitor.exceptions import RecordNotFoundError, RenewalError, ValidationError
from cert_monitor.models import (
    DNSFacet,
    HTTPFacet,
    Measurement,
    NotificationSettings,
    ProbeFailure,
    ProviderDomain,
    RenewOutcome,
    TLSFacet,
)
from cert_monitor.reconciler import Reconciler
from cert_monitor.state_store import SettingsRepository, StateStore
from cert_monitor.task_queue import TaskQueue


NOW = datetime(2030, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.new_event_loop().run_until_complete(coro)


@st.composite
def domain_name_strategy(draw):
    """Generate valid two or three label hostnames."""
    labels = draw(
        st.lists(
            st.text(
                alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"),
                min_size=1,
                max_size=12,
            ),
            min_size=1,
            max_size=2,
        )
    )
    tld = draw(st.sampled_from(["com", "org", "net", "io"]))
    return ".".join(labels + [tld])


domain_list_strategy = st.lists(domain_name_strategy(), min_size=0, max_size=8, unique=True)


def measurement(domain: str, days_left: float, issuer: str = "Let's Encrypt") -> Measurement:
    """A successful measurement whose certificate expires days_left from NOW."""
    return Measurement(
        domain=domain,
        dns=DNSFacet(resolved=True, addresses=["192.0.2.1"]),
        tls=TLSFacet(
            handshake_ok=True,
            issuer=issuer,
            subject_alt_names=[domain],
            not_before=NOW - timedelta(days=60),
            not_after=NOW + timedelta(days=days_left),
            protocol_version="TLS 1.3",
        ),
        http=HTTPFacet(status_code=200, latency_ms=35),
    )


def dns_failure(domain: str) -> Measurement:
    return Measurement(
        domain=domain,
        dns=DNSFacet(resolved=False, error="NXDOMAIN"),
        tls=TLSFacet(handshake_ok=False, error="skipped"),
    )


def make_reconciler(**kwargs):
    """Reconciler over a memory-only store collecting every emitted event."""
    events = []
    store = StateStore()
    reconciler = Reconciler(store, event_sink=events.append, clock=lambda: NOW, **kwargs)
    return reconciler, store, events


class StubRenewer:
    def __init__(self, outcome: RenewOutcome) -> None:
        self.outcome = outcome
        self.calls = []

    async def renew(self, domain: str, email: str) -> RenewOutcome:
        self.calls.append((domain, email))
        return self.outcome


class TestTransitionAlerts:
    """A status-alert is emitted exactly when the stored status changes."""

    @given(
        domain=domain_name_strategy(),
        days_left=st.integers(min_value=-50, max_value=400),
        repeats=st.integers(min_value=2, max_value=5),
    )
    @settings(max_examples=50)
    def test_identical_scans_alert_once(self, domain: str, days_left: int, repeats: int) -> None:
        reconciler, _, events = make_reconciler()

        async def scan():
            for _ in range(repeats):
                await reconciler.upsert_from_probe(domain, measurement(domain, days_left), NOW)

        run_async(scan())

        alerts = [e for e in events if e.kind == EventKind.STATUS_ALERT]
        assert len(alerts) == 1
        assert alerts[0].old_status == CertStatus.PENDING.value

    def test_warning_to_active_after_renewal(self) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 5), NOW)
            events.clear()
            return await reconciler.upsert_from_probe(
                "example.com", measurement("example.com", 85), NOW + timedelta(hours=1)
            )

        outcome = run_async(scenario())

        assert outcome.record.status == CertStatus.ACTIVE
        assert len(events) == 1
        assert events[0].kind == EventKind.STATUS_ALERT
        assert events[0].old_status == "warning"
        assert events[0].new_status == "active"
        assert events[0].variables["Domain"] == "example.com"

    def test_dns_failure_becomes_unresolvable_with_message(self) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 60), NOW)
            return await reconciler.upsert_from_probe("example.com", dns_failure("example.com"), NOW)

        outcome = run_async(scenario())

        assert outcome.record.status == CertStatus.UNRESOLVABLE
        assert outcome.record.error_msg
        # Certificate facts from the last successful probe survive
        assert outcome.record.not_after == NOW + timedelta(days=60)
        assert outcome.record.ip_addresses == []
        assert events[-1].new_status == "unresolvable"

    def test_probe_failure_clears_probe_facts(self) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 60), NOW)
            return await reconciler.upsert_from_probe(
                "example.com", ProbeFailure(domain="example.com", reason="probe timed out after 15s"), NOW
            )

        record = run_async(scenario()).record

        assert record.status == CertStatus.UNRESOLVABLE
        assert record.error_msg == "probe timed out after 15s"
        assert record.http_status_code == 0
        assert record.tls_version == ""
        assert record.issuer == "Let's Encrypt"

    @given(days_left=st.integers(min_value=-50, max_value=400))
    @settings(max_examples=30)
    def test_ignored_record_transitions_silently(self, days_left: int) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            record = (await reconciler.upsert_from_probe("example.com", dns_failure("example.com"), NOW)).record
            await reconciler.set_ignored(record.id, True)
            events.clear()
            return await reconciler.upsert_from_probe(
                "example.com", measurement("example.com", days_left), NOW
            )

        outcome = run_async(scenario())

        assert outcome.record.status != CertStatus.UNRESOLVABLE
        assert outcome.events == []
        assert events == []

    @given(domain=domain_name_strategy(), repeats=st.integers(min_value=1, max_value=4))
    @settings(max_examples=30)
    def test_version_increases_per_write(self, domain: str, repeats: int) -> None:
        reconciler, _, _ = make_reconciler()

        async def scan():
            versions = []
            for _ in range(repeats):
                outcome = await reconciler.upsert_from_probe(domain, measurement(domain, 90), NOW)
                versions.append(outcome.record.version)
            return versions

        versions = run_async(scan())

        assert versions == list(range(1, repeats + 1))

    def test_concurrent_results_for_one_domain_serialize(self) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            await asyncio.gather(
                *[
                    reconciler.upsert_from_probe("example.com", measurement("example.com", 90), NOW)
                    for _ in range(10)
                ]
            )
            return reconciler.get_by_name("example.com")

        record = run_async(scenario())

        assert record.version == 10
        assert len(events) == 1


class TestReclassify:
    """Stored facts are re-evaluated when time moves or the window changes."""

    def test_time_alone_moves_active_to_warning(self) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 40), NOW)
            events.clear()
            return await reconciler.reclassify_all(NOW + timedelta(days=15))

        emitted = run_async(scenario())

        assert len(emitted) == 1
        assert emitted[0].old_status == "active"
        assert emitted[0].new_status == "warning"
        assert reconciler.get_by_name("example.com").days_remaining == 25


class TestProviderSync:
    """Sync adds, removes and re-links records and is idempotent."""

    @given(first=domain_list_strategy, second=domain_list_strategy)
    @settings(max_examples=50)
    def test_sync_matches_listing(self, first: list, second: list) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            await reconciler.sync_from_provider([ProviderDomain(d) for d in first])
            return await reconciler.sync_from_provider([ProviderDomain(d) for d in second])

        outcome = run_async(scenario())

        stored = {r.domain_name for r in reconciler.query(page_size=1000).records}
        assert stored == set(second)
        assert set(outcome.added) == set(second) - set(first)
        assert set(outcome.removed) == set(first) - set(second)
        # Per-domain locks do not outlive deleted records
        assert set(reconciler._locks) <= set(second)

    @given(domains=domain_list_strategy)
    @settings(max_examples=50)
    def test_sync_is_idempotent(self, domains: list) -> None:
        reconciler, _, events = make_reconciler()
        listing = [ProviderDomain(d, zone_id="z1", zone_name="example.com") for d in domains]

        async def scenario():
            await reconciler.sync_from_provider(listing)
            before = {r.domain_name: r.version for r in reconciler.query(page_size=1000).records}
            emitted_before = len(events)
            outcome = await reconciler.sync_from_provider(listing)
            after = {r.domain_name: r.version for r in reconciler.query(page_size=1000).records}
            return before, after, outcome, emitted_before

        before, after, outcome, emitted_before = run_async(scenario())

        assert before == after
        assert outcome.added == []
        assert outcome.removed == []
        assert outcome.updated == []
        assert len(events) == emitted_before

    def test_added_domains_are_pending_and_announced(self) -> None:
        reconciler, _, events = make_reconciler()

        outcome = run_async(
            reconciler.sync_from_provider(
                [ProviderDomain("Shop.Example.com.", zone_id="z1", zone_name="Example.com", proxied=True)]
            )
        )

        assert outcome.added == ["shop.example.com"]
        record = reconciler.get_by_name("shop.example.com")
        assert record.status == CertStatus.PENDING
        assert record.zone_name == "example.com"
        assert record.is_proxied is True
        assert [e.kind for e in events] == [EventKind.DOMAIN_ADDED]

    def test_invalid_names_reported_not_stored(self) -> None:
        reconciler, _, _ = make_reconciler()

        outcome = run_async(
            reconciler.sync_from_provider(
                [ProviderDomain("*.example.com"), ProviderDomain("localhost"), ProviderDomain("ok.example.com")]
            )
        )

        assert set(outcome.invalid) == {"*.example.com", "localhost"}
        assert outcome.added == ["ok.example.com"]

    def test_removed_ignored_domain_is_silent(self) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            await reconciler.sync_from_provider([ProviderDomain("a.example.com"), ProviderDomain("b.example.com")])
            await reconciler.set_ignored(reconciler.get_by_name("b.example.com").id, True)
            events.clear()
            return await reconciler.sync_from_provider([])

        outcome = run_async(scenario())

        assert set(outcome.removed) == {"a.example.com", "b.example.com"}
        assert [e.domain for e in events] == ["a.example.com"]
        assert events[0].kind == EventKind.DOMAIN_REMOVED

    def test_linkage_change_is_silent_update(self) -> None:
        reconciler, _, events = make_reconciler()

        async def scenario():
            await reconciler.sync_from_provider([ProviderDomain("a.example.com", proxied=False)])
            events.clear()
            return await reconciler.sync_from_provider([ProviderDomain("a.example.com", proxied=True)])

        outcome = run_async(scenario())

        assert outcome.updated == ["a.example.com"]
        assert events == []
        assert reconciler.get_by_name("a.example.com").is_proxied is True


class TestIgnoreSemantics:
    """Ignoring hides a record from alerts, active_only and stats but keeps its facts."""

    @given(days_left=st.integers(min_value=1, max_value=400))
    @settings(max_examples=30)
    def test_ignore_keeps_facts(self, days_left: int) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            record = (await reconciler.upsert_from_probe("example.com", measurement("example.com", days_left), NOW)).record
            return record, await reconciler.set_ignored(record.id, True)

        before, after = run_async(scenario())

        assert after.is_ignored is True
        assert after.status == before.status
        assert after.not_after == before.not_after
        assert after.days_remaining == before.days_remaining
        assert reconciler.query(status="active_only").total == 0
        assert reconciler.stats(NOW).total_domains == 0

    def test_set_ignored_is_idempotent(self) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            record = (await reconciler.upsert_from_probe("example.com", measurement("example.com", 90), NOW)).record
            first = await reconciler.set_ignored(record.id, True)
            second = await reconciler.set_ignored(record.id, True)
            return first, second

        first, second = run_async(scenario())

        assert first.version == second.version

    def test_unresolvable_unignored_query(self) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            await reconciler.upsert_from_probe("a.example.com", dns_failure("a.example.com"), NOW)
            b = (await reconciler.upsert_from_probe("b.example.com", dns_failure("b.example.com"), NOW)).record
            await reconciler.upsert_from_probe("c.example.com", measurement("c.example.com", 90), NOW)
            await reconciler.set_ignored(b.id, True)

        run_async(scenario())

        page = reconciler.query(status="unresolvable", ignored="false")
        assert page.total == 1
        assert [r.domain_name for r in page.records] == ["a.example.com"]

    def test_batch_reports_missing_ids(self) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            a = (await reconciler.upsert_from_probe("a.example.com", measurement("a.example.com", 90), NOW)).record
            b = (await reconciler.upsert_from_probe("b.example.com", measurement("b.example.com", 90), NOW)).record
            return a, b, await reconciler.batch_set_ignored([a.id, "missing", b.id], True)

        a, b, result = run_async(scenario())

        assert result.succeeded == [a.id, b.id]
        assert list(result.failed) == ["missing"]
        assert reconciler.get_by_name("a.example.com").is_ignored is True
        assert reconciler.get_by_name("b.example.com").is_ignored is True


class TestQuery:
    """Filtering, sorting and pagination."""

    @given(
        days=st.lists(st.integers(min_value=-30, max_value=400), min_size=1, max_size=8),
        failures=st.integers(min_value=0, max_value=3),
        sort=st.sampled_from(["expiry_asc", "expiry_desc"]),
    )
    @settings(max_examples=50)
    def test_records_without_countdown_sort_last(self, days: list, failures: int, sort: str) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            for i, d in enumerate(days):
                name = f"cert{i}.example.com"
                await reconciler.upsert_from_probe(name, measurement(name, d), NOW)
            for i in range(failures):
                name = f"down{i}.example.com"
                await reconciler.upsert_from_probe(name, dns_failure(name), NOW)

        run_async(scenario())

        records = reconciler.query(page_size=100, sort=sort).records
        counted = [r.days_remaining for r in records if r.status.has_certificate]
        assert all(r.status.has_certificate for r in records[:len(days)])
        assert all(r.status == CertStatus.UNRESOLVABLE for r in records[len(days):])
        assert counted == sorted(counted, reverse=(sort == "expiry_desc"))

    @given(
        count=st.integers(min_value=0, max_value=12),
        page_size=st.integers(min_value=1, max_value=5),
        page=st.integers(min_value=1, max_value=6),
    )
    @settings(max_examples=50)
    def test_pagination(self, count: int, page_size: int, page: int) -> None:
        reconciler, _, _ = make_reconciler()
        run_async(
            reconciler.sync_from_provider([ProviderDomain(f"d{i:02d}.example.com") for i in range(count)])
        )

        result = reconciler.query(page=page, page_size=page_size, sort="domain_asc")

        assert result.total == count
        start = (page - 1) * page_size
        expected = [f"d{i:02d}.example.com" for i in range(count)][start:start + page_size]
        assert [r.domain_name for r in result.records] == expected

    def test_page_beyond_total_is_empty(self) -> None:
        reconciler, _, _ = make_reconciler()
        run_async(reconciler.sync_from_provider([ProviderDomain("a.example.com")]))

        result = reconciler.query(page=5, page_size=10)

        assert result.records == []
        assert result.total == 1

    @given(
        argument=st.sampled_from(["page", "page_size", "sort", "status", "ignored", "proxied"]),
    )
    @settings(max_examples=20)
    def test_invalid_arguments_rejected(self, argument: str) -> None:
        reconciler, _, _ = make_reconciler()
        bad = {
            "page": 0,
            "page_size": 0,
            "sort": "random",
            "status": "broken",
            "ignored": "maybe",
            "proxied": "yes",
        }

        try:
            reconciler.query(**{argument: bad[argument]})
            assert False, "Expected ValidationError"
        except ValidationError as e:
            assert e.code.startswith("invalid_")

    def test_zone_filter_and_zone_list(self) -> None:
        reconciler, _, _ = make_reconciler()
        run_async(
            reconciler.sync_from_provider(
                [
                    ProviderDomain("a.example.com", zone_name="example.com"),
                    ProviderDomain("b.example.org", zone_name="example.org"),
                    ProviderDomain("c.example.org", zone_name="example.org"),
                ]
            )
        )

        assert reconciler.list_zones() == ["example.com", "example.org"]
        assert reconciler.query(zone="example.org").total == 2

    def test_unknown_id_not_found(self) -> None:
        reconciler, _, _ = make_reconciler()

        try:
            reconciler.get_record("nope")
            assert False, "Expected RecordNotFoundError"
        except RecordNotFoundError as e:
            assert e.code == "record_not_found"


class TestStats:
    """Dashboard aggregates cover non-ignored records only."""

    def test_stats_buckets_and_issuers(self) -> None:
        reconciler, _, _ = make_reconciler()

        async def scenario():
            await reconciler.upsert_from_probe("a.example.com", measurement("a.example.com", 5, "R3"), NOW)
            await reconciler.upsert_from_probe("b.example.com", measurement("b.example.com", 20, "R3"), NOW)
            await reconciler.upsert_from_probe("c.example.com", measurement("c.example.com", 90, "DigiCert"), NOW)
            await reconciler.upsert_from_probe("d.example.com", dns_failure("d.example.com"), NOW)
            ignored = (await reconciler.upsert_from_probe("e.example.com", measurement("e.example.com", 3, "R3"), NOW)).record
            await reconciler.set_ignored(ignored.id, True)

        run_async(scenario())
        stats = reconciler.stats(NOW)

        assert stats.total_domains == 4
        assert stats.status_counts["warning"] == 2
        assert stats.status_counts["active"] == 1
        assert stats.status_counts["unresolvable"] == 1
        assert stats.expiry_counts == {"d7": 1, "d30": 2}
        assert stats.issuer_counts == {"R3": 2, "DigiCert": 1}


class TestRenewal:
    """Renewal requires an ACME email and reports its outcome as an event."""

    def test_missing_acme_email_rejected(self) -> None:
        reconciler, _, _ = make_reconciler(renewer=StubRenewer(RenewOutcome(True)))

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 5), NOW)
            await reconciler.trigger_renew("example.com")

        try:
            run_async(scenario())
            assert False, "Expected RenewalError"
        except RenewalError as e:
            assert e.code == "acme_email_missing"

    def test_unknown_domain_rejected(self) -> None:
        reconciler, _, _ = make_reconciler()

        try:
            run_async(reconciler.trigger_renew("nowhere.example.com"))
            assert False, "Expected RecordNotFoundError"
        except RecordNotFoundError:
            pass

    @given(success=st.booleans())
    @settings(max_examples=10)
    def test_renew_runs_in_background_and_reports(self, success: bool) -> None:
        renewer = StubRenewer(RenewOutcome(success, "certbot output"))
        tasks = TaskQueue()
        reconciler, store, events = make_reconciler(renewer=renewer, task_queue=tasks)
        repo = SettingsRepository(store)
        candidate = NotificationSettings()
        candidate.acme_email = "ops@example.com"
        repo.save(candidate)
        reprobed = []

        async def reprobe(name):
            reprobed.append(name)

        reconciler.reprobe = reprobe

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 5), NOW)
            events.clear()
            task = await reconciler.trigger_renew("example.com")
            scheduled = reconciler.get_by_name("example.com").renew_state
            await tasks.drain()
            return task, scheduled

        task, scheduled = run_async(scenario())

        assert scheduled == RenewState.SCHEDULED
        assert renewer.calls == [("example.com", "ops@example.com")]
        assert tasks.get(task.id).state == TaskState.SUCCEEDED
        record = reconciler.get_by_name("example.com")
        assert record.renew_state == (RenewState.SUCCEEDED if success else RenewState.FAILED)
        assert [e.kind for e in events] == [EventKind.RENEW_RESULT]
        assert events[0].variables["Result"] == ("success" if success else "failure")
        assert reprobed == (["example.com"] if success else [])

    def test_crashing_renewer_reports_failure(self) -> None:
        class CrashingRenewer:
            async def renew(self, domain: str, email: str) -> RenewOutcome:
                raise RuntimeError("acme client exploded")

        tasks = TaskQueue()
        reconciler, store, events = make_reconciler(renewer=CrashingRenewer(), task_queue=tasks)
        candidate = NotificationSettings()
        candidate.acme_email = "ops@example.com"
        SettingsRepository(store).save(candidate)

        async def scenario():
            await reconciler.upsert_from_probe("example.com", measurement("example.com", 5), NOW)
            events.clear()
            task = await reconciler.trigger_renew("example.com")
            await tasks.drain()
            return task

        task = run_async(scenario())

        record = reconciler.get_by_name("example.com")
        assert record.renew_state == RenewState.FAILED
        assert "acme client exploded" in record.renew_detail
        assert tasks.get(task.id).state == TaskState.SUCCEEDED
        assert [e.kind for e in events] == [EventKind.RENEW_RESULT]
        assert events[0].variables["Result"] == "failure"
