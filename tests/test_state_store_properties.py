"""
Property-based tests for the StateStore.

Covers the persisted round trip of records and settings, HMAC tamper
detection, deferred saves and memory-only operation.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from cert_monitor.enums import CertStatus, EventKind
from cert_monitor.exceptions import PersistenceError, TamperingError
from cert_monitor.models import DomainRecord, EventSettings, NotificationSettings
from cert_monitor.state_store import DOMAINS, SettingsRepository, StateStore


secret_strategy = st.text(
    alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"),
    min_size=1,
    max_size=32,
)


@st.composite
def domain_record_strategy(draw) -> DomainRecord:
    """Generate DomainRecords with arbitrary facts."""
    label = draw(st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=12))
    base = datetime(2030, 1, 1, tzinfo=timezone.utc)
    has_cert = draw(st.booleans())
    return DomainRecord(
        id=draw(st.text(alphabet="0123456789abcdef", min_size=32, max_size=32)),
        domain_name=f"{label}.example.com",
        zone_id=draw(st.sampled_from(["", "z1"])),
        zone_name="example.com",
        is_proxied=draw(st.booleans()),
        is_ignored=draw(st.booleans()),
        auto_renew=draw(st.booleans()),
        issuer=draw(st.sampled_from(["", "R3", "DigiCert Inc"])) if has_cert else "",
        not_before=base - timedelta(days=30) if has_cert else None,
        not_after=base + timedelta(seconds=draw(st.integers(min_value=-10**7, max_value=10**8))) if has_cert else None,
        sans=[f"{label}.example.com"] if has_cert else [],
        tls_version=draw(st.sampled_from(["", "TLS 1.2", "TLS 1.3"])),
        http_status_code=draw(st.sampled_from([0, 200, 404, 503])),
        latency=draw(st.integers(min_value=0, max_value=10000)),
        ip_addresses=draw(st.lists(st.sampled_from(["192.0.2.1", "2001:db8::1"]), unique=True)),
        status=draw(st.sampled_from(list(CertStatus))),
        days_remaining=draw(st.integers(min_value=-100, max_value=400)),
        error_msg=draw(st.sampled_from(["", "DNS resolution failed: NXDOMAIN"])),
        last_check_time=base,
        version=draw(st.integers(min_value=0, max_value=1000)),
        created_at=base - timedelta(days=1),
    )


def write_records(path: Path, secret: str, records: list) -> StateStore:
    store = StateStore(path, secret)
    with store.deferred_save():
        for record in records:
            store.put(DOMAINS, record.domain_name, record.to_dict())
    return store


class TestRoundTrip:
    """Everything written is read back unchanged by a fresh store."""

    @given(
        records=st.lists(domain_record_strategy(), min_size=1, max_size=6, unique_by=lambda r: r.domain_name),
        secret=secret_strategy,
    )
    @settings(max_examples=50, deadline=None)
    def test_records_round_trip(self, records: list, secret: str) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            write_records(path, secret, records)

            fresh = StateStore(path, secret)
            loaded = fresh.load()

            restored = [DomainRecord.from_dict(fresh.get(DOMAINS, r.domain_name)) for r in records]

        assert loaded is True
        assert restored == records

    def test_settings_round_trip(self) -> None:
        candidate = NotificationSettings()
        candidate.webhook.enabled = True
        candidate.webhook.url = "https://hooks.example.com"
        candidate.telegram.templates[EventKind.STATUS_ALERT.value] = "{{.Domain}}"
        candidate.events[EventKind.DOMAIN_ADDED] = EventSettings(enabled=False, template="+{{.Domain}}")
        candidate.acme_email = "ops@example.com"

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            SettingsRepository(StateStore(path, "secret")).save(candidate)

            fresh = StateStore(path, "secret")
            fresh.load()
            restored = SettingsRepository(fresh).get()

        assert restored == candidate

    def test_missing_file_is_empty_state(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = StateStore(Path(tmp) / "absent.json", "secret")

            assert store.load() is False
            assert store.keys(DOMAINS) == []
            assert SettingsRepository(store).get() == NotificationSettings()


class TestTamperDetection:
    """Modified files and wrong secrets are rejected on load."""

    @given(records=st.lists(domain_record_strategy(), min_size=1, max_size=3, unique_by=lambda r: r.domain_name))
    @settings(max_examples=30, deadline=None)
    def test_modified_record_rejected(self, records: list) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            write_records(path, "secret", records)

            raw = json.loads(path.read_text(encoding="utf-8"))
            first = records[0].domain_name
            raw["collections"][DOMAINS][first]["is_ignored"] = not records[0].is_ignored
            path.write_text(json.dumps(raw), encoding="utf-8")

            try:
                StateStore(path, "secret").load()
                assert False, "Expected TamperingError"
            except TamperingError as e:
                assert e.code == "hmac_mismatch"

    @given(secret=secret_strategy, other=secret_strategy)
    @settings(max_examples=30, deadline=None)
    def test_wrong_secret_rejected(self, secret: str, other: str) -> None:
        assume(secret != other)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            store = StateStore(path, secret)
            store.put(DOMAINS, "example.com", {"id": "1", "domain_name": "example.com"})

            try:
                StateStore(path, other).load()
                assert False, "Expected TamperingError"
            except TamperingError:
                pass

    def test_corrupt_file_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            path.write_text("{not json", encoding="utf-8")

            try:
                StateStore(path, "secret").load()
                assert False, "Expected PersistenceError"
            except PersistenceError as e:
                assert e.code == "parse_error"


class TestSaveBehaviour:
    """Mutations save immediately unless deferred; memory-only never touches disk."""

    def test_deferred_save_writes_once_on_exit(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            store = StateStore(path, "secret")

            with store.deferred_save():
                store.put(DOMAINS, "a.example.com", {"id": "a"})
                store.put(DOMAINS, "b.example.com", {"id": "b"})
                written_inside = path.exists()

            assert written_inside is False
            assert path.exists()
            fresh = StateStore(path, "secret")
            fresh.load()
            assert sorted(fresh.keys(DOMAINS)) == ["a.example.com", "b.example.com"]

    def test_memory_only_store(self) -> None:
        store = StateStore()

        store.put(DOMAINS, "a.example.com", {"id": "a"})
        assert store.load() is False
        assert store.get(DOMAINS, "a.example.com") == {"id": "a"}
        assert store.delete(DOMAINS, "a.example.com") is True
        assert store.delete(DOMAINS, "a.example.com") is False
        assert store.file_path is None

    @given(value=st.dictionaries(st.sampled_from(["id", "issuer"]), st.text(max_size=5)))
    @settings(max_examples=20)
    def test_get_returns_copies(self, value: dict) -> None:
        store = StateStore()
        store.put(DOMAINS, "a.example.com", value)

        fetched = store.get(DOMAINS, "a.example.com")
        fetched["mutated"] = True

        assert store.get(DOMAINS, "a.example.com") == value
