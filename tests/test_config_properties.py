"""
Property-based tests for configuration loading.

Covers the environment loader (including .env files), domain list parsing,
validation and the JSON config file round trip used by the CLI.
"""

import os
import tempfile
from pathlib import Path
from unittest import mock

from hypothesis import given, settings
from hypothesis import strategies as st

from cert_monitor.cli import load_config_from_file, save_config_to_file
from cert_monitor.config import (
    LoggingConfig,
    PersistenceConfig,
    ProviderConfig,
    RenewalConfig,
    RetryConfig,
    ScanConfig,
    ServerConfig,
    SystemConfig,
    load_config_from_env,
    parse_domain_list,
)
from cert_monitor.exceptions import ConfigError


@st.composite
def domain_strategy(draw):
    label = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=10)
    return f"{draw(label)}.{draw(st.sampled_from(['com', 'org', 'de']))}"


@st.composite
def system_config_strategy(draw) -> SystemConfig:
    """Generate valid SystemConfig objects."""
    return SystemConfig(
        scan=ScanConfig(
            interval_seconds=draw(st.floats(min_value=1.0, max_value=86400.0)),
            sync_interval_seconds=draw(st.floats(min_value=1.0, max_value=86400.0)),
            max_workers=draw(st.integers(min_value=1, max_value=64)),
            probe_timeout_seconds=draw(st.floats(min_value=0.5, max_value=120.0)),
            probe_port=draw(st.sampled_from([443, 8443])),
            warning_days=draw(st.integers(min_value=0, max_value=90)),
        ),
        retry=RetryConfig(
            max_retries=draw(st.integers(min_value=0, max_value=5)),
            base_delay_seconds=draw(st.floats(min_value=0.0, max_value=10.0)),
            max_delay_seconds=draw(st.floats(min_value=0.0, max_value=120.0)),
        ),
        persistence=PersistenceConfig(
            state_file_path=Path("/var/lib/cert-monitor/state.json"),
            hmac_secret=draw(st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=32)),
        ),
        logging=LoggingConfig(
            level=draw(st.sampled_from(["debug", "info", "warn", "error"])),
            audit_mode=draw(st.booleans()),
            audit_signing_key=draw(st.one_of(st.none(), st.just("signing-key"))),
            output_format=draw(st.sampled_from(["json", "text", "both"])),
        ),
        provider=ProviderConfig(
            domains=draw(st.lists(domain_strategy(), max_size=5, unique=True)),
            cloudflare_api_token=draw(st.sampled_from(["", "cf-token"])),
            cloudflare_zones=draw(st.lists(domain_strategy(), max_size=3, unique=True)),
            timeout_seconds=draw(st.floats(min_value=1.0, max_value=60.0)),
        ),
        renewal=RenewalConfig(
            command=draw(st.sampled_from(["", "certbot certonly -d {domain} -m {email}"])),
            timeout_seconds=draw(st.floats(min_value=1.0, max_value=3600.0)),
        ),
        server=ServerConfig(
            host=draw(st.sampled_from(["127.0.0.1", "0.0.0.0"])),
            port=draw(st.integers(min_value=1024, max_value=65535)),
        ),
    )


class TestConfigFileRoundTrip:
    """A saved config file loads back to an equal SystemConfig."""

    @given(config=system_config_strategy())
    @settings(max_examples=50)
    def test_save_then_load(self, config: SystemConfig) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "config.json"

            assert save_config_to_file(config, path)
            loaded = load_config_from_file(path)

        assert loaded == config

    def test_missing_file_is_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            assert load_config_from_file(Path(tmp) / "absent.json") is None

    def test_invalid_values_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text('{"scan": {"max_workers": 0}}', encoding="utf-8")

            assert load_config_from_file(path) is None

    def test_partial_file_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text('{"provider": {"domains": ["example.com"]}}', encoding="utf-8")

            loaded = load_config_from_file(path)

        assert loaded.provider.domains == ["example.com"]
        assert loaded.scan == ScanConfig()
        assert loaded.retry == RetryConfig()


class TestDomainListParsing:
    """DOMAINS accepts commas, semicolons and whitespace as separators."""

    @given(
        domains=st.lists(domain_strategy(), min_size=0, max_size=8, unique=True),
        separator=st.sampled_from([",", ";", " ", "\n", ", ", " ; "]),
    )
    @settings(max_examples=100)
    def test_separators(self, domains: list, separator: str) -> None:
        assert parse_domain_list(separator.join(domains)) == domains

    @given(domains=st.lists(domain_strategy(), min_size=1, max_size=5, unique=True))
    @settings(max_examples=50)
    def test_duplicates_and_case_collapsed(self, domains: list) -> None:
        raw = ",".join(domains + [d.upper() for d in domains])

        assert parse_domain_list(raw) == domains

    def test_comments_and_blanks_dropped(self) -> None:
        assert parse_domain_list("a.com,, #disabled.com ;b.org") == ["a.com", "b.org"]
        assert parse_domain_list("") == []


class TestEnvironmentLoading:
    """CERT_MONITOR_* variables override the defaults."""

    def test_defaults_without_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.dict(os.environ, {}, clear=True):
                config = load_config_from_env(Path(tmp) / ".env")

        assert config.scan == ScanConfig()
        assert config.retry == RetryConfig()
        assert config.provider.domains == []

    @given(
        warning_days=st.integers(min_value=0, max_value=90),
        workers=st.integers(min_value=1, max_value=50),
        retries=st.integers(min_value=0, max_value=5),
        domains=st.lists(domain_strategy(), min_size=0, max_size=4, unique=True),
    )
    @settings(max_examples=30)
    def test_variables_applied(self, warning_days: int, workers: int, retries: int, domains: list) -> None:
        env = {
            "CERT_MONITOR_WARNING_DAYS": str(warning_days),
            "CERT_MONITOR_MAX_WORKERS": str(workers),
            "CERT_MONITOR_RETRY_COUNT": str(retries),
            "CERT_MONITOR_LOG_FORMAT": "JSON",
            "CERT_MONITOR_AUDIT_MODE": "yes",
            "DOMAINS": "; ".join(domains),
        }
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.dict(os.environ, env, clear=True):
                config = load_config_from_env(Path(tmp) / ".env")

        assert config.scan.warning_days == warning_days
        assert config.scan.max_workers == workers
        assert config.retry.max_retries == retries
        assert config.logging.output_format == "json"
        assert config.logging.audit_mode is True
        assert config.provider.domains == domains

    def test_dotenv_file_read_but_environment_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            dotenv = Path(tmp) / ".env"
            dotenv.write_text(
                "CERT_MONITOR_WARNING_DAYS=14\nCERT_MONITOR_MAX_WORKERS=3\n", encoding="utf-8"
            )
            with mock.patch.dict(os.environ, {"CERT_MONITOR_MAX_WORKERS": "7"}, clear=True):
                config = load_config_from_env(dotenv)

        assert config.scan.warning_days == 14
        assert config.scan.max_workers == 7

    @given(
        name=st.sampled_from(
            ["CERT_MONITOR_WARNING_DAYS", "CERT_MONITOR_MAX_WORKERS", "CERT_MONITOR_PROBE_TIMEOUT"]
        ),
        value=st.sampled_from(["abc", "1.2.3", "ten"]),
    )
    @settings(max_examples=20)
    def test_unparseable_value_rejected(self, name: str, value: str) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.dict(os.environ, {name: value}, clear=True):
                try:
                    load_config_from_env(Path(tmp) / ".env")
                    assert False, "Expected ConfigError"
                except ConfigError as e:
                    assert e.code == "invalid_env"
                    assert name in e.message


class TestValidation:
    """Out-of-range values are rejected."""

    @given(
        field_name=st.sampled_from(
            ["max_workers", "probe_timeout_seconds", "warning_days", "interval_seconds", "reclassify_interval_seconds"]
        ),
        value=st.integers(min_value=-10, max_value=-1),
    )
    @settings(max_examples=30)
    def test_negative_scan_values_rejected(self, field_name: str, value: int) -> None:
        config = SystemConfig()
        setattr(config.scan, field_name, value)

        try:
            config.validate()
            assert False, "Expected ConfigError"
        except ConfigError as e:
            assert e.code == "invalid_scan"

    def test_unknown_log_format_rejected(self) -> None:
        config = SystemConfig(logging=LoggingConfig(output_format="xml"))

        try:
            config.validate()
            assert False, "Expected ConfigError"
        except ConfigError as e:
            assert e.code == "invalid_logging"

    @given(config=system_config_strategy())
    @settings(max_examples=30)
    def test_generated_configs_valid(self, config: SystemConfig) -> None:
        config.validate()
