"""
Configuration dataclasses for the certificate monitor.

This module defines all configuration structures used throughout the system,
including scan scheduling, delivery retries, persistence, logging, the
authoritative domain provider, renewal and the HTTP server. It also loads a
SystemConfig from the environment (optionally from a .env file).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigError


DEFAULT_STATE_FILE = Path.home() / ".cert_monitor" / "state.json"


@dataclass
class ScanConfig:
    """Scan cycle scheduling and probing limits."""

    interval_seconds: float = 3600.0
    sync_interval_seconds: float = 21600.0
    reclassify_interval_seconds: float = 900.0
    max_workers: int = 10
    probe_timeout_seconds: float = 15.0
    probe_port: int = 443
    warning_days: int = 30


@dataclass
class RetryConfig:
    """Delivery retry behavior (max_retries=2 means 3 attempts)."""

    max_retries: int = 2
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Optional[Path] = DEFAULT_STATE_FILE
    hmac_secret: str = "default-secret-change-me"


@dataclass
class LoggingConfig:
    """Logging and audit configuration."""

    level: str = "info"
    audit_mode: bool = False
    audit_signing_key: Optional[str] = None
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class ProviderConfig:
    """Where the authoritative domain list comes from."""

    domains: list[str] = field(default_factory=list)
    cloudflare_api_token: str = ""
    cloudflare_zones: list[str] = field(default_factory=list)
    timeout_seconds: float = 30.0


@dataclass
class RenewalConfig:
    """External renewal command; {domain} and {email} are substituted."""

    command: str = ""
    timeout_seconds: float = 600.0


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    scan: ScanConfig = field(default_factory=ScanConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def validate(self) -> None:
        """Raise ConfigError on values the rest of the system cannot honor."""
        if self.scan.max_workers < 1:
            raise ConfigError("invalid_scan", "scan.max_workers must be >= 1")
        if self.scan.probe_timeout_seconds <= 0:
            raise ConfigError("invalid_scan", "scan.probe_timeout_seconds must be > 0")
        if self.scan.warning_days < 0:
            raise ConfigError("invalid_scan", "scan.warning_days must be >= 0")
        if min(
            self.scan.interval_seconds,
            self.scan.sync_interval_seconds,
            self.scan.reclassify_interval_seconds,
        ) <= 0:
            raise ConfigError("invalid_scan", "scan intervals must be > 0")
        if self.retry.max_retries < 0:
            raise ConfigError("invalid_retry", "retry.max_retries must be >= 0")
        if self.logging.output_format not in ("json", "text", "both"):
            raise ConfigError(
                "invalid_logging",
                f"Invalid logging.output_format: {self.logging.output_format}",
            )


def parse_domain_list(env_val: str) -> list[str]:
    """Split a comma/semicolon/whitespace separated list, dropping comments and duplicates."""
    if not env_val:
        return []
    raw = [p.strip() for chunk in env_val.replace(";", ",").split(",") for p in chunk.split()]
    seen, out = set(), []
    for d in raw:
        if not d or d.startswith("#"):
            continue
        lc = d.lower()
        if lc not in seen:
            out.append(lc)
            seen.add(lc)
    return out


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError("invalid_env", f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError("invalid_env", f"{name} must be a number, got {raw!r}") from e


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(dotenv_path: Optional[Path] = None) -> SystemConfig:
    """
    Build a SystemConfig from CERT_MONITOR_* environment variables.

    Args:
        dotenv_path: Optional .env file to load first (existing variables win)

    Returns:
        Validated SystemConfig

    Raises:
        ConfigError: If a variable cannot be parsed or a value is out of range
    """
    load_dotenv(dotenv_path)

    state_file = os.getenv("CERT_MONITOR_STATE_FILE", "").strip()

    config = SystemConfig(
        scan=ScanConfig(
            interval_seconds=_float_env("CERT_MONITOR_SCAN_INTERVAL", 3600.0),
            sync_interval_seconds=_float_env("CERT_MONITOR_SYNC_INTERVAL", 21600.0),
            reclassify_interval_seconds=_float_env("CERT_MONITOR_RECLASSIFY_INTERVAL", 900.0),
            max_workers=_int_env("CERT_MONITOR_MAX_WORKERS", 10),
            probe_timeout_seconds=_float_env("CERT_MONITOR_PROBE_TIMEOUT", 15.0),
            probe_port=_int_env("CERT_MONITOR_PROBE_PORT", 443),
            warning_days=_int_env("CERT_MONITOR_WARNING_DAYS", 30),
        ),
        retry=RetryConfig(
            max_retries=_int_env("CERT_MONITOR_RETRY_COUNT", 2),
            base_delay_seconds=_float_env("CERT_MONITOR_RETRY_BASE_DELAY", 2.0),
            max_delay_seconds=_float_env("CERT_MONITOR_RETRY_MAX_DELAY", 30.0),
        ),
        persistence=PersistenceConfig(
            state_file_path=Path(state_file) if state_file else DEFAULT_STATE_FILE,
            hmac_secret=os.getenv("CERT_MONITOR_HMAC_SECRET", "default-secret-change-me"),
        ),
        logging=LoggingConfig(
            level=os.getenv("CERT_MONITOR_LOG_LEVEL", "info").lower(),
            audit_mode=_bool_env("CERT_MONITOR_AUDIT_MODE", False),
            audit_signing_key=os.getenv("CERT_MONITOR_AUDIT_KEY") or None,
            output_format=os.getenv("CERT_MONITOR_LOG_FORMAT", "text").lower(),
        ),
        provider=ProviderConfig(
            domains=parse_domain_list(os.getenv("DOMAINS", "")),
            cloudflare_api_token=os.getenv("CLOUDFLARE_API_TOKEN", "").strip(),
            cloudflare_zones=parse_domain_list(os.getenv("CLOUDFLARE_ZONES", "")),
        ),
        renewal=RenewalConfig(
            command=os.getenv("CERT_MONITOR_RENEW_COMMAND", "").strip(),
            timeout_seconds=_float_env("CERT_MONITOR_RENEW_TIMEOUT", 600.0),
        ),
        server=ServerConfig(
            host=os.getenv("CERT_MONITOR_HOST", "127.0.0.1"),
            port=_int_env("CERT_MONITOR_PORT", 8080),
        ),
    )
    config.validate()
    return config
