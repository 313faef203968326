"""
Command-line interface for the certificate monitor.

Commands:
- serve: run the HTTP API with the recurring scan/sync schedule
- scan: run one scan cycle and print the results
- sync: reconcile against the provider listing once
- check: probe a single domain without storing anything
- config: show, init or validate a JSON configuration file
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .classifier import Classifier
from .config import (
    DEFAULT_STATE_FILE,
    LoggingConfig,
    PersistenceConfig,
    ProviderConfig,
    RenewalConfig,
    RetryConfig,
    ScanConfig,
    ServerConfig,
    SystemConfig,
    load_config_from_env,
)
from .exceptions import CertMonitorError
from .models import Measurement
from .probe import NetworkProber
from .service import MonitorService


DEFAULT_CONFIG_PATH = Path.home() / ".cert_monitor" / "config.json"


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        SystemConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        scan_data = data.get("scan", {})
        scan = ScanConfig(
            interval_seconds=scan_data.get("interval_seconds", 3600.0),
            sync_interval_seconds=scan_data.get("sync_interval_seconds", 21600.0),
            reclassify_interval_seconds=scan_data.get("reclassify_interval_seconds", 900.0),
            max_workers=scan_data.get("max_workers", 10),
            probe_timeout_seconds=scan_data.get("probe_timeout_seconds", 15.0),
            probe_port=scan_data.get("probe_port", 443),
            warning_days=scan_data.get("warning_days", 30),
        )

        retry_data = data.get("retry", {})
        retry = RetryConfig(
            max_retries=retry_data.get("max_retries", 2),
            base_delay_seconds=retry_data.get("base_delay_seconds", 2.0),
            max_delay_seconds=retry_data.get("max_delay_seconds", 30.0),
        )

        persistence_data = data.get("persistence", {})
        state_file_path = persistence_data.get("state_file_path")
        persistence = PersistenceConfig(
            state_file_path=Path(state_file_path) if state_file_path else DEFAULT_STATE_FILE,
            hmac_secret=persistence_data.get("hmac_secret", "default-secret-change-me"),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            audit_mode=logging_data.get("audit_mode", False),
            audit_signing_key=logging_data.get("audit_signing_key"),
            output_format=logging_data.get("output_format", "text"),
        )

        provider_data = data.get("provider", {})
        provider = ProviderConfig(
            domains=list(provider_data.get("domains", [])),
            cloudflare_api_token=provider_data.get("cloudflare_api_token", ""),
            cloudflare_zones=list(provider_data.get("cloudflare_zones", [])),
            timeout_seconds=provider_data.get("timeout_seconds", 30.0),
        )

        renewal_data = data.get("renewal", {})
        renewal = RenewalConfig(
            command=renewal_data.get("command", ""),
            timeout_seconds=renewal_data.get("timeout_seconds", 600.0),
        )

        server_data = data.get("server", {})
        server = ServerConfig(
            host=server_data.get("host", "127.0.0.1"),
            port=server_data.get("port", 8080),
        )

        config = SystemConfig(
            scan=scan,
            retry=retry,
            persistence=persistence,
            logging=logging_config,
            provider=provider,
            renewal=renewal,
            server=server,
        )
        config.validate()
        return config

    except (json.JSONDecodeError, KeyError, TypeError, CertMonitorError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "scan": {
                "interval_seconds": config.scan.interval_seconds,
                "sync_interval_seconds": config.scan.sync_interval_seconds,
                "reclassify_interval_seconds": config.scan.reclassify_interval_seconds,
                "max_workers": config.scan.max_workers,
                "probe_timeout_seconds": config.scan.probe_timeout_seconds,
                "probe_port": config.scan.probe_port,
                "warning_days": config.scan.warning_days,
            },
            "retry": {
                "max_retries": config.retry.max_retries,
                "base_delay_seconds": config.retry.base_delay_seconds,
                "max_delay_seconds": config.retry.max_delay_seconds,
            },
            "persistence": {
                "state_file_path": str(config.persistence.state_file_path),
                "hmac_secret": config.persistence.hmac_secret,
            },
            "logging": {
                "level": config.logging.level,
                "audit_mode": config.logging.audit_mode,
                "audit_signing_key": config.logging.audit_signing_key,
                "output_format": config.logging.output_format,
            },
            "provider": {
                "domains": list(config.provider.domains),
                "cloudflare_api_token": config.provider.cloudflare_api_token,
                "cloudflare_zones": list(config.provider.cloudflare_zones),
                "timeout_seconds": config.provider.timeout_seconds,
            },
            "renewal": {
                "command": config.renewal.command,
                "timeout_seconds": config.renewal.timeout_seconds,
            },
            "server": {
                "host": config.server.host,
                "port": config.server.port,
            },
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        return True

    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def resolve_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """Config file when --config is given, else the environment (and .env)."""
    if getattr(args, "config", None):
        config = load_config_from_file(Path(args.config))
        if config is None:
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
        return config
    try:
        return load_config_from_env()
    except CertMonitorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return None


def build_service(config: SystemConfig) -> Optional[MonitorService]:
    service = MonitorService(config)
    try:
        service.load_state()
    except CertMonitorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return None
    return service


def print_records(service: MonitorService) -> None:
    page = service.reconciler.query(page=1, page_size=1000)
    for record in page.records:
        days = str(record.days_remaining) if record.status.has_certificate else "-"
        line = f"{record.domain_name:<40} {record.status.value:<13} {days:>5}  {record.issuer}"
        if record.error_msg:
            line += f"  ({record.error_msg})"
        print(line)


async def run_scan(service: MonitorService, domains: list[str]) -> int:
    try:
        report = await service.orchestrator.run_cycle(domains or None)
        await service.dispatcher.drain()
    finally:
        await service.stop()
    print_records(service)
    print(f"\nScanned {report.scanned} domain(s), {report.transitions} transition(s)")
    return 1 if report.errors else 0


async def run_sync(service: MonitorService) -> int:
    try:
        outcome = await service.run_sync()
        await service.dispatcher.drain()
    except CertMonitorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await service.stop()
    print(json.dumps(outcome, indent=2))
    return 0


async def run_check(domain: str, config: SystemConfig) -> int:
    prober = NetworkProber(port=config.scan.probe_port, timeout=config.scan.probe_timeout_seconds)
    try:
        result = await prober.probe(domain)
    finally:
        await prober.aclose()

    classification = Classifier(config.scan.warning_days).classify(None, result)
    print(f"Domain:  {domain}")
    print(f"Status:  {classification.status.value}")
    if classification.status.has_certificate:
        print(f"Days:    {classification.days_remaining}")
    if classification.error_msg:
        print(f"Error:   {classification.error_msg}")
    if isinstance(result, Measurement):
        print(f"IPs:     {', '.join(result.dns.addresses) or '-'}")
        print(f"Issuer:  {result.tls.issuer or '-'}")
        print(f"TLS:     {result.tls.protocol_version or '-'}")
        print(f"HTTP:    {result.http.status_code or '-'} ({result.http.latency_ms} ms)")
        if result.registration.expiry:
            print(f"Domain expiry: {result.registration.expiry.date().isoformat()}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle the 'serve' command."""
    import uvicorn

    from .api import create_app

    config = resolve_config(args)
    if config is None:
        return 1
    service = build_service(config)
    if service is None:
        return 1

    app = create_app(service, run_scheduler=not args.no_schedule)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=config.logging.level if config.logging.level != "warn" else "warning",
    )
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    """Handle the 'scan' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    service = build_service(config)
    if service is None:
        return 1
    return asyncio.run(run_scan(service, args.domains))


def cmd_sync(args: argparse.Namespace) -> int:
    """Handle the 'sync' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    service = build_service(config)
    if service is None:
        return 1
    return asyncio.run(run_sync(service))


def cmd_check(args: argparse.Namespace) -> int:
    """Handle the 'check' command."""
    config = resolve_config(args)
    if config is None:
        return 1
    return asyncio.run(run_check(args.domain, config))


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  Scan interval: {config.scan.interval_seconds:g}s")
        print(f"  Warning window: {config.scan.warning_days} days")
        print(f"  Workers: {config.scan.max_workers}")
        print(f"  Static domains: {len(config.provider.domains)}")
        print(f"  Cloudflare: {'yes' if config.provider.cloudflare_api_token else 'no'}")
        print(f"  State file: {config.persistence.state_file_path}")
        print(f"  Log level: {config.logging.level}")
        print(f"  Audit mode: {config.logging.audit_mode}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        if save_config_to_file(SystemConfig(), config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="cert-monitor",
        description="TLS certificate and reachability monitor with alerting",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API and the schedule")
    serve_parser.add_argument("--config", "-c", help="Path to configuration file")
    serve_parser.add_argument("--host", help="Bind address (overrides config)")
    serve_parser.add_argument("--port", type=int, help="Bind port (overrides config)")
    serve_parser.add_argument(
        "--no-schedule",
        action="store_true",
        help="Only serve the API; scans and syncs run on demand",
    )
    serve_parser.set_defaults(func=cmd_serve)

    scan_parser = subparsers.add_parser("scan", help="Run one scan cycle")
    scan_parser.add_argument("domains", nargs="*", help="Only probe these domains")
    scan_parser.add_argument("--config", "-c", help="Path to configuration file")
    scan_parser.set_defaults(func=cmd_scan)

    sync_parser = subparsers.add_parser("sync", help="Reconcile against the provider listing")
    sync_parser.add_argument("--config", "-c", help="Path to configuration file")
    sync_parser.set_defaults(func=cmd_sync)

    check_parser = subparsers.add_parser("check", help="Probe one domain without storing it")
    check_parser.add_argument("domain", help="Domain to probe (e.g., example.com)")
    check_parser.add_argument("--config", "-c", help="Path to configuration file")
    check_parser.set_defaults(func=cmd_check)

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument("--path", "-p", help="Path to configuration file")
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
