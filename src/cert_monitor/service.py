"""
MonitorService: wires the components together.

The service owns one instance of every component, exposes the manual
triggers (scan, sync, renew, test notification) as fire-and-forget task
submissions, and runs the recurring schedule.
"""

import asyncio
import re
from datetime import datetime
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .classifier import Classifier
from .config import SystemConfig
from .enums import TaskKind
from .exceptions import ProviderError, TemplateError, ValidationError
from .models import NotificationSettings, utcnow
from .notifications import ChannelFactory, NotificationDispatcher, default_channel_factory
from .orchestrator import ScanOrchestrator
from .probe import NetworkProber, Prober
from .providers import CloudflareProvider, CommandRenewer, DomainProvider, Renewer, StaticProvider
from .reconciler import Reconciler
from .scheduler import Scheduler
from .state_store import SettingsRepository, StateStore
from .task_queue import TaskQueue, TaskRecord
from .templates import TemplateEngine


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def build_provider(config: SystemConfig) -> Optional[DomainProvider]:
    """Cloudflare when a token is configured, else the static list, else nothing."""
    if config.provider.cloudflare_api_token:
        return CloudflareProvider(
            api_token=config.provider.cloudflare_api_token,
            zones=config.provider.cloudflare_zones,
            timeout=config.provider.timeout_seconds,
        )
    if config.provider.domains:
        return StaticProvider(config.provider.domains)
    return None


def build_renewer(config: SystemConfig) -> Optional[Renewer]:
    if not config.renewal.command:
        return None
    return CommandRenewer(config.renewal.command, timeout=config.renewal.timeout_seconds)


class MonitorService:
    """
    Facade over the monitor's components.

    Every collaborator can be injected; the defaults talk to the network and
    to the configured state file.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        store: Optional[StateStore] = None,
        prober: Optional[Prober] = None,
        provider: Optional[DomainProvider] = None,
        renewer: Optional[Renewer] = None,
        channel_factory: ChannelFactory = default_channel_factory,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or SystemConfig()
        self.logger = logger or AuditLogger.from_config(self.config.logging)
        self.store = store if store is not None else StateStore(
            self.config.persistence.state_file_path,
            self.config.persistence.hmac_secret,
        )
        self.settings = SettingsRepository(self.store)
        self.templates = TemplateEngine()
        self.tasks = TaskQueue(logger=self.logger)
        self.dispatcher = NotificationDispatcher(
            settings_provider=self.settings.get,
            retry_config=self.config.retry,
            template_engine=self.templates,
            channel_factory=channel_factory,
            logger=self.logger,
        )
        self.reconciler = Reconciler(
            store=self.store,
            classifier=Classifier(self.config.scan.warning_days),
            event_sink=self.dispatcher.publish,
            logger=self.logger,
            clock=clock,
            renewer=renewer if renewer is not None else build_renewer(self.config),
            task_queue=self.tasks,
        )
        self.prober = prober or NetworkProber(
            port=self.config.scan.probe_port,
            timeout=self.config.scan.probe_timeout_seconds,
        )
        self.orchestrator = ScanOrchestrator(
            reconciler=self.reconciler,
            prober=self.prober,
            config=self.config.scan,
            logger=self.logger,
        )
        self.reconciler.reprobe = self.orchestrator.probe_domain
        self.provider = provider if provider is not None else build_provider(self.config)
        self.scheduler = Scheduler(logger=self.logger)

        self._stop_event: Optional[asyncio.Event] = None
        self._scheduler_task: Optional[asyncio.Task] = None

    # --- Lifecycle ------------------------------------------------------------

    def load_state(self) -> bool:
        return self.store.load()

    async def start(self) -> None:
        """Start the recurring schedule."""
        if self._scheduler_task is not None:
            return
        if self.provider is not None:
            self.scheduler.schedule("sync", self.config.scan.sync_interval_seconds, self._scheduled_sync)
        self.scheduler.schedule("scan", self.config.scan.interval_seconds, self._scheduled_scan)
        self.scheduler.schedule(
            "reclassify",
            self.config.scan.reclassify_interval_seconds,
            self.reclassify,
            run_immediately=False,
        )

        self._stop_event = asyncio.Event()
        self._scheduler_task = asyncio.get_running_loop().create_task(
            self.scheduler.run(self._stop_event)
        )
        self.logger.info(
            "MonitorService",
            "Service started",
            {
                "scan_interval": self.config.scan.interval_seconds,
                "sync_interval": self.config.scan.sync_interval_seconds if self.provider else None,
                "warning_days": self.config.scan.warning_days,
            },
        )

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._scheduler_task is not None:
            await self._scheduler_task
            self._scheduler_task = None
        await self.tasks.cancel_all()
        await self.dispatcher.drain()
        aclose = getattr(self.prober, "aclose", None)
        if aclose is not None:
            await aclose()
        self.logger.info("MonitorService", "Service stopped")

    async def drain(self) -> None:
        """Wait for all background tasks and deliveries to finish."""
        await self.tasks.drain()
        await self.dispatcher.drain()

    async def _scheduled_scan(self) -> None:
        self.submit_scan()

    async def _scheduled_sync(self) -> None:
        self.submit_sync()

    async def reclassify(self) -> int:
        """
        Re-derive statuses from stored facts between scans.

        Time alone moves certificates into the warning window or past expiry,
        and ignored records are never probed.
        """
        emitted = await self.reconciler.reclassify_all()
        return len(emitted)

    # --- Manual triggers ------------------------------------------------------

    def submit_scan(self) -> TaskRecord:
        """Queue a scan cycle; joins the running one if there is one."""
        return self.tasks.submit(TaskKind.SCAN, self._run_scan, coalesce=True)

    async def _run_scan(self) -> dict:
        report = await self.orchestrator.run_cycle()
        return report.to_dict()

    def submit_sync(self) -> TaskRecord:
        """Queue a provider sync; joins the running one if there is one."""
        return self.tasks.submit(TaskKind.SYNC, self.run_sync, coalesce=True)

    async def run_sync(self) -> dict:
        """
        Fetch the provider listing and reconcile.

        A ProviderError propagates (failing the task) before anything is
        deleted. Newly added domains trigger a scan.
        """
        if self.provider is None:
            self.logger.warn("MonitorService", "Sync requested but no provider is configured")
            return {"added": [], "removed": [], "updated": [], "invalid": {}}

        try:
            domains = await self.provider.list_domains()
        except ProviderError as e:
            self.logger.log_error("MonitorService", "Provider listing failed, nothing deleted", e)
            raise

        outcome = await self.reconciler.sync_from_provider(domains)
        if outcome.added:
            self.submit_scan()
        return outcome.to_dict()

    async def submit_renew(self, domain: str) -> TaskRecord:
        return await self.reconciler.trigger_renew(domain)

    def submit_test_notification(self, candidate: NotificationSettings) -> TaskRecord:
        """
        Validate the unsaved settings, then send the synthetic test in the background.

        Raises:
            TemplateError: If a template in the candidate is malformed
        """
        self.templates.validate_settings(candidate)

        async def run() -> list[dict]:
            results = await self.dispatcher.send_test(candidate)
            return [r.to_dict() for r in results]

        return self.tasks.submit(TaskKind.TEST_NOTIFICATION, run)

    # --- Settings -------------------------------------------------------------

    def get_settings(self) -> NotificationSettings:
        return self.settings.get()

    def save_settings(self, candidate: NotificationSettings) -> NotificationSettings:
        """
        Validate and store the settings; on TemplateError the stored ones are kept.

        The ACME email has its own endpoint, so an empty one in the candidate
        keeps the stored value.
        """
        try:
            self.templates.validate_settings(candidate)
        except TemplateError as e:
            self.logger.warn(
                "MonitorService",
                "Rejected notification settings",
                {"location": e.details.get("location"), "reason": e.message},
            )
            raise

        if not candidate.acme_email:
            candidate.acme_email = self.settings.get().acme_email
        self.settings.save(candidate)
        self.logger.info(
            "MonitorService",
            "Notification settings saved",
            {
                "webhook_enabled": candidate.webhook.enabled,
                "telegram_enabled": candidate.telegram.enabled,
            },
        )
        return candidate

    def save_acme_email(self, email: str) -> NotificationSettings:
        email = (email or "").strip()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError(
                code="invalid_email",
                message=f"Not a valid email address: {email!r}",
            )
        settings = self.settings.get()
        settings.acme_email = email
        self.settings.save(settings)
        self.logger.info("MonitorService", "ACME email saved")
        return settings
