"""
Notification channels and the Notification Dispatcher.

The dispatcher consumes NotificationEvents from the reconciler, renders the
configured template per enabled channel and delivers it with bounded
exponential backoff. Delivery runs in background tasks so a slow channel
never blocks a scan. Repeated status alerts for an unchanged status are
suppressed per domain.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, runtime_checkable

import httpx

from .audit_logger import AuditLogger
from .config import RetryConfig
from .enums import ChannelKind, DeliveryState, EventKind
from .exceptions import DeliveryFailure, TemplateError
from .models import DeliveryRecord, NotificationEvent, NotificationSettings
from .templates import TEST_VARIABLES, TemplateEngine


@runtime_checkable
class NotificationChannel(Protocol):
    """Interface of a delivery transport."""

    async def send(self, text: str, event: NotificationEvent) -> None:
        """
        Deliver a rendered message.

        Raises:
            DeliveryFailure: If the endpoint is unreachable or rejects the message
        """
        ...

    def get_name(self) -> str:
        ...


class WebhookChannel:
    """Generic webhook channel using HTTP POST with a JSON body."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def send(self, text: str, event: NotificationEvent) -> None:
        # "content" is what Discord-compatible receivers read
        data = {
            "text": text,
            "content": text,
            "event": event.kind.value,
            "domain": event.domain,
            "variables": event.variables,
            "timestamp": event.created_at.isoformat(),
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(self._url, json=data)
            except httpx.HTTPError as e:
                raise DeliveryFailure(
                    code="webhook_unreachable",
                    message=f"Webhook request failed: {type(e).__name__}",
                ) from e
        if not 200 <= response.status_code < 300:
            raise DeliveryFailure(
                code="webhook_rejected",
                message=f"Webhook returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )

    def get_name(self) -> str:
        return ChannelKind.WEBHOOK.value


class TelegramChannel:
    """Telegram channel using the Bot API sendMessage call."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 30.0,
        api_base: str = "https://api.telegram.org",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = f"{api_base.rstrip('/')}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._timeout = timeout
        self._transport = transport

    async def send(self, text: str, event: NotificationEvent) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self._url,
                    json={"chat_id": self._chat_id, "text": text, "disable_web_page_preview": True},
                )
            except httpx.HTTPError as e:
                # The URL embeds the bot token; never echo it
                raise DeliveryFailure(
                    code="telegram_unreachable",
                    message=f"Telegram request failed: {type(e).__name__}",
                ) from e

        description = ""
        try:
            body = response.json()
            ok = bool(body.get("ok")) if isinstance(body, dict) else False
            description = str(body.get("description", "")) if isinstance(body, dict) else ""
        except ValueError:
            ok = False
        if response.status_code != 200 or not ok:
            raise DeliveryFailure(
                code="telegram_rejected",
                message=f"Telegram returned HTTP {response.status_code}: {description}".rstrip(": "),
                details={"status_code": response.status_code},
            )

    def get_name(self) -> str:
        return ChannelKind.TELEGRAM.value


ChannelFactory = Callable[[NotificationSettings, ChannelKind], Optional[NotificationChannel]]


def default_channel_factory(
    settings: NotificationSettings,
    kind: ChannelKind,
) -> Optional[NotificationChannel]:
    """Build the channel for ``kind`` if it is enabled and fully configured."""
    if kind == ChannelKind.WEBHOOK:
        webhook = settings.webhook
        if webhook.enabled and webhook.url:
            return WebhookChannel(webhook.url)
        return None
    telegram = settings.telegram
    if telegram.enabled and telegram.bot_token and telegram.chat_id:
        return TelegramChannel(telegram.bot_token, telegram.chat_id)
    return None


@dataclass
class RetryAttempt:
    """Record of a single delivery attempt that failed."""

    attempt_number: int
    error: str
    timestamp: str


class NotificationDispatcher:
    """
    Routes events to enabled channels with retry logic.

    Implements:
    - per-event-kind enable flags and channel enable flags
    - template resolution (channel override, event template, default)
    - status-alert de-duplication per record write
    - retry with exponential backoff, then a recorded failure
    - an unsaved "send test" that bypasses events and de-duplication
    """

    def __init__(
        self,
        settings_provider: Callable[[], NotificationSettings],
        retry_config: Optional[RetryConfig] = None,
        template_engine: Optional[TemplateEngine] = None,
        channel_factory: ChannelFactory = default_channel_factory,
        logger: Optional[AuditLogger] = None,
        max_deliveries: int = 500,
    ) -> None:
        self._settings_provider = settings_provider
        self._retry_config = retry_config or RetryConfig()
        self._templates = template_engine or TemplateEngine()
        self._channel_factory = channel_factory
        self._logger = logger

        self._last_alerted: dict[str, tuple[str, int]] = {}
        self._states: dict[tuple[str, EventKind], DeliveryState] = {}
        self._deliveries: deque[DeliveryRecord] = deque(maxlen=max_deliveries)
        self._last_test: dict[str, DeliveryRecord] = {}
        self._pending: set[asyncio.Task] = set()
        self._failure_count = 0

    # --- Event intake ---------------------------------------------------------

    def publish(self, event: NotificationEvent) -> None:
        """Dispatch the event in the background and return immediately."""
        task = asyncio.get_running_loop().create_task(self.dispatch(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every published event to finish delivering."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def should_send(self, event: NotificationEvent) -> bool:
        """
        Determine whether an event is a genuine change worth delivering.

        Status alerts are sent only for old != new. An alert carrying the
        same record write (record id and version) as the last one delivered
        for the domain is a redelivery and is dropped.
        """
        if event.kind != EventKind.STATUS_ALERT:
            return True
        if event.old_status == event.new_status:
            return False
        if not event.record_id:
            return True
        return self._last_alerted.get(event.domain) != (event.record_id, event.version)

    async def dispatch(self, event: NotificationEvent) -> list[DeliveryRecord]:
        """
        Deliver one event to every enabled channel.

        Returns:
            One DeliveryRecord per channel attempted (empty when suppressed)
        """
        if event.kind == EventKind.DOMAIN_REMOVED:
            self._last_alerted.pop(event.domain, None)

        if not self.should_send(event):
            self._log_debug(
                "Suppressed duplicate status alert",
                {"domain": event.domain, "status": event.new_status},
            )
            return []
        if event.kind == EventKind.STATUS_ALERT and event.record_id:
            self._last_alerted[event.domain] = (event.record_id, event.version)

        settings = self._settings_provider()
        if not settings.event(event.kind).enabled:
            return []

        key = (event.domain, event.kind)
        channels = [
            (kind, channel)
            for kind in ChannelKind
            for channel in [self._channel_factory(settings, kind)]
            if channel is not None
        ]
        if not channels:
            self._states[key] = DeliveryState.IDLE
            return []

        self._states[key] = DeliveryState.SENDING
        results = []
        for kind, channel in channels:
            text = self._render(settings, kind, event)
            record = await self._send_with_retry(channel, text, event)
            self._record_delivery(record)
            results.append(record)

        self._states[key] = (
            DeliveryState.DELIVERED if all(r.success for r in results) else DeliveryState.FAILED
        )
        return results

    def _render(self, settings: NotificationSettings, kind: ChannelKind, event: NotificationEvent) -> str:
        try:
            return self._templates.render_event(settings, kind, event)
        except TemplateError as e:
            # Stored templates are validated on save; fall back rather than drop the alert
            self._log_error(
                "Stored template is malformed, using the default",
                e,
                {"channel": kind.value, "event": event.kind.value},
            )
            return self._templates.render(self._templates.default_template(event.kind), event.variables)

    # --- Delivery -------------------------------------------------------------

    async def _send_with_retry(
        self,
        channel: NotificationChannel,
        text: str,
        event: NotificationEvent,
        max_attempts: Optional[int] = None,
    ) -> DeliveryRecord:
        """Send to a single channel, retrying with exponential backoff."""
        channel_name = channel.get_name()
        max_attempts = max_attempts or self._retry_config.max_retries + 1
        attempts = 0
        retry_attempts: list[RetryAttempt] = []
        last_error: Optional[str] = None

        while attempts < max_attempts:
            attempts += 1
            try:
                await channel.send(text, event)
                return DeliveryRecord(
                    event_kind=event.kind.value,
                    domain=event.domain,
                    channel=channel_name,
                    success=True,
                    attempts=attempts,
                )
            except (DeliveryFailure, httpx.HTTPError) as e:
                last_error = str(e)
                retry_attempts.append(
                    RetryAttempt(
                        attempt_number=attempts,
                        error=last_error,
                        timestamp=datetime.now(timezone.utc).isoformat(),
                    )
                )

            # Don't delay after the last attempt
            if attempts < max_attempts:
                await asyncio.sleep(self._calculate_delay(attempts - 1))

        self._log_all_retries_failed(channel_name, event, retry_attempts)
        return DeliveryRecord(
            event_kind=event.kind.value,
            domain=event.domain,
            channel=channel_name,
            success=False,
            attempts=attempts,
            error=last_error,
        )

    def _calculate_delay(self, attempt: int) -> float:
        """Exponential backoff for the 0-indexed attempt, capped at max_delay_seconds."""
        delay = self._retry_config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._retry_config.max_delay_seconds)

    def _record_delivery(self, record: DeliveryRecord) -> None:
        self._deliveries.append(record)
        if not record.success:
            self._failure_count += 1

    # --- Send test ------------------------------------------------------------

    async def send_test(self, candidate: NotificationSettings) -> list[DeliveryRecord]:
        """
        Render the unsaved settings against synthetic variables and send once per channel.

        Raises:
            TemplateError: If any template in the candidate is malformed
        """
        self._templates.validate_settings(candidate)
        event = NotificationEvent(
            kind=EventKind.STATUS_ALERT,
            domain=TEST_VARIABLES["Domain"],
            variables=dict(TEST_VARIABLES),
        )

        results = []
        for kind in ChannelKind:
            channel = self._channel_factory(candidate, kind)
            if channel is None:
                continue
            text = self._templates.render_event(candidate, kind, event)
            record = await self._send_with_retry(channel, text, event, max_attempts=1)
            self._last_test[kind.value] = record
            results.append(record)

        self._log_info(
            "Test notification sent",
            {"channels": [r.channel for r in results], "success": [r.success for r in results]},
        )
        return results

    # --- Introspection --------------------------------------------------------

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def deliveries(self) -> list[DeliveryRecord]:
        return list(self._deliveries)

    @property
    def last_test_results(self) -> dict[str, DeliveryRecord]:
        return dict(self._last_test)

    def state_of(self, domain: str, kind: EventKind) -> DeliveryState:
        return self._states.get((domain, kind), DeliveryState.IDLE)

    # --- Logging --------------------------------------------------------------

    def _log_all_retries_failed(
        self,
        channel_name: str,
        event: NotificationEvent,
        retry_attempts: list[RetryAttempt],
    ) -> None:
        if self._logger is None:
            return
        self._logger.log_error(
            "NotificationDispatcher",
            f"All notification retries failed for channel '{channel_name}'",
            additional_data={
                "channel": channel_name,
                "event": event.kind.value,
                "domain": event.domain,
                "total_attempts": len(retry_attempts),
                "attempts": [
                    {
                        "attempt": attempt.attempt_number,
                        "error": attempt.error,
                        "timestamp": attempt.timestamp,
                    }
                    for attempt in retry_attempts
                ],
            },
        )

    def _log_debug(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.debug("NotificationDispatcher", message, data)

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info("NotificationDispatcher", message, data)

    def _log_error(self, message: str, error: BaseException, data: dict) -> None:
        if self._logger:
            self._logger.log_error("NotificationDispatcher", message, error, data)
