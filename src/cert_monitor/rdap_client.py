"""
RDAP client for domain-registration expiry.

Looks up the registrable domain of a monitored hostname over RDAP and
extracts the "expiration" event. Only HTTPS endpoints are accepted and only
the defined RDAP fields (ldhName, events) are parsed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

import httpx

from .exceptions import ValidationError
from .models import RegistrationFacet, parse_iso


DEFAULT_RDAP_ENDPOINT = "https://rdap.org"

# Public suffixes with two labels that are common enough to special-case
TWO_LABEL_SUFFIXES = frozenset({
    "co.uk", "org.uk", "ac.uk", "gov.uk",
    "com.au", "net.au", "org.au",
    "com.tw", "org.tw", "net.tw", "idv.tw",
    "co.jp", "ne.jp", "or.jp",
    "com.cn", "net.cn", "org.cn",
    "com.hk", "com.sg", "co.nz", "com.br", "co.kr",
})


def registrable_domain(hostname: str, zone_hint: str = "") -> str:
    """
    Best-effort registrable domain of a hostname.

    A provider zone name is authoritative when given; otherwise the last two
    labels are used, or three for the known two-label suffixes.
    """
    if zone_hint:
        return zone_hint.lower()
    labels = hostname.lower().rstrip(".").split(".")
    if len(labels) >= 3 and ".".join(labels[-2:]) in TWO_LABEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


@dataclass
class RDAPEvent:
    """A single RDAP event (e.g., registration, expiration)."""

    event_action: str
    event_date: str


class RDAPClient:
    """Async RDAP client with TLS enforcement."""

    EXPIRATION_ACTIONS = ("expiration", "registration expiration")

    def __init__(
        self,
        endpoint: str = DEFAULT_RDAP_ENDPOINT,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if urlparse(endpoint).scheme.lower() != "https":
            raise ValidationError(
                code="tls_required",
                message=f"RDAP endpoint must use HTTPS: {endpoint}",
                details={"endpoint": endpoint},
            )
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RDAPClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def lookup_expiry(self, hostname: str, zone_hint: str = "") -> RegistrationFacet:
        """
        Query RDAP for the registration expiry of the hostname's registrable domain.

        Never raises for network or protocol problems; they are reported in
        ``RegistrationFacet.error``.
        """
        domain = registrable_domain(hostname, zone_hint)
        url = f"{self._endpoint}/domain/{domain}"

        try:
            response = await self._ensure_client().get(
                url,
                headers={"Accept": "application/rdap+json, application/json"},
            )
        except httpx.HTTPError as e:
            return RegistrationFacet(error=f"RDAP request failed: {type(e).__name__}: {e}")

        if response.status_code != 200:
            return RegistrationFacet(error=f"RDAP HTTP {response.status_code} for {domain}")

        try:
            payload = response.json()
        except ValueError:
            return RegistrationFacet(error="RDAP response is not JSON")

        expiry = self.parse_expiry(payload)
        if expiry is None:
            return RegistrationFacet(error=f"No expiration event for {domain}")

        return RegistrationFacet(expiry=expiry)

    @classmethod
    def parse_events(cls, payload: dict) -> list[RDAPEvent]:
        events = []
        raw_events = payload.get("events", []) if isinstance(payload, dict) else []
        if isinstance(raw_events, list):
            for event in raw_events:
                if isinstance(event, dict):
                    action = event.get("eventAction", "")
                    date = event.get("eventDate", "")
                    if action and date:
                        events.append(RDAPEvent(event_action=action, event_date=date))
        return events

    @classmethod
    def parse_expiry(cls, payload: dict) -> Optional[datetime]:
        for event in cls.parse_events(payload):
            if event.event_action.lower() in cls.EXPIRATION_ACTIONS:
                try:
                    return parse_iso(event.event_date)
                except ValueError:
                    return None
        return None
