"""
External collaborators: the authoritative domain list and certificate renewal.

A provider returns the full list of domains that should be monitored. Any
failure to obtain a complete listing raises ProviderError so that the sync
never mistakes a transient outage for the disappearance of every domain.
"""

import asyncio
import shlex
from typing import Optional, Protocol, runtime_checkable

import httpx

from .exceptions import ProviderError
from .models import ProviderDomain, RenewOutcome


CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
MONITORED_RECORD_TYPES = frozenset({"A", "AAAA", "CNAME"})


@runtime_checkable
class DomainProvider(Protocol):
    """Source of the authoritative domain list."""

    async def list_domains(self) -> list[ProviderDomain]:
        ...


class StaticProvider:
    """Domains configured directly (DOMAINS env var or config file)."""

    def __init__(self, domains: list[str]) -> None:
        self._domains = list(domains)

    async def list_domains(self) -> list[ProviderDomain]:
        return [ProviderDomain(domain_name=d) for d in self._domains]


class CloudflareProvider:
    """
    Lists the A/AAAA/CNAME records of every zone visible to an API token.

    Args:
        api_token: Cloudflare API token with Zone:Read and DNS:Read
        zones: Optional allow-list of zone names; empty means all zones
        timeout: Per-request timeout in seconds
    """

    PAGE_SIZE = 100

    def __init__(
        self,
        api_token: str,
        zones: Optional[list[str]] = None,
        timeout: float = 30.0,
        base_url: str = CLOUDFLARE_API,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_token:
            raise ProviderError(code="missing_token", message="Cloudflare API token is empty")
        self._api_token = api_token
        self._zones = {z.lower() for z in (zones or [])}
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def list_domains(self) -> list[ProviderDomain]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._api_token}"},
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            domains: list[ProviderDomain] = []
            for zone in await self._paginate(client, "/zones"):
                zone_name = str(zone.get("name", "")).lower()
                if self._zones and zone_name not in self._zones:
                    continue
                zone_id = str(zone.get("id", ""))
                for record in await self._paginate(client, f"/zones/{zone_id}/dns_records"):
                    if record.get("type") not in MONITORED_RECORD_TYPES:
                        continue
                    domains.append(
                        ProviderDomain(
                            domain_name=str(record.get("name", "")),
                            zone_id=zone_id,
                            zone_name=zone_name,
                            record_id=str(record.get("id", "")),
                            proxied=bool(record.get("proxied", False)),
                        )
                    )
            return domains

    async def _paginate(self, client: httpx.AsyncClient, path: str) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            try:
                response = await client.get(path, params={"page": page, "per_page": self.PAGE_SIZE})
            except httpx.HTTPError as e:
                raise ProviderError(
                    code="provider_unreachable",
                    message=f"Cloudflare request failed: {type(e).__name__}: {e}",
                    details={"path": path},
                ) from e

            if response.status_code != 200:
                raise ProviderError(
                    code="provider_http_error",
                    message=f"Cloudflare returned HTTP {response.status_code}",
                    details={"path": path, "status_code": response.status_code},
                )
            try:
                body = response.json()
            except ValueError as e:
                raise ProviderError(
                    code="provider_bad_response",
                    message="Cloudflare response is not JSON",
                    details={"path": path},
                ) from e
            if not body.get("success", False):
                raise ProviderError(
                    code="provider_api_error",
                    message="Cloudflare reported an unsuccessful listing",
                    details={"path": path, "errors": body.get("errors", [])},
                )

            items.extend(body.get("result") or [])
            total_pages = int((body.get("result_info") or {}).get("total_pages") or 1)
            if page >= total_pages:
                return items
            page += 1


@runtime_checkable
class Renewer(Protocol):
    """Renewal workflow for one domain's certificate."""

    async def renew(self, domain: str, email: str) -> RenewOutcome:
        ...


class CommandRenewer:
    """
    Runs an external ACME client (certbot, lego, acme.sh).

    ``{domain}`` and ``{email}`` in the command template are substituted per
    argument, so values are never interpreted by a shell.
    """

    DETAIL_LIMIT = 500

    def __init__(self, command: str, timeout: float = 600.0) -> None:
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("Renewal command is empty")
        self._timeout = timeout

    def build_argv(self, domain: str, email: str) -> list[str]:
        return [arg.replace("{domain}", domain).replace("{email}", email) for arg in self._argv]

    async def renew(self, domain: str, email: str) -> RenewOutcome:
        argv = self.build_argv(domain, email)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return RenewOutcome(success=False, detail=f"Cannot start {argv[0]}: {e}")

        try:
            out_b, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return RenewOutcome(success=False, detail=f"Renewal timed out after {self._timeout:.0f}s")

        output = (out_b or b"").decode("utf-8", errors="replace").strip()
        detail = output[-self.DETAIL_LIMIT:]
        if proc.returncode == 0:
            return RenewOutcome(success=True, detail=detail or "renewed")
        return RenewOutcome(success=False, detail=f"exit code {proc.returncode}: {detail}")
