"""
Network probe for a single domain.

A probe resolves the name, performs a TLS handshake on the configured port
and reads the presented certificate, issues one HTTPS request to measure
liveness and latency, and looks up the registration expiry over RDAP.
Each facet fails independently and is reported in the Measurement; the
probe itself never raises for network conditions.
"""

import asyncio
import socket
import ssl
import time
from typing import Optional, Protocol, runtime_checkable

import httpx
from cryptography import x509
from cryptography.x509.oid import NameOID

from .models import DNSFacet, HTTPFacet, Measurement, ProbeResult, RegistrationFacet, TLSFacet
from .rdap_client import RDAPClient


@runtime_checkable
class Prober(Protocol):
    """Anything that can produce a probe result for a domain."""

    async def probe(self, domain: str) -> ProbeResult:
        ...


def _issuer_name(cert: x509.Certificate) -> str:
    for oid in (NameOID.ORGANIZATION_NAME, NameOID.COMMON_NAME):
        attrs = cert.issuer.get_attributes_for_oid(oid)
        if attrs:
            return str(attrs[0].value)
    return cert.issuer.rfc4514_string()


def _subject_alt_names(cert: x509.Certificate) -> list[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return ext.value.get_values_for_type(x509.DNSName)


def _protocol_label(version: Optional[str]) -> str:
    # "TLSv1.3" -> "TLS 1.3"
    if not version:
        return ""
    return version.replace("TLSv", "TLS ")


def parse_certificate(der: bytes, protocol_version: Optional[str] = None) -> TLSFacet:
    """Build a TLSFacet from a DER-encoded leaf certificate."""
    cert = x509.load_der_x509_certificate(der)
    return TLSFacet(
        handshake_ok=True,
        issuer=_issuer_name(cert),
        subject_alt_names=_subject_alt_names(cert),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        protocol_version=_protocol_label(protocol_version),
    )


class NetworkProber:
    """
    Probes real endpoints.

    Certificates are read without chain verification so that expired or
    self-signed certificates still report their validity window.
    """

    def __init__(
        self,
        port: int = 443,
        timeout: float = 10.0,
        rdap_client: Optional[RDAPClient] = None,
        check_registration: bool = True,
    ) -> None:
        self._port = port
        self._timeout = timeout
        self._rdap = rdap_client or RDAPClient(timeout=timeout)
        self._check_registration = check_registration

    async def aclose(self) -> None:
        await self._rdap.aclose()

    async def probe(self, domain: str) -> Measurement:
        dns = await self.resolve(domain)
        if not dns.resolved:
            return Measurement(
                domain=domain,
                dns=dns,
                tls=TLSFacet(handshake_ok=False, error="skipped: name did not resolve"),
                http=HTTPFacet(error="skipped: name did not resolve"),
                registration=await self.registration(domain),
            )

        tls, http, registration = await asyncio.gather(
            self.handshake(domain),
            self.http_check(domain),
            self.registration(domain),
        )
        return Measurement(domain=domain, dns=dns, tls=tls, http=http, registration=registration)

    async def resolve(self, domain: str) -> DNSFacet:
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(domain, self._port, type=socket.SOCK_STREAM),
                timeout=self._timeout,
            )
        except (socket.gaierror, OSError) as e:
            return DNSFacet(resolved=False, error=str(e))
        except asyncio.TimeoutError:
            return DNSFacet(resolved=False, error="timed out")

        addresses: list[str] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])
        if not addresses:
            return DNSFacet(resolved=False, error="no addresses")
        return DNSFacet(resolved=True, addresses=addresses)

    async def handshake(self, domain: str) -> TLSFacet:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

        writer = None
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host=domain, port=self._port, ssl=ctx, server_hostname=domain),
                timeout=self._timeout,
            )
            sslobj = writer.get_extra_info("ssl_object")
            der = sslobj.getpeercert(binary_form=True) if sslobj else None
            if not der:
                return TLSFacet(handshake_ok=True, error="no certificate presented")
            return parse_certificate(der, sslobj.version())
        except asyncio.TimeoutError:
            return TLSFacet(handshake_ok=False, error="handshake timed out")
        except (OSError, ssl.SSLError) as e:
            return TLSFacet(handshake_ok=False, error=f"{type(e).__name__}: {e}")
        except ValueError as e:
            # Unparseable certificate
            return TLSFacet(handshake_ok=True, error=f"invalid certificate: {e}")
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except (OSError, ssl.SSLError):
                    pass

    async def http_check(self, domain: str) -> HTTPFacet:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(verify=False, timeout=self._timeout) as client:
                response = await client.get(f"https://{domain}:{self._port}/")
        except httpx.HTTPError as e:
            return HTTPFacet(error=f"{type(e).__name__}: {e}")
        latency_ms = int((time.perf_counter() - start) * 1000)
        return HTTPFacet(status_code=response.status_code, latency_ms=latency_ms)

    async def registration(self, domain: str) -> RegistrationFacet:
        if not self._check_registration:
            return RegistrationFacet()
        return await self._rdap.lookup_expiry(domain)
