"""DNS and TLS infrastructure probes.

Both probes are blocking library calls run in the default executor so they
can be gathered with the async fetches. Neither raises: failures come back as
a not-ok :class:`DnsData` / :class:`TlsData` carrying an ``error`` string.
"""

from __future__ import annotations

import asyncio
import logging
import math
import socket
import ssl
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import dns.exception
import dns.resolver

from .content_store import DnsData, TlsData
from .intel_config import CERT_EXPIRING_SOON_DAYS, DNS_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_RECORD_TYPES = ("A", "AAAA", "NS", "MX")


def _resolve_records(domain: str, timeout: float) -> Tuple[Dict[str, List[str]], Optional[str]]:
    resolver = dns.resolver.Resolver()
    resolver.timeout = timeout
    resolver.lifetime = timeout

    records: Dict[str, List[str]] = {}
    first_error: Optional[str] = None
    for qtype in _RECORD_TYPES:
        try:
            answers = resolver.resolve(domain, qtype)
        except dns.resolver.NXDOMAIN:
            return records, f"NXDOMAIN: {domain}"
        except (dns.resolver.NoAnswer, dns.resolver.NoNameservers):
            records[qtype] = []
            continue
        except dns.exception.Timeout:
            records[qtype] = []
            first_error = first_error or f"DNS timeout resolving {qtype} for {domain}"
            continue
        except dns.exception.DNSException as exc:
            records[qtype] = []
            first_error = first_error or (str(exc) or exc.__class__.__name__)
            continue
        values = []
        for rr in answers:
            text = str(rr).strip().rstrip(".") if qtype in ("NS", "MX") else str(rr).strip()
            if text and text not in values:
                values.append(text)
        records[qtype] = values
    return records, first_error


async def probe_dns(domain: str, timeout: float = DNS_TIMEOUT_SECONDS) -> DnsData:
    """Resolve A/AAAA/NS/MX for ``domain``; ``dns_ok`` when any address record exists."""

    loop = asyncio.get_running_loop()
    try:
        records, error = await loop.run_in_executor(None, _resolve_records, domain, timeout)
    except Exception as exc:
        return DnsData(error=str(exc) or exc.__class__.__name__)

    data = DnsData(
        a_records=records.get("A", []),
        aaaa_records=records.get("AAAA", []),
        ns_records=records.get("NS", []),
        mx_present=bool(records.get("MX")),
    )
    data.dns_ok = bool(data.a_records or data.aaaa_records)
    if not data.dns_ok:
        data.error = error or f"No A/AAAA records for {domain}"
    return data


def _issuer_name(cert: Dict[str, Any]) -> Optional[str]:
    fields: Dict[str, str] = {}
    for rdn in cert.get("issuer", ()):
        for key, value in rdn:
            fields.setdefault(key, value)
    return fields.get("organizationName") or fields.get("commonName")


def _cert_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(ssl.cert_time_to_seconds(value), tz=timezone.utc)
    except ValueError:
        return None


def tls_data_from_cert(cert: Dict[str, Any], *, now: Optional[float] = None) -> TlsData:
    """Map a ``getpeercert()`` dict onto :class:`TlsData` for a verified handshake."""

    data = TlsData(https_ok=True, cert_verified=True, cert_issuer=_issuer_name(cert))
    valid_from = _cert_time(cert.get("notBefore"))
    valid_to = _cert_time(cert.get("notAfter"))
    if valid_from is not None:
        data.cert_valid_from = valid_from.isoformat()
    if valid_to is not None:
        data.cert_valid_to = valid_to.isoformat()
        current = time.time() if now is None else now
        days = math.floor((valid_to.timestamp() - current) / 86400)
        data.days_to_expiry = days
        data.expiring_soon = days < CERT_EXPIRING_SOON_DAYS
    return data


def _handshake(domain: str, port: int, timeout: float, verify: bool) -> Dict[str, Any]:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    with socket.create_connection((domain, port), timeout=timeout) as sock:
        with ctx.wrap_socket(sock, server_hostname=domain) as tls_sock:
            return tls_sock.getpeercert() or {}


def _inspect_tls(domain: str, port: int, timeout: float) -> TlsData:
    try:
        cert = _handshake(domain, port, timeout, verify=True)
        return tls_data_from_cert(cert)
    except ssl.SSLCertVerificationError as exc:
        logger.debug("certificate for %s failed verification: %s", domain, exc)
    # The handshake itself may still succeed without verification.
    _handshake(domain, port, timeout, verify=False)
    return TlsData(https_ok=True, cert_verified=False, error="Certificate verification failed")


async def probe_tls(domain: str, port: int = 443, timeout: float = DNS_TIMEOUT_SECONDS) -> TlsData:
    """Inspect the certificate served on ``domain:port``."""

    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, _inspect_tls, domain, port, timeout)
    except (OSError, ssl.SSLError, ValueError) as exc:
        return TlsData(error=str(exc) or exc.__class__.__name__)


__all__ = ["probe_dns", "probe_tls", "tls_data_from_cert"]
