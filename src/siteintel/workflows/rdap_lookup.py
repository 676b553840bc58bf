"""Domain registration lookup: RDAP first, the ``whois`` command as fallback."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
from dateutil import parser as dtparser

from .content_store import RdapData
from .intel_config import (
    RDAP_BOOTSTRAP_URL,
    RDAP_SERVERS,
    RDAP_TIMEOUT_SECONDS,
    RDAP_USER_AGENT,
    WHOIS_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

SUBPROCESS_PIPE = asyncio.subprocess.PIPE

# Ordered: more specific formats first.
CREATION_DATE_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"Creation Date:\s*(\d{4}-\d{2}-\d{2}T[\d:]+Z?)",
        r"Created Date:\s*(\d{4}-\d{2}-\d{2}T[\d:]+Z?)",
        r"Registration Date:\s*(\d{4}-\d{2}-\d{2}T[\d:]+Z?)",
        r"Creation Date:\s*(\d{4}-\d{2}-\d{2})",
        r"Created Date:\s*(\d{4}-\d{2}-\d{2})",
        r"Created:\s*(\d{4}-\d{2}-\d{2})",
        r"Registration Date:\s*(\d{4}-\d{2}-\d{2})",
        r"Registered:\s*(\d{4}-\d{2}-\d{2})",
        r"Registered on:\s*(\d{4}-\d{2}-\d{2})",
        r"Registered on:\s*(\d{1,2}-[A-Za-z]{3}-\d{4})",
        r"Created:\s*(\d{1,2}-[A-Za-z]{3}-\d{4})",
        r"Creation Date:\s*(\d{4}/\d{2}/\d{2})",
        r"Created:\s*(\d{4}/\d{2}/\d{2})",
        r"\[Created on\]\s*(\d{4}/\d{2}/\d{2})",
        r"created:\s*(\d{2}\.\d{2}\.\d{4})",
        r"Creation Date:\s*(\d{2}\.\d{2}\.\d{4})",
        r"Creation Date:\s*([A-Za-z]+ \d{1,2},? \d{4})",
        r"Created:\s*(\d{1,2} [A-Za-z]+ \d{4})",
        r"Registered on:\s*(\d{1,2} [A-Za-z]+ \d{4})",
        r"domain_dateregistered:\s*(\d{4}-\d{2}-\d{2})",
        r"Registration Time:\s*(\d{4}-\d{2}-\d{2})",
    )
)

EXPIRY_DATE_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"Registry Expiry Date:\s*(\d{4}-\d{2}-\d{2}T[\d:]+Z?)",
        r"Expiry Date:\s*(\d{4}-\d{2}-\d{2}T[\d:]+Z?)",
        r"Expiration Date:\s*(\d{4}-\d{2}-\d{2}T[\d:]+Z?)",
        r"Registry Expiry Date:\s*(\d{4}-\d{2}-\d{2})",
        r"Expiry Date:\s*(\d{4}-\d{2}-\d{2})",
        r"Expiration Date:\s*(\d{4}-\d{2}-\d{2})",
        r"Expires on:\s*(\d{1,2}-[A-Za-z]{3}-\d{4})",
        r"Expiry:\s*(\d{1,2}-[A-Za-z]{3}-\d{4})",
        r"\[Expires on\]\s*(\d{4}/\d{2}/\d{2})",
        r"paid-till:\s*(\d{4}-\d{2}-\d{2})",
        r"Renewal Date:\s*(\d{4}-\d{2}-\d{2})",
    )
)

REGISTRAR_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"Registrar:\s*(.+)",
        r"Sponsoring Registrar:\s*(.+)",
        r"Registrar Name:\s*(.+)",
    )
)

_DAY_FIRST_RE = re.compile(r"^\d{1,2}\.\d{1,2}\.\d{4}$")


def parse_date(value: Optional[str]) -> Optional[str]:
    """Normalize a WHOIS date string to ISO 8601 (UTC); None when unrecognized."""

    if not value:
        return None
    text = value.strip()
    try:
        parsed = dtparser.parse(text, dayfirst=bool(_DAY_FIRST_RE.match(text)))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_datetime(value: str) -> Optional[datetime]:
    try:
        parsed = dtparser.isoparse(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_age(registration_date: str, now: Optional[datetime] = None) -> Tuple[Optional[float], Optional[int]]:
    """Return ``(years, days)`` since registration; years to one decimal."""

    registered = _to_datetime(registration_date)
    if registered is None:
        return None, None
    current = now or datetime.now(timezone.utc)
    days = (current - registered).days
    return round(days / 365.25, 1), days


def _first_match(text: str, patterns: Sequence[re.Pattern]) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1).strip()
    return None


def parse_whois_output(text: str) -> RdapData:
    registration = parse_date(_first_match(text, CREATION_DATE_PATTERNS))
    expiration = parse_date(_first_match(text, EXPIRY_DATE_PATTERNS))
    registrar = _first_match(text, REGISTRAR_PATTERNS)
    if not registration and not expiration:
        return RdapData(registrar=registrar, error="Could not parse dates from WHOIS output")
    if not registration:
        return RdapData(
            expiration_date=expiration,
            registrar=registrar,
            error="Could not get registration date from WHOIS",
        )
    years, days = calculate_age(registration)
    return RdapData(
        registration_date=registration,
        expiration_date=expiration,
        domain_age_years=years,
        domain_age_days=days,
        registrar=registrar,
        rdap_available=True,
        source="whois",
    )


async def lookup_whois(domain: str, timeout: float = WHOIS_TIMEOUT_SECONDS) -> RdapData:
    """Run the ``whois`` executable and parse its free-text output."""

    try:
        proc = await asyncio.create_subprocess_exec(
            "whois",
            domain,
            stdout=SUBPROCESS_PIPE,
            stderr=SUBPROCESS_PIPE,
        )
    except (FileNotFoundError, PermissionError) as exc:
        return RdapData(error=f"WHOIS lookup failed: {str(exc)[:100]}")
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return RdapData(error="WHOIS lookup timed out")
    text = stdout.decode("utf-8", "ignore")
    if not text.strip() and stderr:
        return RdapData(error=f"WHOIS error: {stderr.decode('utf-8', 'ignore')[:100]}")
    return parse_whois_output(text)


def rdap_server_for(domain: str) -> Tuple[bool, Optional[str]]:
    """Return ``(has_rdap, base_url)``; ``has_rdap`` is False for WHOIS-only TLDs."""

    tld = domain.lower().rsplit(".", 1)[-1]
    if tld in RDAP_SERVERS and RDAP_SERVERS[tld] is None:
        return False, None
    return True, RDAP_SERVERS.get(tld) or RDAP_BOOTSTRAP_URL


def _registrar_from_entities(entities: List[Dict[str, Any]]) -> Optional[str]:
    for entity in entities or []:
        if "registrar" not in (entity.get("roles") or []):
            continue
        vcard = entity.get("vcardArray")
        if isinstance(vcard, list) and len(vcard) > 1:
            for entry in vcard[1]:
                if isinstance(entry, list) and len(entry) > 3 and entry[0] == "fn":
                    return entry[3]
        if entity.get("handle"):
            return entity["handle"]
    return None


def parse_rdap_response(payload: Dict[str, Any], server: str) -> RdapData:
    events = payload.get("events") or []

    def event_date(*actions: str) -> Optional[str]:
        for event in events:
            if event.get("eventAction") in actions:
                return event.get("eventDate")
        return None

    registration = event_date("registration")
    years, days = calculate_age(registration) if registration else (None, None)
    return RdapData(
        registration_date=registration,
        expiration_date=event_date("expiration"),
        last_changed_date=event_date("last changed", "last update of RDAP database"),
        domain_age_years=years,
        domain_age_days=days,
        registrar=_registrar_from_entities(payload.get("entities") or []),
        status=list(payload.get("status") or []),
        rdap_available=True,
        rdap_server=server,
        source="rdap",
    )


async def lookup_rdap(
    domain: str,
    session: aiohttp.ClientSession,
    timeout: float = RDAP_TIMEOUT_SECONDS,
) -> RdapData:
    """Look up registration data for ``domain``; WHOIS answers when RDAP cannot."""

    has_rdap, server = rdap_server_for(domain)
    if not has_rdap or server is None:
        return await lookup_whois(domain)

    url = f"{server}domain/{domain.lower()}"
    headers = {"Accept": "application/rdap+json", "User-Agent": RDAP_USER_AGENT}
    try:
        async with session.get(url, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status != 200:
                logger.debug("RDAP %s returned %s, falling back to WHOIS", url, resp.status)
                return await lookup_whois(domain)
            payload = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.debug("RDAP lookup for %s failed (%s), falling back to WHOIS", domain, exc)
        return await lookup_whois(domain)
    if not isinstance(payload, dict):
        return await lookup_whois(domain)
    return parse_rdap_response(payload, server)


__all__ = [
    "calculate_age",
    "lookup_rdap",
    "lookup_whois",
    "parse_date",
    "parse_rdap_response",
    "parse_whois_output",
    "rdap_server_for",
]
