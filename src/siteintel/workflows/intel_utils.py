"""Shared URL, domain and markup helpers used by the acquisition workflow."""

from __future__ import annotations

import re
import warnings
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning  # type: ignore

from .intel_config import CONTACT_PAGE_RE, SKIPPED_LINK_PREFIXES, TLS_ERROR_TOKENS

warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+\-.]*://")
_WHITESPACE_RE = re.compile(r"\s+")


class InvalidTargetError(ValueError):
    """Raised when a scan target cannot be parsed into an http(s) URL."""


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def strip_www(host: str) -> str:
    h = idna_normalize(host)
    return h[4:] if h.startswith("www.") else h


def extract_domain_from_input(value: str) -> str:
    """Reduce a URL or bare domain to ``example.com`` form (no scheme, www, path or port)."""

    cleaned = (value or "").strip().lower()
    cleaned = _SCHEME_RE.sub("", cleaned)
    cleaned = re.split(r"[/?#]", cleaned, maxsplit=1)[0]
    cleaned = cleaned.rsplit("@", 1)[-1].split(":", 1)[0]
    return strip_www(cleaned)


def normalize_target_url(value: str) -> str:
    """Validate a scan target and return it as an absolute http(s) URL.

    Bare domains get an ``https://`` scheme. Anything that cannot be turned into
    a URL with a usable host raises :class:`InvalidTargetError`; this is the only
    check that runs before the first network call of a scan.
    """

    raw = (value or "").strip()
    if not raw:
        raise InvalidTargetError("target URL is empty")
    if any(ch.isspace() for ch in raw):
        raise InvalidTargetError(f"target URL contains whitespace: {raw!r}")
    if not _SCHEME_RE.match(raw):
        raw = f"https://{raw}"
    try:
        parsed = urlparse(raw)
        port = parsed.port
    except ValueError as exc:
        raise InvalidTargetError(f"unparseable target URL {value!r}: {exc}") from exc
    if parsed.scheme.lower() not in {"http", "https"}:
        raise InvalidTargetError(f"unsupported scheme {parsed.scheme!r} in {value!r}")
    host = idna_normalize(parsed.hostname or "")
    if not host or host.startswith(".") or ".." in host:
        raise InvalidTargetError(f"target URL has no usable host: {value!r}")
    netloc = host if port is None else f"{host}:{port}"
    return urlunparse((parsed.scheme.lower(), netloc, parsed.path or "/", "", parsed.query, ""))


def target_host(url: str) -> str:
    return idna_normalize(urlparse(url).hostname or "")


def host_in_scope(host: str, base_host: str, allow_subdomains: bool = False) -> bool:
    """Return True when ``host`` is the scan domain (www-insensitive) or an allowed subdomain."""

    candidate = strip_www(host)
    base = strip_www(base_host)
    if not candidate or not base:
        return False
    if candidate == base:
        return True
    return allow_subdomains and candidate.endswith(f".{base}")


def normalize_link(url: str) -> str:
    """Drop the fragment and any trailing slash except on the root path."""

    parsed = urlparse(url)
    normalized = urlunparse(parsed._replace(fragment=""))
    if normalized.endswith("/") and parsed.path not in ("", "/"):
        normalized = normalized.rstrip("/")
    return normalized


def extract_links(html: str, base_url: str, *, allow_subdomains: bool = False) -> List[str]:
    """Return same-domain anchor targets from ``html`` in document order, deduplicated."""

    if not html:
        return []
    soup = BeautifulSoup(html, "lxml")
    base = target_host(base_url)
    seen: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href or href.lower().startswith(SKIPPED_LINK_PREFIXES):
            continue
        try:
            absolute = urljoin(base_url, href)
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in {"http", "https"}:
            continue
        if not host_in_scope(parsed.hostname or "", base, allow_subdomains):
            continue
        seen.setdefault(normalize_link(absolute), None)
    return list(seen)


def extract_text_content(html: Optional[str]) -> Optional[str]:
    """Strip scripts, styles and tags; decode entities; collapse whitespace."""

    if html is None:
        return None
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()


def looks_like_contact_url(url: str) -> bool:
    return bool(CONTACT_PAGE_RE.search(urlparse(url).path or ""))


def is_tls_error(message: Optional[str]) -> bool:
    """Return True for transport errors caused by SSL/TLS or certificate problems."""

    if not message:
        return False
    return any(token in message for token in TLS_ERROR_TOKENS)


def dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM.") == "example.com"
    assert extract_domain_from_input("https://www.Example.com/path") == "example.com"
    assert normalize_link("https://example.com/a/#top") == "https://example.com/a"
    assert normalize_link("https://example.com/") == "https://example.com/"
    assert host_in_scope("www.example.com", "example.com")
    assert not host_in_scope("shop.example.com", "example.com")


sanity_check()

__all__ = [
    "InvalidTargetError",
    "idna_normalize",
    "strip_www",
    "extract_domain_from_input",
    "normalize_target_url",
    "target_host",
    "host_in_scope",
    "normalize_link",
    "extract_links",
    "extract_text_content",
    "looks_like_contact_url",
    "is_tls_error",
    "dedupe",
    "sanity_check",
]
