"""Per-scan snapshot of everything fetched for one target.

A :class:`ContentStore` is created for one scan and owned by the call that
populates it. Signal fields are filled once; a later attempt may fill a field
that previously failed but never replaces a good value with a worse one.
``policy_pages`` and ``crawled_pages`` only gain keys (a failed entry may be
superseded by a successful one), ``fetch_errors`` only grows, and
``used_browser_fallback`` never goes back to False.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.keys import METHOD_HTTP
from .intel_utils import extract_text_content
from .web_fetch import FetchResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class FetchedPage:
    url: str
    final_url: str
    status_code: Optional[int]
    content_type: Optional[str]
    content: Optional[str]
    text_content: Optional[str]
    headers: Dict[str, str]
    fetch_method: str
    fetch_duration_ms: int
    error: Optional[str]
    fetched_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_result(
        cls,
        result: FetchResult,
        *,
        url: Optional[str] = None,
        keep_content: bool = True,
        error: Optional[str] = None,
    ) -> "FetchedPage":
        """Build a page from a fetch result; ``keep_content=False`` stores the status only."""

        content = result.content if keep_content else None
        return cls(
            url=url or result.url,
            final_url=result.final_url or result.url,
            status_code=result.status_code,
            content_type=result.content_type,
            content=content,
            text_content=extract_text_content(content) if content else None,
            headers=dict(result.headers or {}) if result.fetch_method == METHOD_HTTP else {},
            fetch_method=result.fetch_method,
            fetch_duration_ms=result.fetch_duration_ms,
            error=error if error is not None else result.error_message,
        )

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    def to_dict(self, *, include_content: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "url": self.url,
            "final_url": self.final_url,
            "status_code": self.status_code,
            "content_type": self.content_type,
            "content_length": len(self.content) if self.content else 0,
            "fetch_method": self.fetch_method,
            "fetch_duration_ms": self.fetch_duration_ms,
            "error": self.error,
            "fetched_at": _iso(self.fetched_at),
        }
        if include_content:
            payload["content"] = self.content
            payload["text_content"] = self.text_content
        return payload


@dataclass
class RobotsData:
    content: Optional[str]
    status_code: Optional[int]
    sitemap_urls: List[str] = field(default_factory=list)
    disallowed_paths: List[str] = field(default_factory=list)
    allowed_paths: List[str] = field(default_factory=list)
    crawl_delay_ms: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.content is not None


@dataclass
class SitemapData:
    url: str
    status_code: Optional[int]
    url_count: int
    is_index: bool
    discovered_urls: List[str] = field(default_factory=list)


@dataclass
class DnsData:
    a_records: List[str] = field(default_factory=list)
    aaaa_records: List[str] = field(default_factory=list)
    ns_records: List[str] = field(default_factory=list)
    mx_present: bool = False
    dns_ok: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.dns_ok


@dataclass
class TlsData:
    https_ok: bool = False
    cert_verified: bool = False
    cert_issuer: Optional[str] = None
    cert_valid_from: Optional[str] = None
    cert_valid_to: Optional[str] = None
    days_to_expiry: Optional[int] = None
    expiring_soon: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.https_ok


@dataclass
class RdapData:
    registration_date: Optional[str] = None
    expiration_date: Optional[str] = None
    last_changed_date: Optional[str] = None
    domain_age_years: Optional[float] = None
    domain_age_days: Optional[int] = None
    registrar: Optional[str] = None
    status: List[str] = field(default_factory=list)
    rdap_available: bool = False
    rdap_server: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rdap_available


@dataclass(frozen=True)
class FetchError:
    resource: str
    message: str
    recoverable: bool
    url: Optional[str] = None

    def render(self) -> str:
        where = f" ({self.url})" if self.url else ""
        return f"{self.resource}{where}: {self.message}"


def _signal_dict(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return asdict(value)


@dataclass
class ContentStore:
    scan_id: str
    target_url: str
    target_domain: str
    created_at: datetime = field(default_factory=_utcnow)

    homepage: Optional[FetchedPage] = None
    robots_txt: Optional[RobotsData] = None
    sitemaps: List[SitemapData] = field(default_factory=list)
    policy_pages: Dict[str, FetchedPage] = field(default_factory=dict)
    contact_page: Optional[FetchedPage] = None
    crawled_pages: Dict[str, FetchedPage] = field(default_factory=dict)

    dns: Optional[DnsData] = None
    tls: Optional[TlsData] = None
    rdap: Optional[RdapData] = None

    bot_protection_detected: bool = False
    used_browser_fallback: bool = False
    fetch_errors: List[FetchError] = field(default_factory=list)

    # ------------------------------------------------------------------ writes

    def add_fetch_error(
        self,
        resource: str,
        message: str,
        recoverable: bool,
        url: Optional[str] = None,
    ) -> FetchError:
        entry = FetchError(resource=resource, message=message, recoverable=recoverable, url=url)
        self.fetch_errors.append(entry)
        return entry

    def mark_browser_fallback(self) -> None:
        self.used_browser_fallback = True

    def set_homepage(self, page: FetchedPage) -> bool:
        """Install ``page`` unless it would replace usable content with none."""

        if self.homepage is not None and self.homepage.has_content and not page.has_content:
            return False
        self.homepage = page
        return True

    def set_contact_page(self, page: FetchedPage) -> bool:
        if self.contact_page is not None and self.contact_page.has_content and not page.has_content:
            return False
        self.contact_page = page
        return True

    def set_robots(self, robots: RobotsData) -> bool:
        if self.robots_txt is not None and self.robots_txt.ok and not robots.ok:
            return False
        self.robots_txt = robots
        return True

    def set_dns(self, data: DnsData) -> bool:
        if self.dns is not None and self.dns.ok and not data.ok:
            return False
        self.dns = data
        return True

    def set_tls(self, data: TlsData) -> bool:
        if self.tls is not None and self.tls.ok and not data.ok:
            return False
        self.tls = data
        return True

    def set_rdap(self, data: RdapData) -> bool:
        if self.rdap is not None and self.rdap.ok and not data.ok:
            return False
        self.rdap = data
        return True

    def add_sitemap(self, sitemap: SitemapData) -> bool:
        if any(existing.url == sitemap.url for existing in self.sitemaps):
            return False
        self.sitemaps.append(sitemap)
        return True

    def put_policy_page(self, path: str, page: FetchedPage) -> bool:
        return self._put(self.policy_pages, path, page)

    def put_crawled_page(self, url: str, page: FetchedPage) -> bool:
        return self._put(self.crawled_pages, url, page)

    @staticmethod
    def _put(bucket: Dict[str, FetchedPage], key: str, page: FetchedPage) -> bool:
        existing = bucket.get(key)
        if existing is not None and existing.status_code == 200 and page.status_code != 200:
            return False
        bucket[key] = page
        return True

    # ------------------------------------------------------------------- reads

    def homepage_html(self) -> Optional[str]:
        return self.homepage.content if self.homepage else None

    def homepage_text(self) -> Optional[str]:
        return self.homepage.text_content if self.homepage else None

    def homepage_headers(self) -> Dict[str, str]:
        return dict(self.homepage.headers) if self.homepage else {}

    def has_policy_page(self, path: str) -> bool:
        page = self.policy_pages.get(path)
        return page is not None and page.status_code == 200

    def policy_page_content(self, path: str) -> Optional[str]:
        page = self.policy_pages.get(path)
        return page.content if page else None

    def successful_policy_paths(self) -> List[str]:
        return [path for path, page in self.policy_pages.items() if page.status_code == 200]

    def get_crawled_page_content(self, url: str) -> Optional[str]:
        page = self.crawled_pages.get(url)
        return page.content if page else None

    def has_dns_ok(self) -> bool:
        return bool(self.dns and self.dns.dns_ok)

    def has_https_ok(self) -> bool:
        return bool(self.tls and self.tls.https_ok)

    def get_total_sitemap_url_count(self) -> int:
        return sum(s.url_count for s in self.sitemaps)

    def detect_bot_protection(self) -> bool:
        """403 on the homepage while DNS resolves and TLS handshakes succeed."""

        return (
            self.homepage is not None
            and self.homepage.status_code == 403
            and self.has_dns_ok()
            and self.has_https_ok()
        )

    def fetch_error_messages(self) -> List[str]:
        return [e.render() for e in self.fetch_errors]

    def to_dict(self, *, include_content: bool = False) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "target_url": self.target_url,
            "target_domain": self.target_domain,
            "created_at": _iso(self.created_at),
            "homepage": self.homepage.to_dict(include_content=include_content) if self.homepage else None,
            "robots_txt": _signal_dict(self.robots_txt),
            "sitemaps": [_signal_dict(s) for s in self.sitemaps],
            "policy_pages": {
                path: page.to_dict(include_content=include_content) for path, page in self.policy_pages.items()
            },
            "contact_page": self.contact_page.to_dict(include_content=include_content) if self.contact_page else None,
            "crawled_pages": {
                url: page.to_dict(include_content=include_content) for url, page in self.crawled_pages.items()
            },
            "dns": _signal_dict(self.dns),
            "tls": _signal_dict(self.tls),
            "rdap": _signal_dict(self.rdap),
            "bot_protection_detected": self.bot_protection_detected,
            "used_browser_fallback": self.used_browser_fallback,
            "fetch_errors": [_signal_dict(e) for e in self.fetch_errors],
        }

    def to_json(self, *, include_content: bool = False) -> str:
        return json.dumps(self.to_dict(include_content=include_content), ensure_ascii=False, indent=2)


def create_content_store(scan_id: str, target_url: str, target_domain: str) -> ContentStore:
    return ContentStore(scan_id=scan_id, target_url=target_url, target_domain=target_domain)


__all__ = [
    "ContentStore",
    "DnsData",
    "FetchError",
    "FetchedPage",
    "RdapData",
    "RobotsData",
    "SitemapData",
    "TlsData",
    "create_content_store",
]
