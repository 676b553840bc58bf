"""Populate one :class:`ContentStore` for one scan.

Phases run in a fixed order where data dependencies require it and
concurrently inside a phase:

1. DNS, TLS and RDAP probes (concurrent with the homepage fetch)
2. homepage over plain HTTP, routed to the browser on a challenge page or TLS error
3. bot-protection evaluation and browser fallback
4. robots.txt
5. sitemaps (seed batch, then one batch of index children)
6. fixed policy-page set
7. homepage artifact snippets to the sink

No exception from an individual network operation escapes :meth:`FetchLayer.run`;
each one becomes a ``FetchError`` on the store. The only fatal condition is an
invalid target, raised as :class:`InvalidTargetError` before any network call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar
from urllib.parse import urljoin

from ..core.keys import (
    ARTIFACT_HOMEPAGE_HTML,
    ARTIFACT_HOMEPAGE_TEXT,
    METHOD_BROWSER,
    RES_DNS,
    RES_HOMEPAGE,
    RES_POLICY,
    RES_RDAP,
    RES_ROBOTS,
    RES_SITEMAP,
    RES_TLS,
    SOURCE_HOMEPAGE,
    SOURCE_HOMEPAGE_BROWSER,
    SOURCE_POLICY,
    SOURCE_ROBOTS,
    SOURCE_SITEMAP,
)
from .browser_driver import BROWSER_UNAVAILABLE, HOMEPAGE_BROWSER_CONFIG, BrowserDriver
from .content_store import (
    ContentStore,
    DnsData,
    FetchedPage,
    RdapData,
    RobotsData,
    SitemapData,
    TlsData,
    create_content_store,
)
from .domain_policy import DEFAULT_POLICY, DomainPolicy
from .fetch_log import ArtifactRecord, FetchSink, MemorySink, log_fetch
from .infra_probes import probe_dns, probe_tls
from .intel_config import (
    ARTIFACT_HTML_LIMIT,
    ARTIFACT_TEXT_LIMIT,
    BOT_CHALLENGE_MARKERS,
    BOT_CHALLENGE_SHORT_BODY_LIMIT,
    BOT_CHALLENGE_SHORT_BODY_MARKERS,
    DEFAULT_SITEMAP_PATHS,
    DNS_TIMEOUT_SECONDS,
    MAX_SITEMAP_FETCHES,
    POLICY_PATHS,
    RDAP_TIMEOUT_SECONDS,
    WHOIS_TIMEOUT_SECONDS,
)
from .intel_utils import dedupe, extract_domain_from_input, is_tls_error, normalize_target_url
from .rdap_lookup import lookup_rdap
from .robots_policy import parse_robots_txt
from .sitemap_utils import parse_sitemap
from .web_fetch import FetchConfig, FetchResult, HttpFetcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

RDAP_BUDGET_SECONDS = RDAP_TIMEOUT_SECONDS + WHOIS_TIMEOUT_SECONDS + 5.0


@dataclass
class FetchLayerConfig:
    scan_id: str
    url: str
    domain: str = ""
    policy: DomainPolicy = DEFAULT_POLICY
    skip_dns: bool = False
    skip_tls: bool = False
    skip_rdap: bool = False
    skip_robots: bool = False
    skip_sitemaps: bool = False
    skip_policy_pages: bool = False


def detect_bot_challenge_page(body: Optional[str]) -> bool:
    """Return True when an HTTP body is a bot-challenge interstitial rather than the site."""

    if not body:
        return False
    if any(marker in body for marker in BOT_CHALLENGE_MARKERS):
        return True
    return len(body) < BOT_CHALLENGE_SHORT_BODY_LIMIT and any(
        marker in body for marker in BOT_CHALLENGE_SHORT_BODY_MARKERS
    )


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Timed out"
    return str(exc) or exc.__class__.__name__


class FetchLayer:
    """Orchestrates every network fetch for a scan.

    ``http``, ``browser`` and ``sink`` are optional collaborators. A missing
    ``http`` client is created per run (and closed after it); a missing
    ``browser`` makes every browser fallback record a failure; a missing
    ``sink`` defaults to a :class:`MemorySink` exposed as ``self.sink``.
    """

    def __init__(
        self,
        http: Optional[HttpFetcher] = None,
        browser: Optional[BrowserDriver] = None,
        sink: Optional[FetchSink] = None,
    ) -> None:
        self.http = http
        self.browser = browser
        self.sink: FetchSink = sink if sink is not None else MemorySink()

    async def run(self, config: FetchLayerConfig, store: Optional[ContentStore] = None) -> ContentStore:
        url = normalize_target_url(config.url)
        domain = config.domain or extract_domain_from_input(url)
        if store is None:
            store = create_content_store(config.scan_id, url, domain)
        elif store.scan_id != config.scan_id:
            raise ValueError(f"ContentStore belongs to scan {store.scan_id}, not {config.scan_id}")

        owns_http = self.http is None
        http = self.http or HttpFetcher(FetchConfig(timeout_ms=config.policy.request_timeout_ms))
        logger.info("fetch layer starting for %s (scan %s)", domain, config.scan_id)
        try:
            await self._run_phases(http, config, store, url, domain)
        finally:
            if owns_http:
                await http.close()
        logger.info("fetch layer finished for %s with %d errors", domain, len(store.fetch_errors))
        return store

    async def _run_phases(
        self,
        http: HttpFetcher,
        config: FetchLayerConfig,
        store: ContentStore,
        url: str,
        domain: str,
    ) -> None:
        policy = config.policy
        browser_used = False

        async def homepage() -> None:
            nonlocal browser_used
            browser_used = await self._fetch_homepage(http, store, url, policy)

        await asyncio.gather(
            self._run_infrastructure(http, config, store, domain),
            self._guard(store, RES_HOMEPAGE, homepage, url=url, recoverable=False),
        )

        store.bot_protection_detected = store.bot_protection_detected or store.detect_bot_protection()
        if store.bot_protection_detected and not browser_used and not store.used_browser_fallback:
            logger.info("bot protection detected on %s, trying browser fallback", url)
            await self._guard(
                store, RES_HOMEPAGE, lambda: self._browser_homepage(store, url), url=url, recoverable=False
            )

        if not config.skip_robots:
            await self._guard(store, RES_ROBOTS, lambda: self._fetch_robots(http, store, url, policy))
        if not config.skip_sitemaps:
            await self._guard(store, RES_SITEMAP, lambda: self._fetch_sitemaps(http, store, url, policy))
        if not config.skip_policy_pages:
            await self._guard(store, RES_POLICY, lambda: self._fetch_policy_pages(http, store, url, policy))
        self._persist_homepage_artifacts(store)

    async def _guard(
        self,
        store: ContentStore,
        resource: str,
        step: Callable[[], Awaitable[T]],
        *,
        url: Optional[str] = None,
        recoverable: bool = True,
    ) -> Optional[T]:
        try:
            return await step()
        except Exception as exc:
            logger.info("%s step failed: %s", resource, exc)
            store.add_fetch_error(resource, _describe(exc), recoverable, url)
            return None

    # -------------------------------------------------------- infrastructure

    async def _run_infrastructure(
        self,
        http: HttpFetcher,
        config: FetchLayerConfig,
        store: ContentStore,
        domain: str,
    ) -> None:
        tasks: List[Awaitable[None]] = []
        timeout_s = config.policy.request_timeout_ms / 1000
        if not config.skip_dns:
            tasks.append(self._probe(store, RES_DNS, lambda: probe_dns(domain), DNS_TIMEOUT_SECONDS * 2, DnsData))
        if not config.skip_tls:
            tasks.append(self._probe(store, RES_TLS, lambda: probe_tls(domain, timeout=timeout_s), timeout_s * 2, TlsData))
        if not config.skip_rdap:
            tasks.append(
                self._probe(store, RES_RDAP, lambda: lookup_rdap(domain, http.session), RDAP_BUDGET_SECONDS, RdapData)
            )
        await asyncio.gather(*tasks)

    async def _probe(
        self,
        store: ContentStore,
        resource: str,
        call: Callable[[], Awaitable[T]],
        timeout: float,
        empty: Callable[[], T],
    ) -> None:
        try:
            data = await asyncio.wait_for(call(), timeout)
        except Exception as exc:
            data = empty()
            data.error = _describe(exc)  # type: ignore[attr-defined]
        if not data.ok:  # type: ignore[attr-defined]
            store.add_fetch_error(resource, data.error or f"{resource} unavailable", True)  # type: ignore[attr-defined]
        setter = getattr(store, f"set_{resource}")
        if not setter(data):
            logger.debug("kept earlier %s result over a failed retry", resource)

    # -------------------------------------------------------------- homepage

    async def _fetch_homepage(self, http: HttpFetcher, store: ContentStore, url: str, policy: DomainPolicy) -> bool:
        """Fetch the homepage over HTTP; returns True when the browser path was taken."""

        result = await http.fetch(url, timeout_ms=policy.request_timeout_ms)
        log_fetch(self.sink, store.scan_id, result, SOURCE_HOMEPAGE)

        if result.status_code is None:
            store.set_homepage(FetchedPage.from_result(result, url=url))
            if is_tls_error(result.error_message):
                logger.info("TLS error on %s, using browser fallback", url)
                await self._browser_homepage(store, url)
                return True
            store.add_fetch_error(RES_HOMEPAGE, result.error_message or "Unknown error", False, url)
            return False

        if result.ok:
            store.set_homepage(FetchedPage.from_result(result, url=url))
            if detect_bot_challenge_page(result.content):
                logger.info("bot challenge page on %s, using browser fallback", url)
                await self._browser_homepage(store, url)
                return True
            return False

        if result.status_code in (403, 503):
            # Held without content until DNS/TLS decide whether this is bot protection.
            page = FetchedPage.from_result(result, url=url, keep_content=False, error=f"HTTP {result.status_code}")
            store.set_homepage(page)
            return False

        store.set_homepage(FetchedPage.from_result(result, url=url))
        return False

    async def _browser_homepage(self, store: ContentStore, url: str) -> None:
        store.mark_browser_fallback()
        if self.browser is None:
            result = FetchResult(url=url, fetch_method=METHOD_BROWSER, error_message=BROWSER_UNAVAILABLE)
        else:
            result = await self.browser.fetch(url, HOMEPAGE_BROWSER_CONFIG)
        log_fetch(self.sink, store.scan_id, result, SOURCE_HOMEPAGE_BROWSER)
        if result.content:
            store.set_homepage(FetchedPage.from_result(result, url=url))
            return
        reason = result.error_message or "no content rendered"
        store.add_fetch_error(RES_HOMEPAGE, f"Browser fallback failed: {reason}", False, url)

    # ---------------------------------------------------------------- robots

    async def _fetch_robots(self, http: HttpFetcher, store: ContentStore, base_url: str, policy: DomainPolicy) -> None:
        robots_url = urljoin(base_url, "/robots.txt")
        result = await http.fetch(robots_url, timeout_ms=policy.request_timeout_ms, follow_redirects=False)
        log_fetch(self.sink, store.scan_id, result, SOURCE_ROBOTS)

        if result.ok and result.content is not None:
            rules = parse_robots_txt(result.content)
            store.set_robots(
                RobotsData(
                    content=result.content,
                    status_code=result.status_code,
                    sitemap_urls=list(rules.sitemap_urls),
                    disallowed_paths=list(rules.disallowed_paths),
                    allowed_paths=list(rules.allowed_paths),
                    crawl_delay_ms=rules.crawl_delay_ms,
                )
            )
            return

        store.set_robots(RobotsData(content=None, status_code=result.status_code))
        reason = result.error_message or f"robots.txt unavailable (HTTP {result.status_code})"
        store.add_fetch_error(RES_ROBOTS, reason, True, robots_url)

    # -------------------------------------------------------------- sitemaps

    async def _fetch_sitemap_batch(
        self,
        http: HttpFetcher,
        store: ContentStore,
        urls: List[str],
        policy: DomainPolicy,
    ) -> List[str]:
        """Fetch ``urls`` concurrently; returns child sitemap URLs found in index documents."""

        results = await asyncio.gather(
            *(http.fetch(u, timeout_ms=policy.request_timeout_ms, follow_redirects=False) for u in urls),
            return_exceptions=True,
        )
        children: List[str] = []
        for sitemap_url, result in zip(urls, results):
            if isinstance(result, BaseException):
                store.add_fetch_error(RES_SITEMAP, _describe(result), True, sitemap_url)
                continue
            log_fetch(self.sink, store.scan_id, result, SOURCE_SITEMAP)
            if result.error_message:
                store.add_fetch_error(RES_SITEMAP, result.error_message, True, sitemap_url)
            if not (result.ok and result.content):
                continue
            parsed = parse_sitemap(result.content)
            store.add_sitemap(
                SitemapData(
                    url=sitemap_url,
                    status_code=result.status_code,
                    url_count=parsed.url_count,
                    is_index=parsed.is_index,
                    discovered_urls=[] if parsed.is_index else parsed.locations,
                )
            )
            if parsed.is_index:
                children.extend(parsed.locations)
        return children

    async def _fetch_sitemaps(self, http: HttpFetcher, store: ContentStore, base_url: str, policy: DomainPolicy) -> None:
        declared = store.robots_txt.sitemap_urls if store.robots_txt else []
        seeds = dedupe(declared or [urljoin(base_url, path) for path in DEFAULT_SITEMAP_PATHS])
        first = seeds[:MAX_SITEMAP_FETCHES]
        children = await self._fetch_sitemap_batch(http, store, first, policy)

        remaining = MAX_SITEMAP_FETCHES - len(first)
        queued = [u for u in dedupe(children) if u not in first][: max(0, remaining)]
        if queued:
            logger.debug("fetching %d child sitemaps for %s", len(queued), base_url)
            await self._fetch_sitemap_batch(http, store, queued, policy)

    # ---------------------------------------------------------- policy pages

    async def _fetch_policy_pages(self, http: HttpFetcher, store: ContentStore, base_url: str, policy: DomainPolicy) -> None:
        targets: List[Tuple[str, str]] = [(path, urljoin(base_url, path)) for path in POLICY_PATHS]
        results = await asyncio.gather(
            *(http.fetch(page_url, timeout_ms=policy.request_timeout_ms) for _, page_url in targets),
            return_exceptions=True,
        )
        for (path, page_url), result in zip(targets, results):
            if isinstance(result, BaseException):
                store.add_fetch_error(RES_POLICY, _describe(result), True, page_url)
                continue
            log_fetch(self.sink, store.scan_id, result, SOURCE_POLICY)
            store.put_policy_page(path, FetchedPage.from_result(result, url=page_url))
            if result.error_message:
                store.add_fetch_error(RES_POLICY, result.error_message, True, page_url)

    # ------------------------------------------------------------- artifacts

    def _persist_homepage_artifacts(self, store: ContentStore) -> None:
        page = store.homepage
        if page is None or not page.content:
            return
        records = [
            ArtifactRecord(
                scan_id=store.scan_id,
                url=page.url,
                type=ARTIFACT_HOMEPAGE_HTML,
                snippet=page.content[:ARTIFACT_HTML_LIMIT],
                content_type=page.content_type or "text/html",
            )
        ]
        if page.text_content:
            records.append(
                ArtifactRecord(
                    scan_id=store.scan_id,
                    url=page.url,
                    type=ARTIFACT_HOMEPAGE_TEXT,
                    snippet=page.text_content[:ARTIFACT_TEXT_LIMIT],
                    content_type="text/plain",
                )
            )
        for record in records:
            try:
                self.sink.record_artifact(record)
            except Exception as exc:  # non-critical cache write
                logger.debug("artifact write failed for %s: %s", record.type, exc)


async def execute_fetch_layer(
    config: FetchLayerConfig,
    *,
    http: Optional[HttpFetcher] = None,
    browser: Optional[BrowserDriver] = None,
    sink: Optional[FetchSink] = None,
) -> ContentStore:
    return await FetchLayer(http=http, browser=browser, sink=sink).run(config)


__all__ = [
    "FetchLayer",
    "FetchLayerConfig",
    "detect_bot_challenge_page",
    "execute_fetch_layer",
]
