"""Policy-aware link discovery beyond the homepage.

The crawler reads robots.txt, expands sitemaps (following one level of
sitemap indexes), crawls a bounded page set in fixed-size concurrent batches
with one crawl delay between batches, and falls back to browser-driven
contact-link discovery for single-page apps. Every fetch, including ones
blocked by robots.txt, is written to the sink.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urljoin

from ..core.keys import (
    SOURCE_CONTACT,
    SOURCE_CONTACT_BROWSER,
    SOURCE_CRAWL,
    SOURCE_HOMEPAGE,
    SOURCE_ROBOTS,
    SOURCE_SITEMAP,
)
from .browser_driver import BrowserDriver, ContactLink, has_hidden_contact_content, should_use_browser
from .content_store import ContentStore, FetchedPage
from .domain_policy import DEFAULT_POLICY, DomainPolicy
from .fetch_log import FetchSink, MemorySink, log_fetch
from .intel_config import (
    CRAWL_BATCH_SIZE,
    DEFAULT_SITEMAP_PATHS,
    DISCOVERY_CHILD_SITEMAP_LIMIT,
    DISCOVERY_FETCH_TIMEOUT_MS,
    DISCOVERY_SITEMAP_LIMIT,
    PRIORITY_PAGE_LIMIT,
    PRIORITY_PATH_PATTERNS,
)
from .intel_utils import (
    dedupe,
    extract_links,
    host_in_scope,
    looks_like_contact_url,
    normalize_target_url,
    target_host,
)
from .robots_policy import RobotRules, is_path_allowed, parse_robots_txt
from .sitemap_utils import parse_sitemap
from .web_fetch import FetchConfig, FetchResult, HttpFetcher

logger = logging.getLogger(__name__)

ROBOTS_BLOCKED = "Blocked by robots.txt"


async def _pause(delay_ms: int) -> None:
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)


@dataclass
class DiscoveryResult:
    robots_txt: Optional[str] = None
    sitemap_urls: List[str] = field(default_factory=list)
    discovered_urls: List[str] = field(default_factory=list)
    crawled_pages: Dict[str, str] = field(default_factory=dict)
    contact_links: List[ContactLink] = field(default_factory=list)
    contact_page_url: Optional[str] = None

    def to_dict(self, *, include_pages: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "robots_txt_found": self.robots_txt is not None,
            "sitemap_urls": list(self.sitemap_urls),
            "discovered_urls": list(self.discovered_urls),
            "crawled_urls": list(self.crawled_pages),
            "contact_links": [
                {"url": link.url, "discovered_by_click": link.discovered_by_click} for link in self.contact_links
            ],
            "contact_page_url": self.contact_page_url,
        }
        if include_pages:
            payload["crawled_pages"] = dict(self.crawled_pages)
        return payload


def build_crawl_set(homepage: str, candidates: Sequence[str], max_pages: int) -> List[str]:
    """Homepage first, then up to ten priority URLs, then other URLs up to the page budget."""

    def is_priority(url: str) -> bool:
        lowered = url.lower()
        return any(pattern in lowered for pattern in PRIORITY_PATH_PATTERNS)

    priority = [u for u in candidates if is_priority(u)][:PRIORITY_PAGE_LIMIT]
    pages = [homepage, *priority]
    others = [u for u in candidates if not is_priority(u)]
    pages.extend(others[: max(0, max_pages - len(pages))])
    return dedupe(pages)[:max_pages]


def _crawl_source(url: str, homepage: str) -> str:
    if url == homepage:
        return SOURCE_HOMEPAGE
    if "contact" in url.lower():
        return SOURCE_CONTACT
    return SOURCE_CRAWL


class DiscoveryCrawler:
    """Crawl one target under a :class:`DomainPolicy`.

    Use as ``async with DiscoveryCrawler(...) as crawler:`` when the crawler
    creates its own HTTP client; an injected client is left open.
    """

    def __init__(
        self,
        http: Optional[HttpFetcher] = None,
        browser: Optional[BrowserDriver] = None,
        sink: Optional[FetchSink] = None,
    ) -> None:
        self._owns_http = http is None
        self.http = http or HttpFetcher(FetchConfig(timeout_ms=DISCOVERY_FETCH_TIMEOUT_MS))
        self.browser = browser
        self.sink: FetchSink = sink if sink is not None else MemorySink()

    async def __aenter__(self) -> "DiscoveryCrawler":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self.http.close()

    async def fetch_with_logging(
        self,
        scan_id: Optional[str],
        url: str,
        source: str,
        rules: Optional[RobotRules] = None,
        enforce_robots: bool = True,
    ) -> FetchResult:
        """Fetch ``url`` unless robots.txt blocks it; the outcome is logged either way."""

        if enforce_robots and rules is not None and source != SOURCE_ROBOTS and not is_path_allowed(url, rules):
            result = FetchResult(url=url, final_url=url, robots_allowed=False, error_message=ROBOTS_BLOCKED)
            logger.debug("robots.txt blocks %s", url)
        else:
            result = await self.http.fetch(url, timeout_ms=DISCOVERY_FETCH_TIMEOUT_MS)
        log_fetch(self.sink, scan_id, result, source)
        return result

    async def smart_fetch(
        self,
        scan_id: Optional[str],
        url: str,
        source: str,
        rules: Optional[RobotRules] = None,
        enforce_robots: bool = True,
        force_browser: bool = False,
    ) -> FetchResult:
        """HTTP first; use the browser when the page looks client-rendered and it yields more markup."""

        if force_browser and self.browser is not None:
            result = await self.browser.fetch(url)
            log_fetch(self.sink, scan_id, result, f"{source}_browser")
            return result

        http_result = await self.fetch_with_logging(scan_id, url, source, rules, enforce_robots)
        content = http_result.content
        if not content or self.browser is None:
            return http_result
        if not (should_use_browser(content) or has_hidden_contact_content(content, url)):
            return http_result

        browser_result = await self.browser.fetch(url)
        log_fetch(self.sink, scan_id, browser_result, f"{source}_browser")
        if browser_result.content and len(browser_result.content) > len(content):
            return browser_result
        return http_result

    async def run(
        self,
        scan_id: str,
        url: str,
        policy: DomainPolicy = DEFAULT_POLICY,
        *,
        store: Optional[ContentStore] = None,
    ) -> DiscoveryResult:
        """Crawl ``url``; when ``store`` is given, crawled and contact pages are recorded in it too."""

        homepage = normalize_target_url(url)
        base_host = target_host(homepage)
        enforce = policy.enforce_robots
        result = DiscoveryResult()

        robots_result = await self.fetch_with_logging(scan_id, urljoin(homepage, "/robots.txt"), SOURCE_ROBOTS)
        rules: Optional[RobotRules] = None
        delay_ms = policy.crawl_delay_ms
        if robots_result.ok and robots_result.content:
            result.robots_txt = robots_result.content
            rules = parse_robots_txt(robots_result.content)
            result.sitemap_urls = list(rules.sitemap_urls)
            if rules.crawl_delay_ms and rules.crawl_delay_ms > delay_ms:
                logger.info("robots.txt raises crawl delay to %d ms", rules.crawl_delay_ms)
                delay_ms = rules.crawl_delay_ms

        sitemap_pages = await self._collect_sitemap_urls(scan_id, homepage, result.sitemap_urls, rules, enforce)
        candidates = [u for u in sitemap_pages if host_in_scope(target_host(u), base_host, policy.allow_subdomains)]
        discovered: List[str] = dedupe(candidates)

        crawl_set = build_crawl_set(homepage, candidates, policy.max_pages_per_scan)
        logger.info("crawling %d pages of %s with %d ms between batches", len(crawl_set), base_host, delay_ms)
        for index in range(0, len(crawl_set), CRAWL_BATCH_SIZE):
            if index:
                await _pause(delay_ms)
            batch = crawl_set[index : index + CRAWL_BATCH_SIZE]
            pages = await asyncio.gather(
                *(self.fetch_with_logging(scan_id, u, _crawl_source(u, homepage), rules, enforce) for u in batch)
            )
            for page_url, page in zip(batch, pages):
                if not page.content:
                    continue
                result.crawled_pages[page_url] = page.content
                if store is not None:
                    store.put_crawled_page(page_url, FetchedPage.from_result(page, url=page_url))
                    if page_url != homepage and looks_like_contact_url(page_url):
                        store.set_contact_page(FetchedPage.from_result(page, url=page_url))
                # Relative links resolve against the final URL; scope stays the target host.
                links = extract_links(page.content, page.final_url or page_url, allow_subdomains=policy.allow_subdomains)
                discovered.extend(
                    link for link in links if host_in_scope(target_host(link), base_host, policy.allow_subdomains)
                )

        if not any(looks_like_contact_url(u) for u in result.crawled_pages):
            await self._discover_contact_page(scan_id, homepage, base_host, policy, rules, result, store)

        result.discovered_urls = dedupe(discovered)
        return result

    async def _collect_sitemap_urls(
        self,
        scan_id: str,
        homepage: str,
        declared: List[str],
        rules: Optional[RobotRules],
        enforce: bool,
    ) -> List[str]:
        seeds = dedupe(declared or [urljoin(homepage, path) for path in DEFAULT_SITEMAP_PATHS])
        seeds = seeds[:DISCOVERY_SITEMAP_LIMIT]
        urls: List[str] = []
        children: List[str] = []

        results = await asyncio.gather(
            *(self.fetch_with_logging(scan_id, u, SOURCE_SITEMAP, rules, enforce) for u in seeds)
        )
        for fetched in results:
            if not fetched.content:
                continue
            parsed = parse_sitemap(fetched.content)
            if parsed.is_index:
                children.extend(parsed.locations[:DISCOVERY_CHILD_SITEMAP_LIMIT])
            else:
                urls.extend(parsed.locations)

        children = [u for u in dedupe(children) if u not in seeds]
        if children:
            child_results = await asyncio.gather(
                *(self.fetch_with_logging(scan_id, u, SOURCE_SITEMAP, rules, enforce) for u in children)
            )
            for fetched in child_results:
                if fetched.content:
                    parsed = parse_sitemap(fetched.content)
                    if not parsed.is_index:
                        urls.extend(parsed.locations)
        return dedupe(urls)

    async def _discover_contact_page(
        self,
        scan_id: str,
        homepage: str,
        base_host: str,
        policy: DomainPolicy,
        rules: Optional[RobotRules],
        result: DiscoveryResult,
        store: Optional[ContentStore] = None,
    ) -> None:
        if self.browser is None:
            return
        links = await self.browser.find_contact_links(homepage)
        # Click-discovered URLs are trusted ahead of path-inferred ones.
        ordered = [link for link in links if link.discovered_by_click] + [
            link for link in links if not link.discovered_by_click
        ]
        result.contact_links = ordered
        for link in ordered:
            if link.url in result.crawled_pages:
                continue
            if not host_in_scope(target_host(link.url), base_host, policy.allow_subdomains):
                continue
            if policy.enforce_robots and rules is not None and not is_path_allowed(link.url, rules):
                blocked = FetchResult(url=link.url, final_url=link.url, robots_allowed=False, error_message=ROBOTS_BLOCKED)
                log_fetch(self.sink, scan_id, blocked, SOURCE_CONTACT_BROWSER)
                continue
            fetched = await self.browser.fetch_contact_page(link.url)
            log_fetch(self.sink, scan_id, fetched, SOURCE_CONTACT_BROWSER)
            if fetched.content:
                logger.info("contact page rendered via browser: %s", link.url)
                result.crawled_pages[link.url] = fetched.content
                result.contact_page_url = link.url
                if store is not None:
                    page = FetchedPage.from_result(fetched, url=link.url)
                    store.put_crawled_page(link.url, page)
                    store.set_contact_page(page)
                return


async def run_discovery_pipeline(
    scan_id: str,
    url: str,
    policy: DomainPolicy = DEFAULT_POLICY,
    *,
    browser: Optional[BrowserDriver] = None,
    sink: Optional[FetchSink] = None,
    store: Optional[ContentStore] = None,
) -> DiscoveryResult:
    async with DiscoveryCrawler(browser=browser, sink=sink) as crawler:
        return await crawler.run(scan_id, url, policy, store=store)


__all__ = [
    "DiscoveryCrawler",
    "DiscoveryResult",
    "ROBOTS_BLOCKED",
    "build_crawl_set",
    "run_discovery_pipeline",
]
