"""Scan entrypoints used by the CLI and by embedding callers.

``run_scan`` populates a :class:`ContentStore` through :class:`FetchLayer`;
``run_discovery`` runs the :class:`DiscoveryCrawler`. Both own the browser
handle they create and close it after every in-flight fetch has finished.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .browser_driver import BrowserDriver, BrowserHandle
from .content_store import ContentStore
from .discovery import DiscoveryCrawler, DiscoveryResult
from .domain_policy import DEFAULT_POLICY, DomainPolicy
from .fetch_layer import FetchLayer, FetchLayerConfig
from .fetch_log import FetchSink
from .intel_utils import extract_domain_from_input, normalize_target_url

logger = logging.getLogger(__name__)

SKIP_CHOICES = ("dns", "tls", "rdap", "robots", "sitemaps", "policy_pages")

SUMMARY_FILENAME = "summary.json"
STORE_FILENAME = "content_store.json"
DISCOVERY_FILENAME = "discovery.json"


def generate_scan_id() -> str:
    return f"scan-{uuid.uuid4().hex[:12]}"


def build_fetch_config(
    url: str,
    *,
    scan_id: Optional[str] = None,
    policy: DomainPolicy = DEFAULT_POLICY,
    skip: Iterable[str] = (),
) -> FetchLayerConfig:
    target = normalize_target_url(url)
    flags: Dict[str, bool] = {}
    for name in skip:
        key = name.strip().lower().replace("-", "_")
        if key not in SKIP_CHOICES:
            raise ValueError(f"Unknown skip option '{name}'. Choose from: {', '.join(SKIP_CHOICES)}")
        flags[f"skip_{key}"] = True
    return FetchLayerConfig(
        scan_id=scan_id or generate_scan_id(),
        url=target,
        domain=extract_domain_from_input(target),
        policy=policy,
        **flags,
    )


def _make_browser(use_browser: bool) -> Optional[BrowserHandle]:
    if not use_browser:
        return None
    handle = BrowserHandle()
    if not handle.available:
        logger.info("browser fallback unavailable (playwright missing or disabled)")
    return handle


async def scan_target(
    url: str,
    *,
    scan_id: Optional[str] = None,
    policy: DomainPolicy = DEFAULT_POLICY,
    sink: Optional[FetchSink] = None,
    use_browser: bool = True,
    skip: Iterable[str] = (),
) -> ContentStore:
    config = build_fetch_config(url, scan_id=scan_id, policy=policy, skip=skip)
    handle = _make_browser(use_browser)
    driver = BrowserDriver(handle) if handle is not None else None
    try:
        return await FetchLayer(browser=driver, sink=sink).run(config)
    finally:
        if handle is not None:
            await handle.close()


async def discover_target(
    url: str,
    *,
    scan_id: Optional[str] = None,
    policy: DomainPolicy = DEFAULT_POLICY,
    sink: Optional[FetchSink] = None,
    use_browser: bool = True,
    store: Optional[ContentStore] = None,
) -> DiscoveryResult:
    handle = _make_browser(use_browser)
    driver = BrowserDriver(handle) if handle is not None else None
    try:
        async with DiscoveryCrawler(browser=driver, sink=sink) as crawler:
            return await crawler.run(scan_id or generate_scan_id(), url, policy, store=store)
    finally:
        if handle is not None:
            await handle.close()


def run_scan(url: str, **kwargs: Any) -> ContentStore:
    """Blocking wrapper around :func:`scan_target`."""

    return asyncio.run(scan_target(url, **kwargs))


def run_discovery(url: str, **kwargs: Any) -> DiscoveryResult:
    """Blocking wrapper around :func:`discover_target`."""

    return asyncio.run(discover_target(url, **kwargs))


def build_scan_summary(store: ContentStore) -> Dict[str, Any]:
    homepage = store.homepage
    policy_found = store.successful_policy_paths()
    recoverable = sum(1 for e in store.fetch_errors if e.recoverable)
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scan_id": store.scan_id,
        "target_url": store.target_url,
        "target_domain": store.target_domain,
        "homepage_status": homepage.status_code if homepage else None,
        "homepage_method": homepage.fetch_method if homepage else None,
        "homepage_has_content": bool(homepage and homepage.has_content),
        "robots_found": bool(store.robots_txt and store.robots_txt.ok),
        "sitemaps_fetched": len(store.sitemaps),
        "sitemap_url_total": store.get_total_sitemap_url_count(),
        "policy_pages_checked": len(store.policy_pages),
        "policy_pages_found": len(policy_found),
        "policy_paths_found": policy_found,
        "dns_ok": store.has_dns_ok(),
        "https_ok": store.has_https_ok(),
        "rdap_source": store.rdap.source if store.rdap else None,
        "domain_age_years": store.rdap.domain_age_years if store.rdap else None,
        "bot_protection_detected": store.bot_protection_detected,
        "used_browser_fallback": store.used_browser_fallback,
        "errors": len(store.fetch_errors),
        "recoverable_errors": recoverable,
        "fatal_errors": len(store.fetch_errors) - recoverable,
    }


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def write_scan_outputs(store: ContentStore, out_dir: Path, *, include_content: bool = False) -> Dict[str, Path]:
    summary_path = out_dir / SUMMARY_FILENAME
    store_path = out_dir / STORE_FILENAME
    _write_json(summary_path, build_scan_summary(store))
    _write_json(store_path, store.to_dict(include_content=include_content))
    return {"summary": summary_path, "store": store_path}


def write_discovery_output(result: DiscoveryResult, out_dir: Path) -> Path:
    path = out_dir / DISCOVERY_FILENAME
    _write_json(path, result.to_dict())
    return path


__all__ = [
    "SKIP_CHOICES",
    "build_fetch_config",
    "build_scan_summary",
    "discover_target",
    "generate_scan_id",
    "run_discovery",
    "run_scan",
    "scan_target",
    "write_discovery_output",
    "write_scan_outputs",
]
