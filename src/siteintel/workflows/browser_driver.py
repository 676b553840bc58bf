"""Headless-browser rendering with a stealth profile and challenge handling.

The browser process is owned by a :class:`BrowserHandle`: started lazily on
first use, shared by every fetch made through it (one isolated context per
logical fetch) and closed explicitly by whoever created it. Callers must not
close the handle while a fetch is in flight.

:class:`BrowserDriver` returns the same :class:`FetchResult` shape as the plain
HTTP path, tagged ``fetch_method="browser"``. Browser failures never raise:
timeouts become ``"Browser timeout"`` and anything else is reported through
``error_message`` with ``content`` left empty.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from ..core.keys import METHOD_BROWSER
from .intel_config import (
    BROWSER_CHALLENGE_MARKER_PAIRS,
    BROWSER_CHALLENGE_MARKERS,
    BROWSER_EXTRA_HEADERS,
    BROWSER_LAUNCH_ARGS,
    BROWSER_LOCALE,
    BROWSER_TIMEZONE,
    BROWSER_VIEWPORT,
    CHALLENGE_POLL_INTERVAL_MS,
    CHALLENGE_WAIT_BUDGET_MS,
    CONTACT_CLICK_LABELS,
    CONTACT_LINK_TEXTS,
    CONTACT_PAGE_RE,
    CONTACT_URL_PATTERN,
    COOKIE_CONSENT_SELECTORS,
    DEFAULT_BROWSER_TIMEOUT_MS,
    DEFAULT_EXPAND_SELECTORS,
    DEFAULT_NAVIGATION_TIMEOUT_MS,
    DEFAULT_USER_AGENT,
    EXPANDABLE_RE,
    JS_FRAMEWORK_PATTERNS,
    OVERLAY_EXACT_BUTTON_TEXTS,
    OVERLAY_HIDE_SELECTORS,
    OVERLAY_PARTIAL_BUTTON_TEXTS,
    PHONE_LABEL_RE,
    SCROLL_INTERVAL_MS,
    SCROLL_MAX_STEPS,
    SCROLL_STEP_PX,
    VISIBLE_PHONE_RE,
)
from .web_fetch import FetchResult

try:  # Playwright is optional; browser fetches report an error when it is missing
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError  # type: ignore
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore
    PlaywrightTimeoutError = None  # type: ignore

logger = logging.getLogger(__name__)

BROWSER_UNAVAILABLE = "Browser unavailable: playwright is not installed"
BROWSER_DISABLED = "Browser disabled by SITEINTEL_DISABLE_BROWSER"

_STEALTH_INIT_SCRIPT = """
() => {
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
  Object.defineProperty(navigator, 'plugins', {
    get: () => [
      { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
      { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
      { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
    ],
  });
  Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
  Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => 8 });
  Object.defineProperty(navigator, 'deviceMemory', { get: () => 8 });
  const originalQuery = window.navigator.permissions.query;
  window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
      ? Promise.resolve({ state: Notification.permission })
      : originalQuery(parameters)
  );
  window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };
}
"""

_DISMISS_OVERLAYS_JS = """
(args) => {
  const visible = (el) => {
    const style = window.getComputedStyle(el);
    return style.display !== 'none' && style.visibility !== 'hidden';
  };
  document.querySelectorAll('button, [role="button"]').forEach((btn) => {
    if (!(btn instanceof HTMLElement)) return;
    const text = (btn.textContent || '').toLowerCase().trim();
    const label = (btn.getAttribute('aria-label') || '').toLowerCase();
    const exact = args.exact.some((p) => text === p);
    const partial = args.partial.some((p) => text.includes(p) || label.includes(p));
    if ((exact || partial) && visible(btn)) btn.click();
  });
  for (const selector of args.consent) {
    try {
      document.querySelectorAll(selector).forEach((el) => {
        if (el instanceof HTMLElement && visible(el)) el.click();
      });
    } catch (e) {}
  }
  for (const selector of args.hide) {
    try {
      document.querySelectorAll(selector).forEach((el) => {
        if (el instanceof HTMLElement && visible(el)) el.style.display = 'none';
      });
    } catch (e) {}
  }
}
"""

_AUTOSCROLL_JS = """
(args) => new Promise((resolve) => {
  let covered = 0;
  let steps = 0;
  const timer = setInterval(() => {
    const height = document.body ? document.body.scrollHeight : 0;
    window.scrollBy(0, args.step);
    covered += args.step;
    steps += 1;
    if (covered >= height || steps >= args.maxSteps) {
      clearInterval(timer);
      window.scrollTo(0, 0);
      resolve(steps);
    }
  }, args.interval);
})
"""

_EXPAND_SECTIONS_JS = """
(selectors) => {
  let clicked = 0;
  for (const selector of selectors) {
    try {
      document.querySelectorAll(selector).forEach((el) => {
        if (!(el instanceof HTMLElement)) return;
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden') return;
        if (el.getAttribute('aria-expanded') === 'true') return;
        if (el.tagName.toLowerCase() === 'details' && el.hasAttribute('open')) return;
        el.click();
        clicked += 1;
      });
    } catch (e) {}
  }
  return clicked;
}
"""

_CONTACT_ANCHORS_JS = """
(args) => {
  const urlPattern = new RegExp(args.urlPattern, 'i');
  const found = [];
  document.querySelectorAll('a[href]').forEach((link) => {
    const href = link.href;
    if (!href) return;
    if (href.startsWith('javascript:') || href.startsWith('mailto:') || href.startsWith('tel:')) return;
    const text = (link.textContent || '').trim().toLowerCase();
    const label = (link.getAttribute('aria-label') || '').trim().toLowerCase();
    const byText = args.texts.some((p) => text === p || label === p);
    if (byText || urlPattern.test(href)) found.push(href);
  });
  return found;
}
"""


def _env_flag(name: str) -> bool:
    return os.getenv(name, "0").strip().lower() in {"1", "true", "yes", "on"}


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return True
    if PlaywrightTimeoutError is not None and isinstance(exc, PlaywrightTimeoutError):
        return True
    return exc.__class__.__name__ == "TimeoutError"


@dataclass
class BrowserFetchConfig:
    """Per-fetch rendering knobs."""

    wait_for_network_idle: bool = False
    additional_wait_ms: int = 2000
    expand_sections: bool = True
    expand_selectors: Tuple[str, ...] = DEFAULT_EXPAND_SELECTORS
    scroll_to_bottom: bool = False
    timeout_ms: int = DEFAULT_BROWSER_TIMEOUT_MS


HOMEPAGE_BROWSER_CONFIG = BrowserFetchConfig(
    wait_for_network_idle=True,
    additional_wait_ms=3000,
    expand_sections=True,
    scroll_to_bottom=True,
    timeout_ms=DEFAULT_BROWSER_TIMEOUT_MS,
)

CONTACT_PAGE_CONFIG = BrowserFetchConfig(
    wait_for_network_idle=True,
    additional_wait_ms=1000,
    expand_sections=True,
    scroll_to_bottom=True,
    timeout_ms=DEFAULT_NAVIGATION_TIMEOUT_MS,
)


@dataclass
class ContactLink:
    url: str
    discovered_by_click: bool = False


class BrowserHandle:
    """Lazily started, explicitly closed Chromium process shared across fetches."""

    def __init__(self, *, headless: Optional[bool] = None, enabled: Optional[bool] = None) -> None:
        self.headless = (not _env_flag("SITEINTEL_BROWSER_HEADED")) if headless is None else headless
        self.enabled = (not _env_flag("SITEINTEL_DISABLE_BROWSER")) if enabled is None else enabled
        self._playwright: Any = None
        self._browser: Any = None
        self._lock = asyncio.Lock()

    @property
    def available(self) -> bool:
        return self.enabled and async_playwright is not None

    @property
    def started(self) -> bool:
        return self._browser is not None

    async def __aenter__(self) -> "BrowserHandle":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def get_browser(self) -> Any:
        if not self.enabled:
            raise RuntimeError(BROWSER_DISABLED)
        if async_playwright is None:
            raise RuntimeError(BROWSER_UNAVAILABLE)
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            logger.info("launching chromium (headless=%s)", self.headless)
            try:
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=list(BROWSER_LAUNCH_ARGS),
                )
            except Exception as exc:
                logger.warning("chromium launch failed: %s", exc)
                raise
            return self._browser

    async def new_context(self, **kwargs: Any) -> Any:
        browser = await self.get_browser()
        return await browser.new_context(**kwargs)

    async def close(self) -> None:
        async with self._lock:
            browser, self._browser = self._browser, None
            pw, self._playwright = self._playwright, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                logger.debug("browser close failed: %s", exc)
        if pw is not None:
            try:
                await pw.stop()
            except Exception as exc:
                logger.debug("playwright stop failed: %s", exc)


def is_challenge_markup(html: Optional[str]) -> bool:
    """Return True while rendered markup still looks like a bot-challenge interstitial."""

    lowered = (html or "").lower()
    if any(marker in lowered for marker in BROWSER_CHALLENGE_MARKERS):
        return True
    return any(a in lowered and b in lowered for a, b in BROWSER_CHALLENGE_MARKER_PAIRS)


def should_use_browser(html: Optional[str]) -> bool:
    """Return True when markup carries client-rendering or lazy-content signatures."""

    if not html:
        return False
    return any(pattern.search(html) for pattern in JS_FRAMEWORK_PATTERNS)


def has_hidden_contact_content(html: Optional[str], url: str) -> bool:
    """Contact-shaped URL whose markup hides sections or labels phones without numbers."""

    if not html or not CONTACT_PAGE_RE.search(url or ""):
        return False
    if EXPANDABLE_RE.search(html):
        return True
    return bool(PHONE_LABEL_RE.search(html)) and not VISIBLE_PHONE_RE.search(html)


class BrowserDriver:
    """Render pages through a :class:`BrowserHandle`."""

    def __init__(self, handle: Optional[BrowserHandle] = None, *, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self.handle = handle or BrowserHandle()
        self.user_agent = user_agent

    @property
    def available(self) -> bool:
        return self.handle.available

    async def _open_page(self, *, stealth: bool) -> Tuple[Any, Any]:
        options: dict = {
            "user_agent": self.user_agent,
            "viewport": dict(BROWSER_VIEWPORT),
            "ignore_https_errors": True,
        }
        if stealth:
            options.update(
                locale=BROWSER_LOCALE,
                timezone_id=BROWSER_TIMEZONE,
                permissions=["geolocation"],
                extra_http_headers=dict(BROWSER_EXTRA_HEADERS),
            )
        context = await self.handle.new_context(**options)
        try:
            page = await context.new_page()
        except Exception:
            await _quiet_close(context)
            raise
        if stealth:
            await page.add_init_script(_STEALTH_INIT_SCRIPT)
        return context, page

    async def fetch(self, url: str, config: Optional[BrowserFetchConfig] = None) -> FetchResult:
        cfg = config or BrowserFetchConfig()
        started = time.monotonic()
        result = FetchResult(url=url, fetch_method=METHOD_BROWSER, final_url=url)
        context = page = None
        try:
            context, page = await self._open_page(stealth=True)
            page.set_default_timeout(cfg.timeout_ms)
            page.set_default_navigation_timeout(DEFAULT_NAVIGATION_TIMEOUT_MS)

            response = await self._navigate(page, url, cfg)
            if response is not None:
                result.status_code = response.status
                result.content_type = response.headers.get("content-type")

            if not await self._wait_for_challenge(page):
                logger.info("bot challenge still present after %d ms on %s", CHALLENGE_WAIT_BUDGET_MS, url)

            await page.wait_for_timeout(cfg.additional_wait_ms)
            await self._dismiss_overlays(page)
            if cfg.scroll_to_bottom:
                await self._autoscroll(page)
            if cfg.expand_sections:
                await self._expand_sections(page, cfg.expand_selectors)
            await page.wait_for_timeout(500)

            result.content = await page.content()
            result.content_length = len(result.content)
            result.final_url = page.url or url
        except Exception as exc:
            result.error_message = "Browser timeout" if _is_timeout(exc) else (str(exc) or exc.__class__.__name__)
            logger.info("browser fetch failed for %s: %s", url, result.error_message)
        finally:
            if page is not None:
                await _quiet_close(page)
            if context is not None:
                await _quiet_close(context)
        result.fetch_duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def fetch_contact_page(self, url: str) -> FetchResult:
        return await self.fetch(url, CONTACT_PAGE_CONFIG)

    async def _navigate(self, page: Any, url: str, cfg: BrowserFetchConfig) -> Any:
        wait_until = "networkidle" if cfg.wait_for_network_idle else "load"
        try:
            return await page.goto(url, wait_until=wait_until, timeout=cfg.timeout_ms)
        except Exception as exc:
            if not (cfg.wait_for_network_idle and _is_timeout(exc)):
                raise
            logger.info("networkidle timeout for %s, retrying with load", url)
            return await page.goto(url, wait_until="load", timeout=cfg.timeout_ms)

    async def _wait_for_challenge(self, page: Any) -> bool:
        """Poll the rendered markup until no challenge marker remains; False when the budget runs out."""

        elapsed = 0
        while elapsed < CHALLENGE_WAIT_BUDGET_MS:
            if not is_challenge_markup(await page.content()):
                return True
            await page.wait_for_timeout(CHALLENGE_POLL_INTERVAL_MS)
            elapsed += CHALLENGE_POLL_INTERVAL_MS
        return False

    async def _dismiss_overlays(self, page: Any) -> None:
        args = {
            "exact": list(OVERLAY_EXACT_BUTTON_TEXTS),
            "partial": list(OVERLAY_PARTIAL_BUTTON_TEXTS),
            "consent": list(COOKIE_CONSENT_SELECTORS),
            "hide": list(OVERLAY_HIDE_SELECTORS),
        }
        try:
            await page.evaluate(_DISMISS_OVERLAYS_JS, args)
        except Exception as exc:
            logger.debug("overlay dismissal failed: %s", exc)
        await page.wait_for_timeout(300)

    async def _autoscroll(self, page: Any) -> None:
        args = {"step": SCROLL_STEP_PX, "interval": SCROLL_INTERVAL_MS, "maxSteps": SCROLL_MAX_STEPS}
        await page.evaluate(_AUTOSCROLL_JS, args)

    async def _expand_sections(self, page: Any, selectors: Sequence[str]) -> None:
        # Second pass catches nested sections revealed by the first.
        await page.evaluate(_EXPAND_SECTIONS_JS, list(selectors))
        await page.wait_for_timeout(500)
        await page.evaluate(_EXPAND_SECTIONS_JS, list(selectors))

    async def find_contact_links(self, base_url: str) -> List[ContactLink]:
        """Discover contact URLs on a rendered homepage.

        Anchors are scanned first (link text or contact-shaped href). When none
        match, each click label is tried in turn: the first visible element with
        that exact text is clicked. A new URL is recorded as discovered by click,
        and any URL change reloads the homepage before the next label. Links found
        before an error are still returned.
        """

        links: List[ContactLink] = []
        seen = set()
        context = page = None
        try:
            context, page = await self._open_page(stealth=False)
            page.set_default_timeout(DEFAULT_BROWSER_TIMEOUT_MS)
            page.set_default_navigation_timeout(DEFAULT_NAVIGATION_TIMEOUT_MS)
            await page.goto(base_url, wait_until="domcontentloaded", timeout=DEFAULT_BROWSER_TIMEOUT_MS)
            await page.wait_for_timeout(5000)
            await self._dismiss_overlays(page)

            anchors = await page.evaluate(
                _CONTACT_ANCHORS_JS,
                {"texts": list(CONTACT_LINK_TEXTS), "urlPattern": CONTACT_URL_PATTERN},
            )
            for href in anchors or []:
                if href not in seen:
                    seen.add(href)
                    links.append(ContactLink(url=href))
            logger.debug("found %d contact anchors on %s", len(links), base_url)

            if not links:
                for label in CONTACT_CLICK_LABELS:
                    try:
                        element = page.locator(f'text="{label}"').first
                        if not await element.is_visible():
                            continue
                        before = page.url
                        await element.click(timeout=5000)
                        await page.wait_for_timeout(2000)
                        after = page.url
                        if after == before:
                            continue
                        if after not in seen:
                            logger.info("contact URL found by clicking %r: %s", label, after)
                            seen.add(after)
                            links.append(ContactLink(url=after, discovered_by_click=True))
                        # Back to the start page before the next label.
                        await page.goto(base_url, wait_until="domcontentloaded", timeout=30000)
                        await page.wait_for_timeout(3000)
                    except Exception as exc:
                        logger.debug("click discovery for %r failed: %s", label, exc)
        except Exception as exc:
            logger.info("contact link discovery failed for %s: %s", base_url, exc)
        finally:
            if page is not None:
                await _quiet_close(page)
            if context is not None:
                await _quiet_close(context)
        return links


async def _quiet_close(resource: Any) -> None:
    try:
        await resource.close()
    except Exception as exc:
        logger.debug("close failed: %s", exc)


__all__ = [
    "BROWSER_DISABLED",
    "BROWSER_UNAVAILABLE",
    "BrowserDriver",
    "BrowserFetchConfig",
    "BrowserHandle",
    "CONTACT_PAGE_CONFIG",
    "ContactLink",
    "HOMEPAGE_BROWSER_CONFIG",
    "has_hidden_contact_content",
    "is_challenge_markup",
    "should_use_browser",
]
