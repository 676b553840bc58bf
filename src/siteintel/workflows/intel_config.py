"""Siteintel defaults (caps, headers, paths, pattern lists, registry endpoints).

Centralizes static defaults so the acquisition modules have no embedded magic
strings. Pattern lists are tuned empirically and are expected to change over
time; callers can pass their own tuples where a function accepts them.
"""

from __future__ import annotations

import re
from typing import Dict, Optional

# Request identity
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
RDAP_USER_AGENT = "siteintel/1.0 (Domain Intelligence Scanner)"

# Caps
MAX_REDIRECT_FOLLOWS = 10
MAX_BODY_BYTES = 512 * 1024
READ_CHUNK_BYTES = 16 * 1024
MAX_SITEMAP_FETCHES = 5
MAX_SITEMAP_DISCOVERED_URLS = 100
ARTIFACT_HTML_LIMIT = 20 * 1024
ARTIFACT_TEXT_LIMIT = 8 * 1024

# Timeouts (milliseconds unless noted)
DEFAULT_REQUEST_TIMEOUT_MS = 8000
MIN_REQUEST_TIMEOUT_MS = 1000
MAX_REQUEST_TIMEOUT_MS = 10000
DISCOVERY_FETCH_TIMEOUT_MS = 10000
DNS_TIMEOUT_SECONDS = 5.0
RDAP_TIMEOUT_SECONDS = 10.0
WHOIS_TIMEOUT_SECONDS = 15.0
DEFAULT_BROWSER_TIMEOUT_MS = 60000
DEFAULT_NAVIGATION_TIMEOUT_MS = 45000
CHALLENGE_WAIT_BUDGET_MS = 15000
CHALLENGE_POLL_INTERVAL_MS = 500
CERT_EXPIRING_SOON_DAYS = 14

# Fixed probe paths
POLICY_PATHS = (
    "/privacy",
    "/privacy-policy",
    "/terms",
    "/terms-of-service",
    "/refund",
    "/returns",
    "/shipping",
    "/contact",
    "/about",
)
DEFAULT_SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml")

# Discovery crawl
CRAWL_BATCH_SIZE = 5
DISCOVERY_SITEMAP_LIMIT = 3
DISCOVERY_CHILD_SITEMAP_LIMIT = 2
PRIORITY_PAGE_LIMIT = 10
PRIORITY_PATH_PATTERNS = ("/contact", "/about", "/team", "/company")
SKIPPED_LINK_PREFIXES = ("mailto:", "tel:", "javascript:", "#")

# Homepage bot-challenge detection (plain HTTP body)
BOT_CHALLENGE_MARKERS = (
    "Just a moment...",
    "_cf_chl_opt",
    "challenge-platform",
)
BOT_CHALLENGE_SHORT_BODY_MARKERS = ("Enable JavaScript",)
BOT_CHALLENGE_SHORT_BODY_LIMIT = 10000

# Rendered interstitial detection (browser challenge-wait loop), lower-cased
BROWSER_CHALLENGE_MARKERS = (
    "just a moment",
    "checking your browser",
    "cf-browser-verification",
    "_cf_chl_opt",
)
BROWSER_CHALLENGE_MARKER_PAIRS = (
    ("attention required", "ray id"),
    ("cloudflare", "ray id"),
)

TLS_ERROR_TOKENS = ("SSL", "TLS", "certificate")

# Browser profile
BROWSER_LAUNCH_ARGS = (
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-setuid-sandbox",
    "--no-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--window-size=1920,1080",
    "--start-maximized",
    "--disable-features=IsolateOrigins,site-per-process",
)
BROWSER_VIEWPORT = {"width": 1920, "height": 1080}
BROWSER_LOCALE = "en-US"
BROWSER_TIMEZONE = "America/New_York"
BROWSER_EXTRA_HEADERS = {
    "Accept-Language": DEFAULT_ACCEPT_LANGUAGE,
    "Accept-Encoding": "gzip, deflate, br",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "sec-ch-ua": '"Chromium";v="122", "Google Chrome";v="122", "Not(A:Brand";v="99"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"Windows"',
}

# Overlay dismissal
OVERLAY_EXACT_BUTTON_TEXTS = ("ok", "accept")
OVERLAY_PARTIAL_BUTTON_TEXTS = (
    "got it",
    "accept all",
    "accept cookies",
    "i agree",
    "agree",
    "close",
    "dismiss",
)
COOKIE_CONSENT_SELECTORS = (
    "#onetrust-accept-btn-handler",
    ".cc-btn.cc-dismiss",
    '[data-testid="cookie-policy-dialog-accept-button"]',
    'button[class*="cookie"]',
    'button[class*="consent"]',
    '[class*="cookie"] button',
    '[class*="consent"] button',
)
OVERLAY_HIDE_SELECTORS = (
    ".global-important-message-overlay",
    '[class*="cookie-banner"]',
    '[class*="consent-banner"]',
    '[class*="overlay"][class*="message"]',
    '[class*="cookie-overlay"]',
    '[class*="gdpr"]',
)

# Section expansion
DEFAULT_EXPAND_SELECTORS = (
    ".ui-accordion-header",
    'div[role="tab"][aria-expanded="false"]',
    '[data-toggle="collapse"]',
    '[aria-expanded="false"]:not(.dropdown-toggle)',
    '[class*="collapsible"]',
    '[class*="expandable"]',
    'button[class*="toggle"]:not(.dropdown-toggle)',
    'button[class*="show"]',
    'button[class*="more"]',
    "summary",
    ".accordion-header",
    ".collapse-header",
    ".panel-heading",
    ".card-header[data-toggle]",
    '[class*="faq"] button',
    '[class*="faq"] [role="button"]',
    '[class*="contact"] [aria-expanded="false"]',
)

# Autoscroll
SCROLL_STEP_PX = 300
SCROLL_INTERVAL_MS = 100
SCROLL_MAX_STEPS = 20

# Contact discovery
CONTACT_LINK_TEXTS = (
    "contact",
    "contact us",
    "get in touch",
    "reach us",
    "reach out",
    "support",
    "help",
    "customer service",
    "customer support",
    "enquiry",
    "enquiries",
    "inquiry",
)
CONTACT_CLICK_LABELS = ("Contact Us", "Contact", "Support", "Help", "Get in Touch")
CONTACT_URL_PATTERN = r"contact|support|help|enquir|get-in-touch|reach-us"
CONTACT_PAGE_RE = re.compile(r"contact|support|help|get-in-touch", re.IGNORECASE)

# Client-rendering heuristics
JS_FRAMEWORK_PATTERNS = (
    re.compile(r"__NEXT_DATA__|_next/static|react-root", re.IGNORECASE),
    re.compile(r"__VUE_|vue-app|nuxt", re.IGNORECASE),
    re.compile(r"ng-app|angular|ng-version", re.IGNORECASE),
    re.compile(r"data-reactroot|data-v-|ng-binding", re.IGNORECASE),
    re.compile(r'lazy-load|data-src|loading="lazy"', re.IGNORECASE),
    re.compile(r'aria-expanded="false"|data-toggle="collapse"|accordion', re.IGNORECASE),
)
EXPANDABLE_RE = re.compile(r'aria-expanded="false"|data-toggle="collapse"|accordion|collapsible', re.IGNORECASE)
VISIBLE_PHONE_RE = re.compile(r"(?:tel:|href=\"tel:)?\+?[\d\s\-().]{10,}", re.IGNORECASE)
PHONE_LABEL_RE = re.compile(r"phone|call|telephone|hotline|dial", re.IGNORECASE)

# RDAP servers by TLD; None marks TLDs that go straight to WHOIS
RDAP_BOOTSTRAP_URL = "https://rdap.org/"
RDAP_SERVERS: Dict[str, Optional[str]] = {
    "com": "https://rdap.verisign.com/com/v1/",
    "net": "https://rdap.verisign.com/net/v1/",
    "org": "https://rdap.publicinterestregistry.org/rdap/",
    "info": "https://rdap.afilias.net/rdap/info/",
    "biz": "https://rdap.nic.biz/",
    "name": "https://rdap.verisign.com/name/v1/",
    "pro": "https://rdap.afilias.net/rdap/pro/",
    "shop": "https://rdap.gmoregistry.net/rdap/",
    "store": "https://rdap.centralnic.com/store/",
    "online": "https://rdap.centralnic.com/online/",
    "site": "https://rdap.centralnic.com/site/",
    "xyz": "https://rdap.centralnic.com/xyz/",
    "club": "https://rdap.nic.club/",
    "app": "https://rdap.nic.google/",
    "dev": "https://rdap.nic.google/",
    "uk": "https://rdap.nominet.uk/uk/",
    "ca": "https://rdap.ca.fury.ca/rdap/",
    "de": "https://rdap.denic.de/",
    "nl": "https://rdap.sidn.nl/",
    "eu": "https://rdap.eurid.eu/",
    "io": None,
    "co": None,
    "au": None,
    "nz": None,
    "cn": None,
    "ru": None,
    "sg": None,
    "my": None,
    "id": None,
    "th": None,
    "ph": None,
    "vn": None,
    "in": None,
    "hk": None,
    "tw": None,
    "kr": None,
    "jp": None,
}
