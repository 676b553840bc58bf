"""Shared enumerations used across siteintel modules, to avoid magic strings."""

from __future__ import annotations

# Fetch methods (FetchResult discriminant)
METHOD_HTTP = "http"
METHOD_BROWSER = "browser"

# Fetch-log sources
SOURCE_HOMEPAGE = "homepage"
SOURCE_HOMEPAGE_BROWSER = "homepage_browser"
SOURCE_ROBOTS = "robots"
SOURCE_SITEMAP = "sitemap"
SOURCE_POLICY = "policy_check"
SOURCE_CRAWL = "crawl"
SOURCE_CONTACT = "contact_page"
SOURCE_CONTACT_BROWSER = "contact_page_browser"

# FetchError resources
RES_HOMEPAGE = "homepage"
RES_ROBOTS = "robots"
RES_SITEMAP = "sitemap"
RES_POLICY = "policy"
RES_DNS = "dns"
RES_TLS = "tls"
RES_RDAP = "rdap"

# Artifact types
ARTIFACT_HOMEPAGE_HTML = "homepage_html"
ARTIFACT_HOMEPAGE_TEXT = "homepage_text"
