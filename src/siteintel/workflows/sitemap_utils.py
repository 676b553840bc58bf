"""Sitemap document parsing (urlset and sitemapindex)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from lxml import etree

from .intel_config import MAX_SITEMAP_DISCOVERED_URLS

logger = logging.getLogger(__name__)


@dataclass
class ParsedSitemap:
    is_index: bool
    url_count: int = 0
    locations: List[str] = field(default_factory=list)


def _parse_root(body: Optional[str]) -> Optional[Any]:
    if not body or not body.strip():
        return None
    parser = etree.XMLParser(ns_clean=True, recover=True, resolve_entities=False)
    try:
        return etree.fromstring(body.strip().encode("utf-8"), parser=parser)
    except etree.XMLSyntaxError as exc:
        logger.debug("unparseable sitemap document: %s", exc)
        return None


def _local_name(element: Any) -> str:
    if not isinstance(element.tag, str):
        return ""
    return etree.QName(element).localname.lower()


def _locations(root: Any) -> List[str]:
    values = (loc.text.strip() for loc in root.iterfind(".//{*}loc") if loc.text)
    return [value for value in values if value]


def is_sitemap_index(body: Optional[str]) -> bool:
    root = _parse_root(body)
    return root is not None and _local_name(root) == "sitemapindex"


def extract_locations(body: Optional[str]) -> List[str]:
    """Return every ``<loc>`` value in any namespace; CDATA and entities are decoded by the parser."""

    root = _parse_root(body)
    return _locations(root) if root is not None else []


def parse_sitemap(body: Optional[str], limit: int = MAX_SITEMAP_DISCOVERED_URLS) -> ParsedSitemap:
    """Classify a sitemap document and collect its locations.

    For an index every child sitemap location is kept; for a urlset the
    ``<url>`` entries are counted and at most ``limit`` locations are kept.
    """

    root = _parse_root(body)
    if root is None:
        return ParsedSitemap(is_index=False)
    if _local_name(root) == "sitemapindex":
        return ParsedSitemap(is_index=True, url_count=0, locations=_locations(root))
    url_count = sum(1 for child in root.iterfind("{*}url"))
    return ParsedSitemap(
        is_index=False,
        url_count=url_count,
        locations=_locations(root)[: max(0, limit)],
    )
