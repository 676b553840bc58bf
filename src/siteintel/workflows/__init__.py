"""High-level exports for the siteintel workflows."""

from .browser_driver import BrowserDriver, BrowserFetchConfig, BrowserHandle, ContactLink
from .content_store import ContentStore, FetchedPage, create_content_store
from .discovery import DiscoveryCrawler, DiscoveryResult, run_discovery_pipeline
from .domain_policy import DEFAULT_POLICY, DomainPolicy
from .fetch_layer import FetchLayer, FetchLayerConfig, execute_fetch_layer
from .fetch_log import FanoutSink, FetchSink, JsonlSink, MemorySink
from .scanner import run_discovery, run_scan
from .web_fetch import FetchConfig, FetchResult, HttpFetcher

__all__ = [
    "DEFAULT_POLICY",
    "BrowserDriver",
    "BrowserFetchConfig",
    "BrowserHandle",
    "ContactLink",
    "ContentStore",
    "DiscoveryCrawler",
    "DiscoveryResult",
    "DomainPolicy",
    "FanoutSink",
    "FetchConfig",
    "FetchLayer",
    "FetchLayerConfig",
    "FetchResult",
    "FetchSink",
    "FetchedPage",
    "HttpFetcher",
    "JsonlSink",
    "MemorySink",
    "create_content_store",
    "execute_fetch_layer",
    "run_discovery",
    "run_discovery_pipeline",
    "run_scan",
]
