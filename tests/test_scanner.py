import json
from pathlib import Path

import pytest

from siteintel.workflows import fetch_layer, scanner
from siteintel.workflows.content_store import DnsData, RdapData, TlsData
from siteintel.workflows.domain_policy import DomainPolicy, policy_from_env
from siteintel.workflows.fetch_log import MemorySink
from siteintel.workflows.scanner import build_fetch_config, build_scan_summary, write_scan_outputs
from siteintel.workflows.web_fetch import FetchResult, HttpFetcher


def test_build_fetch_config_normalizes_and_maps_skips():
    config = build_fetch_config("Example.com", skip=["dns", "policy-pages"])
    assert config.url == "https://example.com/"
    assert config.domain == "example.com"
    assert config.scan_id.startswith("scan-")
    assert config.skip_dns and config.skip_policy_pages
    assert not config.skip_tls


def test_build_fetch_config_rejects_unknown_skip():
    with pytest.raises(ValueError):
        build_fetch_config("example.com", skip=["ports"])


def test_policy_clamps_and_env(monkeypatch):
    assert DomainPolicy(request_timeout_ms=50).request_timeout_ms == 1000
    assert DomainPolicy(request_timeout_ms=99999).request_timeout_ms == 10000
    assert DomainPolicy(respect_robots=True, allow_robots_disallowed=True).enforce_robots is False
    monkeypatch.setenv("SITEINTEL_MAX_PAGES", "12")
    monkeypatch.setenv("SITEINTEL_RESPECT_ROBOTS", "0")
    monkeypatch.setenv("SITEINTEL_REQUEST_TIMEOUT_MS", "abc")
    policy = policy_from_env()
    assert policy.max_pages_per_scan == 12
    assert policy.respect_robots is False
    assert policy.request_timeout_ms == 8000
    assert policy.with_overrides(crawl_delay_ms=None, max_pages_per_scan=3).max_pages_per_scan == 3


def _patch_network(monkeypatch):
    async def fake_fetch(self, url, *, timeout_ms=None, follow_redirects=True):
        if url == "https://example.com/":
            return FetchResult(url=url, final_url=url, status_code=200, content="<html><body>Shop</body></html>")
        return FetchResult(url=url, final_url=url, status_code=404)

    async def fake_dns(domain, *args, **kwargs):
        return DnsData(a_records=["10.0.0.1"], dns_ok=True)

    async def fake_tls(domain, *args, **kwargs):
        return TlsData(https_ok=True, cert_verified=True)

    async def fake_rdap(domain, *args, **kwargs):
        return RdapData(rdap_available=True, source="rdap", domain_age_years=3.2)

    monkeypatch.setattr(HttpFetcher, "fetch", fake_fetch)
    monkeypatch.setattr(fetch_layer, "probe_dns", fake_dns)
    monkeypatch.setattr(fetch_layer, "probe_tls", fake_tls)
    monkeypatch.setattr(fetch_layer, "lookup_rdap", fake_rdap)


def test_run_scan_and_summary(monkeypatch, tmp_path: Path):
    _patch_network(monkeypatch)
    sink = MemorySink()

    store = scanner.run_scan("example.com", scan_id="scan-test", sink=sink, use_browser=False)

    assert store.scan_id == "scan-test"
    summary = build_scan_summary(store)
    assert summary["homepage_status"] == 200
    assert summary["homepage_method"] == "http"
    assert summary["dns_ok"] and summary["https_ok"]
    assert summary["rdap_source"] == "rdap"
    assert summary["policy_pages_found"] == 0
    assert summary["bot_protection_detected"] is False
    assert summary["fatal_errors"] == 0
    assert sink.fetches

    paths = write_scan_outputs(store, tmp_path / "out")
    saved = json.loads(paths["store"].read_text(encoding="utf-8"))
    assert saved["scan_id"] == "scan-test"
    assert "content" not in saved["homepage"]
    assert json.loads(paths["summary"].read_text(encoding="utf-8"))["target_domain"] == "example.com"


def test_run_discovery(monkeypatch):
    _patch_network(monkeypatch)

    async def no_pause(delay_ms):
        return None

    monkeypatch.setattr("siteintel.workflows.discovery._pause", no_pause)
    result = scanner.run_discovery("example.com", use_browser=False)
    assert list(result.crawled_pages) == ["https://example.com/"]
    assert result.to_dict()["robots_txt_found"] is False
