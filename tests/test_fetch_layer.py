import asyncio

import pytest

from siteintel.core.keys import METHOD_BROWSER, SOURCE_HOMEPAGE_BROWSER
from siteintel.workflows import fetch_layer
from siteintel.workflows.content_store import DnsData, RdapData, TlsData, create_content_store
from siteintel.workflows.fetch_layer import FetchLayer, FetchLayerConfig, detect_bot_challenge_page
from siteintel.workflows.intel_utils import InvalidTargetError
from siteintel.workflows.web_fetch import FetchResult

HOME = "https://example.com/"

ROBOTS = """User-agent: *
Disallow: /private
Sitemap: https://example.com/sitemap.xml
"""

URLSET = """<urlset>
<url><loc>https://example.com/</loc></url>
<url><loc>https://example.com/about</loc></url>
</urlset>"""

INDEX = """<sitemapindex>
<sitemap><loc>https://example.com/sitemap-a.xml</loc></sitemap>
<sitemap><loc>https://example.com/sitemap-b.xml</loc></sitemap>
</sitemapindex>"""


class FakeHttp:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []
        self.session = None

    async def fetch(self, url, *, timeout_ms=None, follow_redirects=True):
        self.calls.append(url)
        route = self.routes.get(url, (404, None))
        if isinstance(route, FetchResult):
            return route
        status, body = route
        return FetchResult(
            url=url,
            final_url=url,
            status_code=status,
            content_type="text/html",
            content=body if 200 <= status < 300 else None,
        )


class FakeBrowser:
    def __init__(self, content="<html><body>rendered by browser</body></html>"):
        self.content = content
        self.calls = []

    async def fetch(self, url, config=None):
        self.calls.append(url)
        return FetchResult(
            url=url,
            final_url=url,
            fetch_method=METHOD_BROWSER,
            status_code=200 if self.content else None,
            content=self.content,
            error_message=None if self.content else "Browser timeout",
        )


def _patch_probes(monkeypatch, *, dns_ok=True, https_ok=True):
    calls = {"dns": 0, "tls": 0, "rdap": 0}

    async def fake_dns(domain, *args, **kwargs):
        calls["dns"] += 1
        if dns_ok:
            return DnsData(a_records=["93.184.216.34"], dns_ok=True)
        return DnsData(error="NXDOMAIN")

    async def fake_tls(domain, *args, **kwargs):
        calls["tls"] += 1
        if https_ok:
            return TlsData(https_ok=True, cert_verified=True, cert_issuer="Example CA")
        return TlsData(error="Connection refused")

    async def fake_rdap(domain, *args, **kwargs):
        calls["rdap"] += 1
        return RdapData(rdap_available=True, source="rdap", registration_date="2000-01-01T00:00:00Z")

    monkeypatch.setattr(fetch_layer, "probe_dns", fake_dns)
    monkeypatch.setattr(fetch_layer, "probe_tls", fake_tls)
    monkeypatch.setattr(fetch_layer, "lookup_rdap", fake_rdap)
    return calls


def _routes(**overrides):
    routes = {
        HOME: (200, "<html><body><h1>Welcome</h1><a href='/about'>About</a></body></html>"),
        "https://example.com/robots.txt": (200, ROBOTS),
        "https://example.com/sitemap.xml": (200, URLSET),
        "https://example.com/privacy": (200, "<html><body>Privacy</body></html>"),
    }
    routes.update(overrides)
    return routes


def _run(layer, config=None, store=None):
    return asyncio.run(layer.run(config or FetchLayerConfig(scan_id="scan-1", url="example.com"), store))


def test_healthy_site_populates_store(monkeypatch):
    _patch_probes(monkeypatch)
    http = FakeHttp(_routes())
    layer = FetchLayer(http=http)

    store = _run(layer)

    assert store.target_url == HOME
    assert store.target_domain == "example.com"
    assert store.homepage.status_code == 200
    assert store.bot_protection_detected is False
    assert store.used_browser_fallback is False
    assert store.robots_txt.disallowed_paths == ["/private"]
    assert [s.url for s in store.sitemaps] == ["https://example.com/sitemap.xml"]
    assert store.get_total_sitemap_url_count() == 2
    assert store.successful_policy_paths() == ["/privacy"]
    assert store.has_dns_ok() and store.has_https_ok()
    assert store.rdap.source == "rdap"
    assert store.fetch_errors == []
    sources = {r.source for r in layer.sink.fetches}
    assert {"homepage", "robots", "sitemap", "policy_check"} <= sources
    assert sorted(a.type for a in layer.sink.artifacts) == ["homepage_html", "homepage_text"]


def test_forbidden_with_healthy_infra_uses_browser(monkeypatch):
    _patch_probes(monkeypatch)
    browser = FakeBrowser()
    layer = FetchLayer(http=FakeHttp(_routes(**{HOME: (403, None)})), browser=browser)

    store = _run(layer)

    assert store.bot_protection_detected is True
    assert store.used_browser_fallback is True
    assert browser.calls == [HOME]
    assert store.homepage.fetch_method == METHOD_BROWSER
    assert "rendered by browser" in store.homepage_text()
    assert any(r.source == SOURCE_HOMEPAGE_BROWSER for r in layer.sink.fetches)


def test_forbidden_fallback_failure_still_marks_fallback(monkeypatch):
    _patch_probes(monkeypatch)
    layer = FetchLayer(http=FakeHttp(_routes(**{HOME: (403, None)})), browser=None)

    store = _run(layer)

    assert store.bot_protection_detected is True
    assert store.used_browser_fallback is True
    assert store.homepage.status_code == 403
    assert store.homepage.content is None
    messages = store.fetch_error_messages()
    assert any("Browser fallback failed" in m for m in messages)
    # the rest of the scan still ran
    assert store.robots_txt.ok


def test_forbidden_without_dns_is_not_bot_protection(monkeypatch):
    _patch_probes(monkeypatch, dns_ok=False)
    browser = FakeBrowser()
    layer = FetchLayer(http=FakeHttp(_routes(**{HOME: (403, None)})), browser=browser)

    store = _run(layer)

    assert store.bot_protection_detected is False
    assert store.used_browser_fallback is False
    assert browser.calls == []
    assert any(e.resource == "dns" and e.recoverable for e in store.fetch_errors)


def test_challenge_page_goes_to_browser(monkeypatch):
    _patch_probes(monkeypatch)
    challenge = "<html><title>Just a moment...</title></html>"
    browser = FakeBrowser()
    layer = FetchLayer(http=FakeHttp(_routes(**{HOME: (200, challenge)})), browser=browser)

    store = _run(layer)

    assert browser.calls == [HOME]
    assert store.used_browser_fallback is True
    assert store.bot_protection_detected is False
    assert store.homepage.fetch_method == METHOD_BROWSER


def test_tls_error_goes_to_browser(monkeypatch):
    _patch_probes(monkeypatch)
    broken = FetchResult(url=HOME, final_url=HOME, error_message="SSL: CERTIFICATE_VERIFY_FAILED")
    browser = FakeBrowser()
    layer = FetchLayer(http=FakeHttp(_routes(**{HOME: broken})), browser=browser)

    store = _run(layer)

    assert browser.calls == [HOME]
    assert store.homepage.fetch_method == METHOD_BROWSER


def test_homepage_transport_error_is_not_recoverable(monkeypatch):
    _patch_probes(monkeypatch)
    broken = FetchResult(url=HOME, final_url=HOME, error_message="Request timeout")
    layer = FetchLayer(http=FakeHttp(_routes(**{HOME: broken})))

    store = _run(layer)

    homepage_errors = [e for e in store.fetch_errors if e.resource == "homepage"]
    assert homepage_errors and homepage_errors[0].recoverable is False
    assert homepage_errors[0].message == "Request timeout"
    assert store.used_browser_fallback is False


def test_sitemap_index_children_are_fetched(monkeypatch):
    _patch_probes(monkeypatch)
    robots = "User-agent: *\nSitemap: https://example.com/sitemap_index.xml\n"
    http = FakeHttp(
        _routes(
            **{
                "https://example.com/robots.txt": (200, robots),
                "https://example.com/sitemap_index.xml": (200, INDEX),
                "https://example.com/sitemap-a.xml": (200, URLSET),
                "https://example.com/sitemap-b.xml": (200, URLSET),
            }
        )
    )

    store = _run(FetchLayer(http=http))

    by_url = {s.url: s for s in store.sitemaps}
    assert by_url["https://example.com/sitemap_index.xml"].is_index is True
    assert "https://example.com/sitemap-a.xml" in by_url
    assert "https://example.com/sitemap-b.xml" in by_url
    assert store.get_total_sitemap_url_count() == 4


def test_default_sitemap_paths_without_robots(monkeypatch):
    _patch_probes(monkeypatch)
    http = FakeHttp(_routes(**{"https://example.com/robots.txt": (404, None)}))

    store = _run(FetchLayer(http=http))

    assert "https://example.com/sitemap.xml" in http.calls
    assert "https://example.com/sitemap_index.xml" in http.calls
    assert store.robots_txt.ok is False
    robots_errors = [e for e in store.fetch_errors if e.resource == "robots"]
    assert robots_errors and robots_errors[0].recoverable is True


def test_rerun_keeps_earlier_successes(monkeypatch):
    _patch_probes(monkeypatch)
    http = FakeHttp(_routes())
    layer = FetchLayer(http=http)
    store = _run(layer)
    assert store.has_https_ok()

    async def failing_dns(domain, *args, **kwargs):
        raise RuntimeError("resolver exploded")

    async def failing_tls(domain, *args, **kwargs):
        return TlsData(error="Connection reset")

    monkeypatch.setattr(fetch_layer, "probe_dns", failing_dns)
    monkeypatch.setattr(fetch_layer, "probe_tls", failing_tls)

    again = _run(layer, store=store)

    assert again is store
    assert store.has_dns_ok()
    assert store.tls.cert_issuer == "Example CA"
    assert store.homepage.status_code == 200
    assert len(store.sitemaps) == 1
    assert {e.resource for e in store.fetch_errors} == {"dns", "tls"}
    assert all(e.recoverable for e in store.fetch_errors)


def test_skip_flags(monkeypatch):
    calls = _patch_probes(monkeypatch)
    http = FakeHttp(_routes())
    config = FetchLayerConfig(
        scan_id="scan-1",
        url="https://example.com",
        skip_dns=True,
        skip_tls=True,
        skip_rdap=True,
        skip_robots=True,
        skip_sitemaps=True,
        skip_policy_pages=True,
    )

    store = _run(FetchLayer(http=http), config)

    assert calls == {"dns": 0, "tls": 0, "rdap": 0}
    assert http.calls == [HOME]
    assert store.dns is None and store.robots_txt is None


def test_invalid_target_fails_before_network(monkeypatch):
    _patch_probes(monkeypatch)
    http = FakeHttp(_routes())
    with pytest.raises(InvalidTargetError):
        _run(FetchLayer(http=http), FetchLayerConfig(scan_id="scan-1", url="ftp://example.com"))
    assert http.calls == []


def test_store_from_another_scan_is_rejected(monkeypatch):
    _patch_probes(monkeypatch)
    store = create_content_store("scan-other", HOME, "example.com")
    with pytest.raises(ValueError):
        _run(FetchLayer(http=FakeHttp(_routes())), store=store)


def test_detect_bot_challenge_page():
    assert detect_bot_challenge_page("<script>window._cf_chl_opt={}</script>")
    assert detect_bot_challenge_page("<p>Please Enable JavaScript</p>")
    assert not detect_bot_challenge_page("Enable JavaScript " + "x" * 20000)
    assert not detect_bot_challenge_page(None)
