import asyncio

from siteintel.workflows.browser_driver import (
    BROWSER_DISABLED,
    BrowserDriver,
    BrowserFetchConfig,
    BrowserHandle,
    has_hidden_contact_content,
    is_challenge_markup,
    should_use_browser,
)

CHALLENGE = "<html><title>Just a moment...</title><body>Checking your browser</body></html>"
REAL = "<html><body><h1>Acme Widgets</h1></body></html>"


class TimeoutError(Exception):  # mirrors playwright's class name
    pass


class FakeResponse:
    status = 200
    headers = {"content-type": "text/html; charset=utf-8"}


class FakeLocator:
    def __init__(self, page, label):
        self.page = page
        self.label = label

    @property
    def first(self):
        return self

    async def is_visible(self):
        return self.label in self.page.clickable

    async def click(self, timeout=None):
        self.page.clicked.append(self.label)
        self.page.url = self.page.clickable[self.label]


class FakePage:
    def __init__(self, contents=(REAL,), goto_errors=(), anchors=(), clickable=None):
        self.contents = list(contents)
        self.goto_errors = list(goto_errors)
        self.anchors = list(anchors)
        self.clickable = clickable or {}
        self.gotos = []
        self.waits = []
        self.clicked = []
        self.closed = False
        self.url = "about:blank"

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    def set_default_navigation_timeout(self, ms):
        self.navigation_timeout = ms

    async def add_init_script(self, script):
        self.init_script = script

    async def goto(self, url, wait_until=None, timeout=None):
        self.gotos.append(wait_until)
        if self.goto_errors:
            raise self.goto_errors.pop(0)
        self.url = url
        return FakeResponse()

    async def content(self):
        if isinstance(self.contents[0], Exception):
            raise self.contents[0]
        if len(self.contents) > 1:
            return self.contents.pop(0)
        return self.contents[0]

    async def wait_for_timeout(self, ms):
        self.waits.append(ms)

    async def evaluate(self, script, arg=None):
        if isinstance(arg, dict) and "urlPattern" in arg:
            return list(self.anchors)
        return None

    def locator(self, selector):
        label = selector.split('"')[1]
        return FakeLocator(self, label)

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page):
        self.page = page
        self.closed = False

    async def new_page(self):
        return self.page

    async def close(self):
        self.closed = True


class FakeHandle:
    available = True

    def __init__(self, page):
        self.context = FakeContext(page)
        self.options = []

    async def new_context(self, **kwargs):
        self.options.append(kwargs)
        return self.context


def _fetch(page, config=None):
    handle = FakeHandle(page)
    result = asyncio.run(BrowserDriver(handle).fetch("https://example.com/", config or BrowserFetchConfig()))
    return result, handle


def test_fetch_returns_rendered_markup():
    page = FakePage()
    result, handle = _fetch(page, BrowserFetchConfig(additional_wait_ms=1234))

    assert result.fetch_method == "browser"
    assert result.status_code == 200
    assert result.content == REAL
    assert result.content_type.startswith("text/html")
    assert result.final_url == "https://example.com/"
    assert 1234 in page.waits
    assert handle.options[0]["locale"] == "en-US"
    assert page.closed and handle.context.closed


def test_challenge_wait_polls_until_cleared():
    page = FakePage(contents=[CHALLENGE, CHALLENGE, CHALLENGE, REAL])
    result, _ = _fetch(page, BrowserFetchConfig(additional_wait_ms=0, expand_sections=False))

    assert result.content == REAL
    assert page.waits[:3] == [500, 500, 500]


def test_challenge_budget_runs_out_but_content_is_returned():
    page = FakePage(contents=[CHALLENGE])
    result, _ = _fetch(page, BrowserFetchConfig(additional_wait_ms=0, expand_sections=False))

    assert page.waits.count(500) >= 30
    assert result.content == CHALLENGE
    assert result.error_message is None


def test_networkidle_timeout_retries_with_load():
    page = FakePage(goto_errors=[TimeoutError("networkidle")])
    result, _ = _fetch(page, BrowserFetchConfig(wait_for_network_idle=True))

    assert page.gotos == ["networkidle", "load"]
    assert result.content == REAL


def test_navigation_timeout_maps_to_browser_timeout():
    page = FakePage(goto_errors=[asyncio.TimeoutError()])
    result, handle = _fetch(page)

    assert result.error_message == "Browser timeout"
    assert result.content is None
    assert page.closed and handle.context.closed


def test_other_failures_report_exception_text():
    page = FakePage(contents=[RuntimeError("Target page closed")])
    result, _ = _fetch(page)

    assert result.error_message == "Target page closed"
    assert result.content is None


def test_disabled_handle_reports_error():
    driver = BrowserDriver(BrowserHandle(enabled=False))
    assert driver.available is False
    result = asyncio.run(driver.fetch("https://example.com/"))
    assert result.error_message == BROWSER_DISABLED
    assert result.fetch_method == "browser"


def test_contact_links_from_anchors():
    page = FakePage(anchors=["https://example.com/contact", "https://example.com/contact"])
    links = asyncio.run(BrowserDriver(FakeHandle(page)).find_contact_links("https://example.com/"))

    assert [link.url for link in links] == ["https://example.com/contact"]
    assert links[0].discovered_by_click is False
    assert page.clicked == []


def test_contact_links_by_click_fallback():
    page = FakePage(clickable={"Support": "https://example.com/support-center"})
    links = asyncio.run(BrowserDriver(FakeHandle(page)).find_contact_links("https://example.com/"))

    assert page.clicked == ["Support"]
    assert len(links) == 1
    assert links[0].url == "https://example.com/support-center"
    assert links[0].discovered_by_click is True
    # homepage reloaded after the click navigated away
    assert page.gotos.count("domcontentloaded") == 2


def test_contact_links_survive_navigation_failure():
    page = FakePage(goto_errors=[RuntimeError("net::ERR_NAME_NOT_RESOLVED")])
    links = asyncio.run(BrowserDriver(FakeHandle(page)).find_contact_links("https://example.com/"))
    assert links == []
    assert page.closed


def test_markup_heuristics():
    assert is_challenge_markup(CHALLENGE)
    assert is_challenge_markup("<p>Attention Required!</p><p>Ray ID: 123</p>")
    assert not is_challenge_markup(REAL)
    assert should_use_browser('<div id="__NEXT_DATA__"></div>')
    assert not should_use_browser(REAL)
    assert has_hidden_contact_content('<div class="accordion"></div>', "https://example.com/contact")
    assert has_hidden_contact_content("<p>Call our hotline</p>", "https://example.com/contact")
    assert not has_hidden_contact_content("<p>Call +1 (555) 123-4567</p>", "https://example.com/contact")
    assert not has_hidden_contact_content('<div class="accordion"></div>', "https://example.com/pricing")


class HomeOnlyLocator(FakeLocator):
    async def is_visible(self):
        return self.page.url == "https://example.com/" and await super().is_visible()


class HomeOnlyPage(FakePage):
    def locator(self, selector):
        return HomeOnlyLocator(self, selector.split('"')[1])


def test_click_discovery_returns_home_after_repeat_url():
    page = HomeOnlyPage(
        clickable={
            "Contact Us": "https://example.com/contact",
            "Contact": "https://example.com/contact",
            "Support": "https://example.com/support",
        }
    )
    links = asyncio.run(BrowserDriver(FakeHandle(page)).find_contact_links("https://example.com/"))

    assert page.clicked == ["Contact Us", "Contact", "Support"]
    assert [link.url for link in links] == ["https://example.com/contact", "https://example.com/support"]
    assert page.gotos.count("domcontentloaded") == 4
