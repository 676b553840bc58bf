import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from siteintel.workflows import rdap_lookup
from siteintel.workflows.content_store import RdapData
from siteintel.workflows.rdap_lookup import (
    calculate_age,
    parse_date,
    parse_rdap_response,
    parse_whois_output,
    rdap_server_for,
)

RDAP_PAYLOAD = {
    "objectClassName": "domain",
    "ldhName": "EXAMPLE.TEST",
    "status": ["client transfer prohibited"],
    "events": [
        {"eventAction": "registration", "eventDate": "1995-08-14T04:00:00Z"},
        {"eventAction": "expiration", "eventDate": "2030-08-13T04:00:00Z"},
        {"eventAction": "last changed", "eventDate": "2024-08-14T07:01:38Z"},
    ],
    "entities": [
        {"roles": ["technical"], "handle": "TECH-1"},
        {
            "roles": ["registrar"],
            "handle": "376",
            "vcardArray": ["vcard", [["version", {}, "text", "4.0"], ["fn", {}, "text", "RESERVED-Internet Assigned Numbers Authority"]]],
        },
    ],
}

WHOIS_TEXT = """
Domain Name: EXAMPLE.IO
Registrar: Example Registrar, LLC
Creation Date: 2011-03-02T10:00:00Z
Registry Expiry Date: 2031-03-02T10:00:00Z
"""


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2020-05-01", "2020-05-01T00:00:00Z"),
        ("2020-05-01T12:30:00Z", "2020-05-01T12:30:00Z"),
        ("2020/05/01", "2020-05-01T00:00:00Z"),
        ("01.05.2020", "2020-05-01T00:00:00Z"),
        ("01-May-2020", "2020-05-01T00:00:00Z"),
        ("1 May 2020", "2020-05-01T00:00:00Z"),
        ("May 1, 2020", "2020-05-01T00:00:00Z"),
        ("September 30 2019", "2019-09-30T00:00:00Z"),
        ("2020-05-01T12:30:00+02:00", "2020-05-01T10:30:00Z"),
        ("02.03.2020", "2020-03-02T00:00:00Z"),
    ],
)
def test_parse_date_formats(raw, expected):
    assert parse_date(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "yesterday", "31.02.2020", "01-Foo-2020"])
def test_parse_date_rejects_unknown(raw):
    assert parse_date(raw) is None


def test_calculate_age():
    now = datetime(2021, 1, 1, tzinfo=timezone.utc)
    years, days = calculate_age("2020-01-01T00:00:00Z", now=now)
    assert days == 366
    assert years == 1.0
    assert calculate_age("not a date") == (None, None)
    assert calculate_age("2020-01-01T00:00:00.000Z", now=now) == (1.0, 366)


def test_parse_whois_output():
    data = parse_whois_output(WHOIS_TEXT)
    assert data.source == "whois"
    assert data.rdap_available is True
    assert data.registration_date == "2011-03-02T10:00:00Z"
    assert data.expiration_date == "2031-03-02T10:00:00Z"
    assert data.registrar == "Example Registrar, LLC"
    assert data.domain_age_days > 3000


def test_parse_whois_output_without_dates():
    data = parse_whois_output("No match for domain")
    assert data.error == "Could not parse dates from WHOIS output"
    assert data.source is None
    assert data.rdap_available is False


def test_parse_whois_output_without_registration():
    data = parse_whois_output("Registry Expiry Date: 2031-03-02\n")
    assert data.error == "Could not get registration date from WHOIS"
    assert data.expiration_date == "2031-03-02T00:00:00Z"
    assert data.rdap_available is False


def test_parse_rdap_response():
    data = parse_rdap_response(RDAP_PAYLOAD, "https://rdap.example/")
    assert data.source == "rdap"
    assert data.rdap_server == "https://rdap.example/"
    assert data.registration_date == "1995-08-14T04:00:00Z"
    assert data.expiration_date == "2030-08-13T04:00:00Z"
    assert data.last_changed_date == "2024-08-14T07:01:38Z"
    assert data.registrar == "RESERVED-Internet Assigned Numbers Authority"
    assert data.status == ["client transfer prohibited"]
    assert data.domain_age_years > 25


def test_registrar_falls_back_to_handle():
    payload = {"entities": [{"roles": ["registrar"], "handle": "REG-9"}]}
    assert parse_rdap_response(payload, "s").registrar == "REG-9"


def test_rdap_server_routing():
    assert rdap_server_for("example.com") == (True, "https://rdap.verisign.com/com/v1/")
    assert rdap_server_for("startup.io") == (False, None)
    assert rdap_server_for("example.museum") == (True, "https://rdap.org/")


def _patch_whois(monkeypatch):
    calls = []

    async def fake_whois(domain, timeout=15):
        calls.append(domain)
        return RdapData(rdap_available=True, source="whois")

    monkeypatch.setattr(rdap_lookup, "lookup_whois", fake_whois)
    return calls


def _rdap_app():
    async def domain(request):
        name = request.match_info["name"]
        if name == "example.test":
            return web.json_response(RDAP_PAYLOAD, content_type="application/rdap+json")
        if name == "broken.test":
            return web.Response(text="<html>not json</html>", content_type="text/html")
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/domain/{name}", domain)
    return app


def _lookup(monkeypatch, name):
    async def scenario():
        async with TestServer(_rdap_app()) as server:
            monkeypatch.setitem(rdap_lookup.RDAP_SERVERS, "test", str(server.make_url("/")))
            async with aiohttp.ClientSession() as session:
                return await rdap_lookup.lookup_rdap(name, session)

    return asyncio.run(scenario())


def test_lookup_rdap_success(monkeypatch):
    whois_calls = _patch_whois(monkeypatch)
    data = _lookup(monkeypatch, "example.test")
    assert data.source == "rdap"
    assert data.registrar.startswith("RESERVED")
    assert whois_calls == []


def test_lookup_rdap_not_found_falls_back_to_whois(monkeypatch):
    whois_calls = _patch_whois(monkeypatch)
    data = _lookup(monkeypatch, "missing.test")
    assert data.source == "whois"
    assert whois_calls == ["missing.test"]


def test_lookup_rdap_bad_body_falls_back_to_whois(monkeypatch):
    whois_calls = _patch_whois(monkeypatch)
    data = _lookup(monkeypatch, "broken.test")
    assert data.source == "whois"
    assert whois_calls == ["broken.test"]


def test_whois_only_tld_skips_rdap(monkeypatch):
    whois_calls = _patch_whois(monkeypatch)
    data = asyncio.run(rdap_lookup.lookup_rdap("startup.io", session=None))
    assert data.source == "whois"
    assert whois_calls == ["startup.io"]


def test_missing_whois_binary(monkeypatch):
    async def no_binary(*args, **kwargs):
        raise FileNotFoundError("whois")

    monkeypatch.setattr(rdap_lookup.asyncio, "create_subprocess_exec", no_binary)
    data = asyncio.run(rdap_lookup.lookup_whois("example.io"))
    assert data.error.startswith("WHOIS lookup failed")
    assert data.rdap_available is False
