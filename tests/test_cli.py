import json

from typer.testing import CliRunner

from siteintel import cli
from siteintel.workflows.content_store import create_content_store
from siteintel.workflows.discovery import DiscoveryResult

runner = CliRunner()


def test_minimal_help_and_find():
    result = runner.invoke(cli.app, [])
    assert result.exit_code == 0
    assert "siteintel scan" in result.output

    found = runner.invoke(cli.app, ["--find", "robots"])
    assert found.exit_code == 0
    assert "--ignore-robots" in found.output


def test_scan_invalid_target_exits_2():
    result = runner.invoke(cli.app, ["scan", "ftp://example.com"])
    assert result.exit_code == 2


def test_scan_unknown_skip_exits_2():
    result = runner.invoke(cli.app, ["scan", "example.com", "--skip", "ports"])
    assert result.exit_code == 2


def test_scan_fatal_error_exits_3(monkeypatch):
    def boom(url, **kwargs):
        raise RuntimeError("event loop exploded")

    monkeypatch.setattr(cli, "run_scan", boom)
    result = runner.invoke(cli.app, ["scan", "example.com"])
    assert result.exit_code == 3


def test_scan_json_and_out(monkeypatch, tmp_path):
    seen = {}

    def fake_run_scan(url, **kwargs):
        seen.update(kwargs)
        return create_content_store(kwargs["scan_id"], "https://example.com/", "example.com")

    monkeypatch.setattr(cli, "run_scan", fake_run_scan)
    result = runner.invoke(
        cli.app,
        ["scan", "example.com", "--json", "--no-browser", "--skip", "dns,tls", "--out", str(tmp_path)],
    )
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["target_domain"] == "example.com"
    assert seen["use_browser"] is False
    assert seen["skip"] == ["dns", "tls"]
    assert (tmp_path / "summary.json").exists()
    assert (tmp_path / "content_store.json").exists()


def test_discover_passes_policy_overrides(monkeypatch):
    seen = {}

    def fake_run_discovery(url, **kwargs):
        seen.update(kwargs)
        return DiscoveryResult(crawled_pages={"https://example.com/": "<html></html>"})

    monkeypatch.setattr(cli, "run_discovery", fake_run_discovery)
    result = runner.invoke(
        cli.app,
        ["discover", "example.com", "--max-pages", "5", "--delay-ms", "250", "--ignore-robots", "--json"],
    )
    assert result.exit_code == 0
    policy = seen["policy"]
    assert policy.max_pages_per_scan == 5
    assert policy.crawl_delay_ms == 250
    assert policy.enforce_robots is False
    assert json.loads(result.stdout)["crawled_urls"] == ["https://example.com/"]


def test_doctor_command_json(tmp_path):
    result = runner.invoke(cli.app, ["doctor", "--json", "--out", str(tmp_path)])
    assert result.exit_code in (0, 2)
    payload = json.loads(result.stdout)
    assert {c["name"] for c in payload["checks"]} >= {"playwright", "dnspython", "whois", "output_dir"}
