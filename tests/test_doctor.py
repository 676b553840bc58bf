from pathlib import Path

from siteintel.workflows import browser_driver, doctor


def _check(report, name):
    return next(c for c in report["checks"] if c["name"] == name)


def test_doctor_reports_missing_playwright(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(browser_driver, "async_playwright", None, raising=False)
    report = doctor.build_doctor_report(out_dir=tmp_path)
    assert _check(report, "playwright")["status"] == "missing"
    assert report["ok"] is False
    assert _check(report, "output_dir")["status"] == "ok"


def test_doctor_includes_policy_and_whois(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(doctor.shutil, "which", lambda name: None)
    report = doctor.build_doctor_report(out_dir=tmp_path)
    whois = _check(report, "whois")
    assert whois["status"] == "missing"
    assert whois["level"] == "info"
    assert report["policy"]["request_timeout_ms"] >= 1000
    text = doctor.format_doctor_report(report)
    assert text.startswith("Siteintel doctor")
    assert "Effective policy:" in text


def test_environment_warnings(monkeypatch):
    monkeypatch.setenv("SITEINTEL_REQUEST_TIMEOUT_MS", "60000")
    monkeypatch.setenv("SITEINTEL_ALLOW_ROBOTS_DISALLOWED", "1")
    codes = {w["code"] for w in doctor.collect_environment_warnings()}
    assert codes == {"timeout_clamped", "robots_disabled"}


def test_redact_value():
    assert doctor.redact_value("abcdefghijklmnop") == "abcd...mnop"
    assert doctor.redact_value("short") == "*****"
    assert doctor.redact_value("") == ""
