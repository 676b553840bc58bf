from __future__ import annotations

import os
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .domain_policy import DEFAULT_POLICY, DomainPolicy

_SECRET_TOKENS = ("key", "token", "secret", "password", "pass")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _redacted_env_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return redact_value(value) if _is_secret_name(name) else value


def _check_playwright_available() -> bool:
    try:
        from . import browser_driver
        return getattr(browser_driver, "async_playwright", None) is not None
    except Exception:
        return False


def _check_dnspython_available() -> bool:
    try:
        import dns.resolver  # noqa: F401
        return True
    except Exception:
        return False


def _check_writable(path: Path) -> bool:
    try:
        if path.exists():
            return os.access(path, os.W_OK)
        parent = path.parent
        if not parent.exists():
            return False
        return os.access(parent, os.W_OK)
    except Exception:
        return False


def collect_environment_warnings() -> List[Dict[str, str]]:
    warnings: List[Dict[str, str]] = []
    raw_timeout = os.getenv("SITEINTEL_REQUEST_TIMEOUT_MS", "").strip()
    if raw_timeout:
        try:
            value = int(raw_timeout)
        except ValueError:
            value = None
        if value is None or DomainPolicy(request_timeout_ms=value).request_timeout_ms != value:
            warnings.append(
                {
                    "code": "timeout_clamped",
                    "message": f"SITEINTEL_REQUEST_TIMEOUT_MS={raw_timeout} is outside 1000..10000 or not an integer",
                    "remedy": "Use a millisecond value between 1000 and 10000.",
                }
            )
    if os.getenv("SITEINTEL_ALLOW_ROBOTS_DISALLOWED", "0").strip().lower() not in {"0", "false", "no", "off", ""}:
        warnings.append(
            {
                "code": "robots_disabled",
                "message": "robots.txt rules are not enforced for discovery crawls",
                "remedy": "Unset SITEINTEL_ALLOW_ROBOTS_DISALLOWED unless the domain owner authorized it.",
            }
        )
    return warnings


def build_doctor_report(*, out_dir: Optional[Path] = None, policy: DomainPolicy = DEFAULT_POLICY) -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "policy": asdict(policy),
        "environment_warnings": collect_environment_warnings(),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = _redacted_env_value(name, value)
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    playwright_ok = _check_playwright_available()
    add_check(
        "playwright",
        playwright_ok,
        detail="browser fallback enabled" if playwright_ok else "browser fallback disabled",
        remedy="Install Playwright and run `playwright install --with-deps chromium`.",
        level="warn",
    )

    browser_disabled = os.getenv("SITEINTEL_DISABLE_BROWSER")
    if browser_disabled:
        add_check(
            "SITEINTEL_DISABLE_BROWSER",
            True,
            detail="browser fallback switched off by environment",
            level="info",
            value=browser_disabled,
        )

    dns_ok = _check_dnspython_available()
    add_check(
        "dnspython",
        dns_ok,
        detail="DNS probes enabled" if dns_ok else "DNS probes will fail",
        remedy="pip install dnspython",
        level="warn",
    )

    whois_path = shutil.which("whois")
    add_check(
        "whois",
        whois_path is not None,
        detail=whois_path or "WHOIS fallback unavailable for TLDs without RDAP",
        remedy="Install the whois package for your OS.",
        level="info",
    )

    target_dir = Path(out_dir or os.getenv("SITEINTEL_OUT_DIR") or "run/siteintel")
    add_check(
        "output_dir",
        _check_writable(target_dir),
        detail=str(target_dir),
        remedy="Create the output directory or pass --out with a writable location.",
        level="warn",
    )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("Siteintel doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Values are redacted where applicable.")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy:
            lines.append(f"  remedy: {remedy}")
    policy = report.get("policy") or {}
    if policy:
        lines.append("")
        lines.append("Effective policy:")
        for key, value in policy.items():
            lines.append(f"- {key}: {value}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            code = warning.get("code", "warning")
            message = warning.get("message", "")
            remedy = warning.get("remedy", "")
            lines.append(f"- {code}: {message}")
            if remedy:
                lines.append(f"  remedy: {remedy}")
    return "\n".join(lines).rstrip() + "\n"
