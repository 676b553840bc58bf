"""Per-domain authorization policy and its environment-driven default."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

from .intel_config import (
    DEFAULT_REQUEST_TIMEOUT_MS,
    MAX_REQUEST_TIMEOUT_MS,
    MIN_REQUEST_TIMEOUT_MS,
)

load_dotenv(override=True)


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def clamp_timeout_ms(value: int) -> int:
    return max(MIN_REQUEST_TIMEOUT_MS, min(MAX_REQUEST_TIMEOUT_MS, int(value)))


@dataclass(frozen=True, slots=True)
class DomainPolicy:
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    crawl_delay_ms: int = 1000
    max_pages_per_scan: int = 50
    allow_subdomains: bool = True
    respect_robots: bool = True
    allow_robots_disallowed: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "request_timeout_ms", clamp_timeout_ms(self.request_timeout_ms))
        object.__setattr__(self, "crawl_delay_ms", max(0, int(self.crawl_delay_ms)))
        object.__setattr__(self, "max_pages_per_scan", max(1, int(self.max_pages_per_scan)))

    @property
    def enforce_robots(self) -> bool:
        return self.respect_robots and not self.allow_robots_disallowed

    def with_overrides(self, **changes) -> "DomainPolicy":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def policy_from_env() -> DomainPolicy:
    return DomainPolicy(
        request_timeout_ms=_env_int("SITEINTEL_REQUEST_TIMEOUT_MS", DEFAULT_REQUEST_TIMEOUT_MS),
        crawl_delay_ms=_env_int("SITEINTEL_CRAWL_DELAY_MS", 1000),
        max_pages_per_scan=_env_int("SITEINTEL_MAX_PAGES", 50),
        allow_subdomains=_env_bool("SITEINTEL_ALLOW_SUBDOMAINS", "1"),
        respect_robots=_env_bool("SITEINTEL_RESPECT_ROBOTS", "1"),
        allow_robots_disallowed=_env_bool("SITEINTEL_ALLOW_ROBOTS_DISALLOWED", "0"),
    )


DEFAULT_POLICY = policy_from_env()


__all__ = ["DEFAULT_POLICY", "DomainPolicy", "clamp_timeout_ms", "policy_from_env"]
