"""robots.txt parsing and path-allowed checks.

Only the ``User-agent: *`` group drives access decisions; ``Sitemap:`` lines are
collected globally. Matching is a case-insensitive prefix match where allow
rules win over disallow rules and no match means allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlparse

DEFAULT_AGENT_TOKENS: Tuple[str, ...] = ("*",)


@dataclass
class RobotRules:
    disallowed_paths: List[str] = field(default_factory=list)
    allowed_paths: List[str] = field(default_factory=list)
    sitemap_urls: List[str] = field(default_factory=list)
    crawl_delay_ms: Optional[int] = None


def _split_directive(line: str) -> Optional[Tuple[str, str]]:
    if ":" not in line:
        return None
    key, _, value = line.partition(":")
    return key.strip().lower(), value.strip()


def parse_robots_txt(text: str, agent_tokens: Sequence[str] = DEFAULT_AGENT_TOKENS) -> RobotRules:
    """Parse robots.txt text into :class:`RobotRules`.

    Consecutive ``User-agent`` lines form one group; the group applies when any
    of its agents equals one of ``agent_tokens``. ``Crawl-delay`` is read as
    seconds (fractions allowed) and stored in milliseconds.
    """

    rules = RobotRules()
    tokens = {t.strip().lower() for t in agent_tokens if t.strip()}
    group_agents: List[str] = []
    group_open = False
    applies = False

    for raw_line in (text or "").splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        parsed = _split_directive(line)
        if parsed is None:
            continue
        key, value = parsed

        if key == "user-agent":
            if not group_open:
                group_agents = []
                group_open = True
            group_agents.append(value.lower())
            applies = any(agent in tokens for agent in group_agents)
            continue
        group_open = False

        if key == "sitemap":
            if value and value not in rules.sitemap_urls:
                rules.sitemap_urls.append(value)
            continue
        if not applies:
            continue
        if key == "disallow":
            if value:
                rules.disallowed_paths.append(value)
        elif key == "allow":
            if value:
                rules.allowed_paths.append(value)
        elif key == "crawl-delay":
            try:
                seconds = float(value)
            except ValueError:
                continue
            if seconds >= 0:
                rules.crawl_delay_ms = int(round(seconds * 1000))

    return rules


def is_path_allowed(path: str, rules: Optional[RobotRules]) -> bool:
    """Return True when ``path`` may be fetched under ``rules``.

    Accepts a bare path or a full URL; a missing rule set allows everything.
    """

    if rules is None:
        return True
    target = path or "/"
    if "://" in target:
        parsed = urlparse(target)
        target = parsed.path or "/"
        if parsed.query:
            target = f"{target}?{parsed.query}"
    lowered = target.lower()
    for allowed in rules.allowed_paths:
        if lowered.startswith(allowed.lower()):
            return True
    for disallowed in rules.disallowed_paths:
        if lowered.startswith(disallowed.lower()):
            return False
    return True


def crawl_delay_ms(rules: Optional[RobotRules]) -> Optional[int]:
    if rules is None:
        return None
    return rules.crawl_delay_ms


__all__ = [
    "RobotRules",
    "parse_robots_txt",
    "is_path_allowed",
    "crawl_delay_ms",
]
