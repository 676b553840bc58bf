from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer

from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.domain_policy import DEFAULT_POLICY
from .workflows.fetch_log import FanoutSink, FetchSink, JsonlSink, MemorySink
from .workflows.intel_utils import InvalidTargetError
from .workflows.scanner import (
    SKIP_CHOICES,
    build_scan_summary,
    generate_scan_id,
    run_discovery,
    run_scan,
    write_discovery_output,
    write_scan_outputs,
)

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """Siteintel (website intel acquisition)

Usage:
  siteintel scan <url> [--out <DIR>] [--json] [--no-browser] [--skip <NAME>]
  siteintel discover <url> [--max-pages N] [--delay-ms N] [--ignore-robots] [--out <DIR>] [--json]
  siteintel doctor

Common options:
  --out <DIR>     Write summary, store and fetch log into this directory.
  --json          Print the summary JSON to stdout only.
  --no-browser    Never launch the headless browser fallback.
  --verbose       Debug logging on stderr.

Discoverability:
  --help-full     Expanded help + env vars + artifacts.
  --find <query>  Search commands, flags, env vars, artifacts.
  --doctor        Run environment diagnostics and exit.
"""


def _help_full() -> str:
    return f"""Siteintel CLI

Commands:
  scan       Fetch homepage, robots.txt, sitemaps, policy pages, DNS, TLS and RDAP for one target.
  discover   Crawl a bounded page set within robots.txt and find the contact page.
  doctor     Print environment and dependency diagnostics.

Skip names (--skip, repeatable or CSV):
  {", ".join(SKIP_CHOICES)}

Artifacts (--out):
  summary.json        Scan summary (counts, flags, error totals).
  content_store.json  Full ContentStore snapshot (page bodies omitted).
  discovery.json      Discovery result (discover only).
  fetch_log.jsonl     One record per fetch attempt, robots-blocked ones included.
  artifacts.jsonl     Homepage HTML/text snippets.

Important env vars:
  SITEINTEL_REQUEST_TIMEOUT_MS
  SITEINTEL_CRAWL_DELAY_MS
  SITEINTEL_MAX_PAGES
  SITEINTEL_ALLOW_SUBDOMAINS
  SITEINTEL_RESPECT_ROBOTS
  SITEINTEL_ALLOW_ROBOTS_DISALLOWED
  SITEINTEL_DISABLE_BROWSER
  SITEINTEL_BROWSER_HEADED

Exit codes:
  0 ok, 2 invalid target or bad option, 3 fatal error.

Troubleshooting:
  - If Playwright isn't installed, browser fallbacks are skipped.
  - A missing `whois` binary only affects TLDs without RDAP.
"""


_FIND_INDEX = [
    ("command", "scan", "Populate a content store for one target."),
    ("command", "discover", "Crawl pages within robots.txt and find contact links."),
    ("command", "doctor", "Print environment and dependency diagnostics."),
    ("flag", "--out", "Write summary, store and fetch log into this directory."),
    ("flag", "--json", "Print summary JSON to stdout only."),
    ("flag", "--no-browser", "Never launch the headless browser fallback."),
    ("flag", "--skip", "Skip a phase: dns,tls,rdap,robots,sitemaps,policy_pages."),
    ("flag", "--max-pages", "Crawl page budget for discover."),
    ("flag", "--delay-ms", "Minimum delay between crawl batches."),
    ("flag", "--ignore-robots", "Do not enforce robots.txt during discover."),
    ("flag", "--verbose", "Debug logging on stderr."),
    ("flag", "--help-full", "Expanded help, env vars, artifacts."),
    ("flag", "--find", "Search commands, flags, env vars, artifacts."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("env", "SITEINTEL_REQUEST_TIMEOUT_MS", "Per-request timeout, clamped to 1000..10000."),
    ("env", "SITEINTEL_CRAWL_DELAY_MS", "Default delay between crawl batches."),
    ("env", "SITEINTEL_MAX_PAGES", "Default crawl page budget."),
    ("env", "SITEINTEL_ALLOW_SUBDOMAINS", "Treat subdomains as in scope."),
    ("env", "SITEINTEL_RESPECT_ROBOTS", "Enforce robots.txt rules."),
    ("env", "SITEINTEL_ALLOW_ROBOTS_DISALLOWED", "Crawl robots-disallowed paths."),
    ("env", "SITEINTEL_DISABLE_BROWSER", "Disable the browser fallback."),
    ("env", "SITEINTEL_BROWSER_HEADED", "Launch the browser with a window."),
    ("artifact", "summary.json", "Scan summary."),
    ("artifact", "content_store.json", "Content store snapshot."),
    ("artifact", "discovery.json", "Discovery result."),
    ("artifact", "fetch_log.jsonl", "Fetch attempt log."),
    ("artifact", "artifacts.jsonl", "Homepage snippets."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _parse_skip(values: Optional[List[str]]) -> List[str]:
    names: List[str] = []
    for value in values or []:
        names.extend(token.strip() for token in value.split(",") if token.strip())
    unknown = sorted(n for n in names if n.lower().replace("-", "_") not in SKIP_CHOICES)
    if unknown:
        raise typer.BadParameter(f"Unknown skip option(s): {', '.join(unknown)}")
    return names


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _make_sink(out: Optional[Path]) -> FetchSink:
    if out is None:
        return MemorySink()
    return FanoutSink(MemorySink(), JsonlSink(out))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars, artifacts."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
) -> None:
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd(
    out: Optional[Path] = typer.Option(None, "--out", help="Output directory to check for writability."),
    json_out: bool = typer.Option(False, "--json", help="Print the report JSON to stdout only."),
) -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report(out_dir=out)
    if json_out:
        sys.stdout.write(json.dumps(report, ensure_ascii=False) + "\n")
    else:
        typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("scan", add_help_option=True)
def scan_cmd(
    url: str = typer.Argument(..., help="Target URL or bare domain."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write artifacts into this directory."),
    json_out: bool = typer.Option(False, "--json", help="Print summary JSON to stdout only."),
    no_browser: bool = typer.Option(False, "--no-browser", help="Never launch the browser fallback."),
    skip: Optional[List[str]] = typer.Option(None, "--skip", help="Skip a phase (repeatable or CSV)."),
    include_content: bool = typer.Option(False, "--include-content", help="Keep page bodies in content_store.json."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr."),
) -> None:
    _configure_logging(verbose)
    skip_names = _parse_skip(skip)
    try:
        store = run_scan(
            url,
            scan_id=generate_scan_id(),
            sink=_make_sink(out),
            use_browser=not no_browser,
            skip=skip_names,
        )
    except InvalidTargetError as exc:
        if not json_out:
            typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    summary = build_scan_summary(store)
    if out is not None:
        write_scan_outputs(store, out, include_content=include_content)
    if json_out:
        sys.stdout.write(json.dumps(summary, ensure_ascii=False) + "\n")
    else:
        for key, value in summary.items():
            typer.echo(f"{key}: {value}")
        for message in store.fetch_error_messages():
            typer.echo(f"  ! {message}")
    raise typer.Exit(code=0)


@app.command("discover", add_help_option=True)
def discover_cmd(
    url: str = typer.Argument(..., help="Target URL or bare domain."),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Crawl page budget."),
    delay_ms: Optional[int] = typer.Option(None, "--delay-ms", help="Minimum delay between crawl batches."),
    ignore_robots: bool = typer.Option(False, "--ignore-robots", help="Do not enforce robots.txt."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write artifacts into this directory."),
    json_out: bool = typer.Option(False, "--json", help="Print discovery JSON to stdout only."),
    no_browser: bool = typer.Option(False, "--no-browser", help="Never launch the browser fallback."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr."),
) -> None:
    _configure_logging(verbose)
    policy = DEFAULT_POLICY.with_overrides(
        max_pages_per_scan=max_pages,
        crawl_delay_ms=delay_ms,
        allow_robots_disallowed=True if ignore_robots else None,
    )
    try:
        result = run_discovery(
            url,
            scan_id=generate_scan_id(),
            policy=policy,
            sink=_make_sink(out),
            use_browser=not no_browser,
        )
    except InvalidTargetError as exc:
        if not json_out:
            typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    payload = result.to_dict()
    if out is not None:
        write_discovery_output(result, out)
    if json_out:
        sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    else:
        typer.echo(f"crawled: {len(result.crawled_pages)}")
        typer.echo(f"discovered: {len(result.discovered_urls)}")
        typer.echo(f"contact_page: {result.contact_page_url or '-'}")
    raise typer.Exit(code=0)


if __name__ == "__main__":
    app()
