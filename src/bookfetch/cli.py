from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .consumer import DEFAULT_CONCURRENCY, load_manifest, run_consumer
from .workflows.assembler import BookRecord
from .workflows.errors import BookFetchError
from .workflows.fetcher import FetchOrchestrator, error_payload, exit_code_for, fetch_book
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.web_fetch import FetchConfig

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """bookfetch (product page metadata)

Usage:
  bookfetch get <url> [--json] [--title <T>] [--author <A>] [--stats]
  bookfetch get-manifest <urls.txt|-> [--out <DIR>] [--json] [--soft-fail] [--concurrency <N>]
  bookfetch doctor

Common options:
  --json          Print the record (or summary) as JSON.
  --title/--author
                  Manual overrides; they win over extracted values and skip the cache.
  --out <DIR>     Write manifest artifacts into this directory (no subdir).
  --soft-fail     Exit 0 even if some items fail.

Discoverability:
  --help-full     Expanded help + env vars + artifacts.
  --find <query>  Search commands, flags, env vars, artifacts.
  --doctor        Run environment diagnostics and exit.
  --verbose       Log pipeline decisions to stderr.
"""


def _help_full() -> str:
    return """bookfetch CLI

Commands:
  get            Fetch one product page and print its record.
  get-manifest   Fetch addresses from a strict line-based manifest (file or stdin).
  doctor         Print route, cache and dependency diagnostics.

Exit codes:
  0  success
  2  invalid address (host not allow-listed or no product identifier)
  3  all routes and the rendered fallback failed (manifest: any item failed)
  4  page fetched but title/author/review count could not be extracted

Artifacts (get-manifest):
  results.jsonl   One line per manifest entry, in manifest order.
  summary.json    Counts, error types, provenance sources and orchestrator stats.
  Walkthrough.md  Human-readable rendering of the summary.

Important env vars:
  BOOKFETCH_ROUTES                comma list of `prefix` or `prefix|raw`
  BOOKFETCH_MAX_ROUTES            routes racing per request (0 = all)
  BOOKFETCH_BASE_TIMEOUT          per-route base timeout (seconds)
  BOOKFETCH_RACE_TIMEOUT          overall race ceiling (seconds)
  BOOKFETCH_FALLBACK_TIMEOUT      rendered fallback timeout (seconds)
  BOOKFETCH_FALLBACK_DISABLE      skip the rendered fallback
  BOOKFETCH_MIN_MARKUP_LENGTH     minimum accepted page length
  BOOKFETCH_ALLOWED_HOSTS         extra allow-listed hosts
  BOOKFETCH_CACHE_TTL             record cache TTL (seconds)
  BOOKFETCH_CACHE_MAX_AGE         hard cache age ceiling (seconds)
  BOOKFETCH_CACHE_MAX_ENTRIES     cache capacity
  BOOKFETCH_CACHE_SWEEP_INTERVAL  background sweep interval (0 disables)
  BOOKFETCH_PLAYWRIGHT_HEADED     headed Chromium for debugging

Troubleshooting:
  - If Playwright isn't installed, the rendered fallback is skipped.
  - Run `bookfetch doctor` to inspect routes (secrets redacted) and cache settings.
"""


_FIND_INDEX = [
    ("command", "get", "Fetch one product page and print its record."),
    ("command", "get-manifest", "Fetch addresses from a manifest file or stdin."),
    ("command", "doctor", "Print route, cache and dependency diagnostics."),
    ("flag", "--json", "Print the record or summary as JSON."),
    ("flag", "--title", "Manual title override."),
    ("flag", "--author", "Manual author override."),
    ("flag", "--stats", "Print orchestrator, cache and route stats after the record."),
    ("flag", "--out", "Write manifest artifacts into this directory."),
    ("flag", "--soft-fail", "Exit 0 even if some items fail."),
    ("flag", "--concurrency", "Concurrent manifest fetches."),
    ("flag", "--help-full", "Expanded help, env vars, artifacts."),
    ("flag", "--find", "Search commands, flags, env vars, artifacts."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("flag", "--verbose", "Log pipeline decisions to stderr."),
    ("env", "BOOKFETCH_ROUTES", "Forwarding routes (prefix or prefix|raw)."),
    ("env", "BOOKFETCH_MAX_ROUTES", "Routes racing per request."),
    ("env", "BOOKFETCH_RACE_TIMEOUT", "Overall race ceiling (seconds)."),
    ("env", "BOOKFETCH_FALLBACK_DISABLE", "Skip the rendered fallback."),
    ("env", "BOOKFETCH_ALLOWED_HOSTS", "Extra allow-listed hosts."),
    ("env", "BOOKFETCH_CACHE_TTL", "Record cache TTL (seconds)."),
    ("env", "BOOKFETCH_CACHE_MAX_ENTRIES", "Record cache capacity."),
    ("artifact", "results.jsonl", "Per-item results in manifest order."),
    ("artifact", "summary.json", "Run summary."),
    ("artifact", "Walkthrough.md", "Human-readable walkthrough."),
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


def _format_record(record: BookRecord) -> str:
    lines = [
        f"title:        {record.title}",
        f"author:       {record.author}",
        f"review_count: {record.review_count}",
        f"rating:       {record.rating if record.rating is not None else '-'}",
        f"price:        {record.price if record.price is not None else '-'}",
        f"cover_url:    {record.cover_url or '-'}",
        f"identifier:   {record.identifier}",
        f"address:      {record.canonical_address}",
        f"fetched_at:   {record.fetched_at}",
    ]
    if record.provenance:
        sources = ", ".join(f"{key}={value}" for key, value in sorted(record.provenance.items()))
        lines.append(f"provenance:   {sources}")
    for key, value in record.details.items():
        if isinstance(value, (list, tuple)):
            value = " > ".join(str(part) for part in value)
        lines.append(f"{key + ':':<14}{value}")
    return "\n".join(lines)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars, artifacts."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline decisions to stderr."),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
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
    json_out: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    """Print route, cache and dependency diagnostics."""
    report = build_doctor_report()
    if json_out:
        sys.stdout.write(json.dumps(report, ensure_ascii=False, indent=2) + "\n")
    else:
        typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("get", add_help_option=True)
def get_url(
    url: str = typer.Argument(..., help="Product page address."),
    json_out: bool = typer.Option(False, "--json", help="Print the record as JSON."),
    title: Optional[str] = typer.Option(None, "--title", help="Manual title override."),
    author: Optional[str] = typer.Option(None, "--author", help="Manual author override."),
    stats: bool = typer.Option(False, "--stats", help="Print orchestrator, cache and route stats."),
) -> None:
    overrides = {key: value for key, value in (("title", title), ("author", author)) if value}
    orchestrator = FetchOrchestrator(FetchConfig.from_env())
    try:
        record = fetch_book(url, overrides=overrides or None, orchestrator=orchestrator)
    except BookFetchError as exc:
        if json_out:
            sys.stdout.write(json.dumps(error_payload(url, exc), ensure_ascii=False) + "\n")
        else:
            typer.echo(f"error: {type(exc).__name__} ({exc.state}): {exc}", err=True)
        raise typer.Exit(code=exit_code_for(exc))
    finally:
        orchestrator.close()

    stats_payload: Optional[Dict[str, Any]] = None
    if stats:
        stats_payload = {
            "fetch": orchestrator.stats().to_dict(),
            "cache": orchestrator.cache.stats(),
            "routes": [stat.to_dict() for stat in orchestrator.tracker.snapshot()],
        }
    if json_out:
        payload: Dict[str, Any] = record.to_dict()
        if stats_payload is not None:
            payload["stats"] = stats_payload
        sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    else:
        typer.echo(_format_record(record))
        if stats_payload is not None:
            typer.echo(json.dumps(stats_payload, ensure_ascii=False, indent=2))
    raise typer.Exit(code=0)


@app.command("get-manifest", add_help_option=True)
def get_manifest(
    path_or_dash: str = typer.Argument(..., help="Path to manifest or '-' for stdin."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write artifacts into this directory (no subdir)."),
    json_out: bool = typer.Option(False, "--json", help="Print summary JSON to stdout only."),
    soft_fail: bool = typer.Option(False, "--soft-fail", help="Exit 0 even if some items fail."),
    concurrency: int = typer.Option(DEFAULT_CONCURRENCY, "--concurrency", min=1, help="Concurrent fetches."),
) -> None:
    try:
        urls = load_manifest(path_or_dash)
    except (OSError, ValueError) as exc:
        if not json_out:
            typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    try:
        summary, exit_code = run_consumer(
            urls,
            command="get-manifest",
            out_dir=out,
            soft_fail=soft_fail,
            concurrency=concurrency,
        )
    except RuntimeError as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        sys.stdout.write(json.dumps(summary, ensure_ascii=False) + "\n")
    else:
        counts = summary["counts"]
        typer.echo(
            f"{counts['ok']}/{counts['total']} ok, {counts['failed']} failed -> {summary['run_dir']}"
        )
    raise typer.Exit(code=exit_code)
