from __future__ import annotations

import asyncio
import json
import secrets
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, TextIO, Tuple

from .workflows.errors import BookFetchError
from .workflows.fetcher import FetchOrchestrator, _run_in_fetch_loop, error_payload
from .workflows.fetcher_utils import collect_environment_warnings
from .workflows.web_fetch import FetchConfig

RESULTS_FILENAME = "results.jsonl"
SUMMARY_FILENAME = "summary.json"
WALKTHROUGH_FILENAME = "Walkthrough.md"
DEFAULT_CONCURRENCY = 4


def parse_manifest_lines(lines: Iterable[str]) -> List[str]:
    urls: List[str] = []
    for raw_line in lines:
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#"):
            continue
        if any(ch.isspace() for ch in line):
            raise ValueError(f"Invalid manifest line (inline metadata not allowed): {raw_line.rstrip()}")
        urls.append(line)
    return urls


def load_manifest(path_or_dash: str, *, stdin: Optional[TextIO] = None) -> List[str]:
    if path_or_dash == "-":
        stream = stdin or sys.stdin
        return parse_manifest_lines(stream.read().splitlines())
    path = Path(path_or_dash)
    if not path.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")
    return parse_manifest_lines(path.read_text(encoding="utf-8").splitlines())


def generate_run_id(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    suffix = secrets.token_hex(3)
    return f"{stamp}_{suffix}"


def resolve_run_dir(out_dir: Optional[Path]) -> Tuple[Path, str]:
    run_id = generate_run_id()
    if out_dir:
        return out_dir, run_id
    return Path("run") / "artifacts" / run_id, run_id


def _iso(moment: datetime) -> str:
    return moment.replace(microsecond=0).isoformat().replace("+00:00", "Z")


async def fetch_all(
    orchestrator: FetchOrchestrator,
    urls: Sequence[str],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    overrides: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Fetch every url through one shared orchestrator; items keep manifest order."""

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _one(index: int, url: str) -> Dict[str, Any]:
        async with semaphore:
            started = time.perf_counter()
            item: Dict[str, Any] = {"index": index, "url": url}
            try:
                record = await orchestrator.fetch(url, overrides=overrides)
            except BookFetchError as exc:
                item.update(verdict="failed", record=None, error=error_payload(url, exc))
            else:
                item.update(verdict="ok", record=record.to_dict(), error=None)
            item["elapsed_ms"] = round((time.perf_counter() - started) * 1000.0, 1)
            return item

    return list(await asyncio.gather(*(_one(idx, url) for idx, url in enumerate(urls))))


def _build_summary(
    command: str,
    run_id: str,
    run_dir: Path,
    started_at: datetime,
    finished_at: datetime,
    items: Sequence[Dict[str, Any]],
    stats: Dict[str, Any],
) -> Dict[str, Any]:
    errors_by_type: Dict[str, int] = {}
    for item in items:
        error = item.get("error") or {}
        name = error.get("error")
        if name:
            errors_by_type[name] = errors_by_type.get(name, 0) + 1
    provenance_sources: Dict[str, int] = {}
    for item in items:
        for source in ((item.get("record") or {}).get("provenance") or {}).values():
            provenance_sources[source] = provenance_sources.get(source, 0) + 1
    return {
        "command": command,
        "run_id": run_id,
        "run_dir": str(run_dir),
        "started_at": _iso(started_at),
        "finished_at": _iso(finished_at),
        "duration_ms": int((finished_at - started_at).total_seconds() * 1000),
        "counts": {
            "total": len(items),
            "ok": sum(1 for item in items if item.get("verdict") == "ok"),
            "failed": sum(1 for item in items if item.get("verdict") == "failed"),
            "cache_hits": stats.get("cache_hits", 0),
        },
        "errors_by_type": errors_by_type,
        "provenance_sources": provenance_sources,
        "stats": stats,
        "results_path": str(run_dir / RESULTS_FILENAME),
    }


def _render_walkthrough(summary: Dict[str, Any], items: Sequence[Dict[str, Any]]) -> str:
    lines: List[str] = []
    lines.append("# Walkthrough")
    lines.append("")
    lines.append(f"Run ID: {summary.get('run_id')}")
    lines.append(f"Started: {summary.get('started_at')}")
    lines.append(f"Finished: {summary.get('finished_at')}")
    lines.append(f"Duration: {summary.get('duration_ms')} ms")
    lines.append("")
    env_warnings = summary.get("environment_warnings") or []
    if env_warnings:
        lines.append("## Environment Warnings")
        for warning in env_warnings:
            lines.append(f"- {warning.get('code', 'warning')}: {warning.get('message', '')}")
        lines.append("")
    lines.append("## Counts")
    lines.append("| metric | value |")
    lines.append("| --- | --- |")
    counts = summary.get("counts") or {}
    for key in ("total", "ok", "failed", "cache_hits"):
        lines.append(f"| {key} | {counts.get(key, 0)} |")
    lines.append("")

    for item in items:
        lines.append(f"## Item {item.get('index', 0) + 1}")
        lines.append(f"url: {item.get('url')}")
        lines.append(f"verdict: {item.get('verdict')}")
        record = item.get("record")
        if record:
            lines.append(f"canonical_address: {record.get('canonical_address')}")
            lines.append(f"title: {record.get('title')}")
            lines.append(f"author: {record.get('author')}")
            lines.append(f"review_count: {record.get('review_count')}")
        error = item.get("error")
        if error:
            lines.append(f"error: {error.get('error')} ({error.get('state')}): {error.get('message')}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def run_consumer(
    urls: Sequence[str],
    *,
    command: str,
    out_dir: Optional[Path],
    soft_fail: bool,
    concurrency: int = DEFAULT_CONCURRENCY,
    config: Optional[FetchConfig] = None,
    orchestrator: Optional[FetchOrchestrator] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Tuple[Dict[str, Any], int]:
    started_at = datetime.now(timezone.utc)
    run_dir, run_id = resolve_run_dir(out_dir)
    try:
        run_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError(f"Unable to create run dir {run_dir}: {exc}") from exc

    env_warnings = collect_environment_warnings()
    for warning in env_warnings:
        message = warning.get("message") or warning.get("code") or "environment warning"
        remedy = warning.get("remedy")
        if remedy:
            print(f"[bookfetch] warning: {message} ({remedy})", file=sys.stderr)
        else:
            print(f"[bookfetch] warning: {message}", file=sys.stderr)

    owned = orchestrator is None
    runner = orchestrator or FetchOrchestrator(config or FetchConfig.from_env())
    try:
        items = _run_in_fetch_loop(fetch_all(runner, urls, concurrency=concurrency, overrides=overrides))
    finally:
        if owned:
            runner.close()

    results_path = run_dir / RESULTS_FILENAME
    with results_path.open("w", encoding="utf-8") as fh:
        for item in items:
            fh.write(json.dumps(item, ensure_ascii=False) + "\n")

    finished_at = datetime.now(timezone.utc)
    summary = _build_summary(
        command=command,
        run_id=run_id,
        run_dir=run_dir,
        started_at=started_at,
        finished_at=finished_at,
        items=items,
        stats=runner.stats().to_dict(),
    )
    if env_warnings:
        summary["environment_warnings"] = env_warnings

    (run_dir / SUMMARY_FILENAME).write_text(json.dumps(summary, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    (run_dir / WALKTHROUGH_FILENAME).write_text(_render_walkthrough(summary, items), encoding="utf-8")

    exit_code = 0
    if not soft_fail and summary["counts"]["failed"] > 0:
        exit_code = 3
    return summary, exit_code


__all__ = [
    "DEFAULT_CONCURRENCY",
    "RESULTS_FILENAME",
    "SUMMARY_FILENAME",
    "fetch_all",
    "generate_run_id",
    "load_manifest",
    "parse_manifest_lines",
    "resolve_run_dir",
    "run_consumer",
]
