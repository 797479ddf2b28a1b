#!/usr/bin/env python3
"""
data_collector.py - ETHval Data Collector

Collects the ETHval datasets (price, TVL, staking, fees, volatility,
sentiment, ...) from public APIs into per-dataset Supabase tables.

Tasks run strictly one after another with a pause in between (longer after
rate-limited providers). Each task fetches its primary source, normalizes
it, falls back to a derived or estimated series when needed, applies its
quality rules and upserts the survivors in chunks. A failing task reports
zero; re-running the job is safe because every write is an upsert.

Exit status: 0 when the run completes (whatever individual datasets did),
1 on missing credentials or any unexpected error.
"""

import argparse
import sys
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
import psycopg2

from db_manager import DatabaseManager, upsert_batch
from http_fetcher import ResilientFetcher
from quality import apply_rules
from settings import CollectorSettings, load_credentials
from tasks import TASKS, TASKS_BY_NAME, CollectionContext, CollectionTask

UTC = timezone.utc

# Failures confined to one task: failed reads of derivation inputs and
# payload shapes the normalizers did not anticipate.
TASK_ERRORS = (psycopg2.Error, KeyError, TypeError, ValueError, IndexError)


@dataclass(frozen=True)
class TaskResult:
    name: str
    count: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.count > 0


@dataclass(frozen=True)
class CollectionReport:
    results: Tuple[TaskResult, ...] = ()

    def with_result(self, result: TaskResult) -> "CollectionReport":
        return CollectionReport(self.results + (result,))

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    def counts(self) -> Dict[str, int]:
        return {r.name: r.count for r in self.results}

    def summary_lines(self) -> List[str]:
        total = len(self.results)
        lines = ["=" * 60, "COLLECTION SUMMARY:", "=" * 60]
        for r in self.results:
            status = "[OK]  " if r.ok else "[FAIL]"
            line = f"{status} {r.name:<20} : {r.count}"
            if r.error:
                line += f"  ({r.error})"
            lines.append(line)
        lines.append("=" * 60)
        lines.append(f"Success: {self.succeeded}/{total}  |  Failed: {self.failed}/{total}")
        lines.append("=" * 60)
        return lines


def run_task(task: CollectionTask, ctx: CollectionContext) -> int:
    """Fetch -> normalize (or fall back) -> quality rules -> chunked upsert."""
    df = pd.DataFrame()
    if task.fetch is not None:
        payload = task.fetch(ctx)
        if payload is None:
            print(f"  [SKIP] {task.title} source unavailable")
        else:
            df = task.normalize(payload, ctx)

    if df.empty and task.fallback is not None:
        if task.fetch is not None:
            print("  [Fallback] No usable data from primary source, using fallback")
        df = task.fallback(ctx)

    if df.empty:
        print("  [Task] No records to save")
        return 0

    dataset = task.dataset
    df = df[[c for c in dataset.columns if c in df.columns]]
    df = apply_rules(df, task.rules, dataset.conflict_key, ctx.run_date, ctx.settings.window_days)
    if df.empty:
        print("  [Task] No records left after quality checks")
        return 0

    print(f"  [Task] {len(df)} {task.name} records to save")
    return upsert_batch(ctx.store, dataset.table, df, dataset.conflict_key, ctx.settings.chunk_size)


def run_tasks(tasks: Sequence[CollectionTask], ctx: CollectionContext) -> CollectionReport:
    """Run tasks in order; a task that fails reports zero and the run goes on."""
    report = CollectionReport()
    total = len(tasks)
    for i, task in enumerate(tasks, 1):
        print(f"\n[{i}/{total}] {task.title}...")
        try:
            result = TaskResult(task.name, run_task(task, ctx))
        except TASK_ERRORS as e:
            print(f"  [ERROR] {task.name} failed: {e}")
            result = TaskResult(task.name, 0, str(e))
        report = report.with_result(result)

        if i < total:
            time.sleep(ctx.settings.slow_pause if task.slow else ctx.settings.task_pause)
    return report


def select_tasks(only: Optional[str] = None, skip: Optional[str] = None) -> List[CollectionTask]:
    """Task subset from comma-separated names, keeping run order."""
    def _names(raw: Optional[str]) -> List[str]:
        return [n.strip() for n in raw.split(",") if n.strip()] if raw else []

    wanted, skipped = _names(only), _names(skip)
    unknown = [n for n in wanted + skipped if n not in TASKS_BY_NAME]
    if unknown:
        raise SystemExit(
            f"[ERROR] Unknown dataset(s): {unknown}\n"
            f"Available datasets: {list(TASKS_BY_NAME.keys())}"
        )
    return [t for t in TASKS if (not wanted or t.name in wanted) and t.name not in skipped]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Collect ETHval datasets from public APIs into Supabase"
    )
    parser.add_argument("--only", type=str, default=None,
                        help="Comma-separated datasets to collect (e.g. eth_price,staking)")
    parser.add_argument("--skip", type=str, default=None,
                        help="Comma-separated datasets to leave out")
    parser.add_argument("--list", action="store_true", help="List datasets in run order and exit")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> Optional[CollectionReport]:
    """Main entry point for the collector."""
    args = parse_args(argv)

    if args.list:
        for i, task in enumerate(TASKS, 1):
            key = ",".join(task.dataset.conflict_key)
            print(f"{i:>2}. {task.name:<20} -> {task.dataset.table} ({key})")
        return None

    tasks = select_tasks(args.only, args.skip)
    credentials = load_credentials()
    settings = CollectorSettings.from_env()

    store = DatabaseManager(credentials.database_url, credentials.database_password)
    fetcher = ResilientFetcher(settings.request_timeout, settings.max_retries, settings.backoff_sec)
    ctx = CollectionContext(
        fetcher=fetcher,
        store=store,
        settings=settings,
        run_date=datetime.now(tz=UTC).date(),
        etherscan_api_key=credentials.etherscan_api_key,
    )

    print("=" * 60)
    print("ETHval Data Collector")
    print("=" * 60)
    print(f"Started:  {datetime.now(tz=UTC).isoformat()}")
    print(f"Datasets: {len(tasks)}")
    print(f"Window:   {settings.window_days} days")
    print("=" * 60)

    report = run_tasks(tasks, ctx)

    print()
    for line in report.summary_lines():
        print(line)
    return report


def cli() -> None:
    try:
        main()
    except Exception as e:
        print(f"[FATAL] {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    cli()
