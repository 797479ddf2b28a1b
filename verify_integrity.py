"""
verify_integrity.py - Audit stored datasets against their quality rules

Re-applies each dataset's declared rules and the recency window to what is
already in the store, and counts rows sharing a conflict key. Nothing is
written; a clean store reports zero everywhere.
"""

import argparse
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import psycopg2

from db_manager import DatabaseManager
from quality import RecencyRule
from settings import CollectorSettings, load_credentials
from tasks import TASKS, CollectionTask


def _rule_label(rule) -> str:
    params = ", ".join(f"{k}={v}" for k, v in vars(rule).items() if v is not None)
    return f"{type(rule).__name__}({params})"


def audit_dataset(store, task: CollectionTask, run_date: date, window_days: int) -> List[Dict[str, Any]]:
    """One finding per rule, plus recency and duplicate-key checks."""
    dataset = task.dataset
    try:
        df = store.select(dataset.table, order_by="date")
    except psycopg2.Error as e:
        print(f"    [DB ERROR] {dataset.table}: {e}")
        return [{"Dataset": task.name, "Rows": 0, "Check": "readable", "Violations": 1}]

    rows = len(df)
    findings = []
    if df.empty:
        return findings

    print(f"\n--- {task.name} ({dataset.table}, {rows} rows) ---")
    for rule in list(task.rules) + [RecencyRule(window_days)]:
        kept = rule.apply(df, run_date)
        findings.append({
            "Dataset": task.name,
            "Rows": rows,
            "Check": _rule_label(rule),
            "Violations": rows - len(kept),
        })

    key = list(dataset.conflict_key)
    duplicates = int(df.duplicated(subset=[c for c in key if c in df.columns]).sum())
    findings.append({"Dataset": task.name, "Rows": rows, "Check": "unique key", "Violations": duplicates})
    return findings


def verify_integrity(store, tasks: Optional[Sequence[CollectionTask]] = None,
                     run_date: Optional[date] = None, window_days: Optional[int] = None) -> pd.DataFrame:
    run_date = run_date or datetime.now(tz=timezone.utc).date()
    window_days = window_days if window_days is not None else CollectorSettings.from_env().window_days

    findings = []
    for task in tasks or TASKS:
        findings.extend(audit_dataset(store, task, run_date, window_days))

    report = pd.DataFrame(findings, columns=["Dataset", "Rows", "Check", "Violations"])
    print("\n" + "=" * 80)
    print("INTEGRITY REPORT")
    print("=" * 80)
    if report.empty:
        print("No stored data to verify.")
        return report

    print(report.to_string(index=False))
    failing = report[report["Violations"] > 0]
    print(f"\nChecks with violations: {len(failing)}/{len(report)}")
    return report


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Audit stored ETHval datasets against their quality rules")
    parser.parse_args(argv)

    credentials = load_credentials()
    report = verify_integrity(DatabaseManager(credentials.database_url, credentials.database_password))
    if not report.empty and (report["Violations"] > 0).any():
        raise SystemExit(1)


if __name__ == "__main__":
    main()
