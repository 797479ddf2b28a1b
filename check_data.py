import argparse
from typing import Any, Dict, Optional, Sequence

import pandas as pd
import psycopg2

from db_manager import DatabaseManager
from settings import load_credentials
from tasks import TASKS, TASKS_BY_NAME, CollectionTask


def table_coverage(store, task: CollectionTask) -> Dict[str, Any]:
    """Rows, date span, NaN share and provenance of one stored dataset."""
    dataset = task.dataset
    row: Dict[str, Any] = {"Dataset": task.name, "Table": dataset.table}
    try:
        df = store.select(dataset.table, order_by="date")
    except psycopg2.Error as e:
        print(f"    [DB ERROR] {dataset.table}: {e}")
        row.update({"Rows": 0, "First": "-", "Last": "-", "NaN %": "-", "Sources": "unreadable"})
        return row

    if df.empty:
        row.update({"Rows": 0, "First": "-", "Last": "-", "NaN %": "-", "Sources": "None"})
        return row

    # Key columns are never null; only value columns count towards NaN %
    values = df[[c for c in dataset.value_columns if c in df.columns]]
    nan_pct = values.isnull().sum().sum() / values.size * 100 if values.size > 0 else 0

    if "source" in df.columns:
        counts = df["source"].fillna("unknown").value_counts()
        sources = ", ".join(f"{src}={n}" for src, n in counts.items())
    else:
        sources = "None"

    row.update({
        "Rows": len(df),
        "First": df["date"].min(),
        "Last": df["date"].max(),
        "NaN %": f"{nan_pct:.2f}%",
        "Sources": sources,
    })
    if dataset.secondary_key and dataset.secondary_key in df.columns:
        row["Dimensions"] = df[dataset.secondary_key].nunique()
    return row


def check_data(store, tasks: Optional[Sequence[CollectionTask]] = None) -> pd.DataFrame:
    print("=" * 80)
    print("STORED DATA COVERAGE REPORT")
    print("=" * 80)

    summary = pd.DataFrame([table_coverage(store, t) for t in (tasks or TASKS)])
    if summary.empty:
        print("No datasets to summarize.")
        return summary

    empty = summary[summary["Rows"] == 0]["Dataset"].tolist()

    print("\nDATASET COVERAGE:")
    print(summary[["Dataset", "Rows", "First", "Last", "NaN %"]].to_string(index=False))

    print("\nPROVENANCE:")
    print(summary[["Dataset", "Sources"]].to_string(index=False))

    if "Dimensions" in summary.columns:
        dims = summary.dropna(subset=["Dimensions"])
        if not dims.empty:
            print("\nDIMENSIONS:")
            print(dims[["Dataset", "Dimensions"]].to_string(index=False))

    print(f"\nEmpty datasets: {', '.join(empty) if empty else 'None'}")
    print("\n" + "=" * 80)
    return summary


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Coverage report for the stored ETHval datasets")
    parser.add_argument("--only", type=str, default=None, help="Comma-separated datasets to report on")
    args = parser.parse_args(argv)

    tasks = TASKS
    if args.only:
        names = [n.strip() for n in args.only.split(",") if n.strip()]
        unknown = [n for n in names if n not in TASKS_BY_NAME]
        if unknown:
            raise SystemExit(f"[ERROR] Unknown dataset(s): {unknown}")
        tasks = [TASKS_BY_NAME[n] for n in names]

    credentials = load_credentials()
    check_data(DatabaseManager(credentials.database_url, credentials.database_password), tasks)


if __name__ == "__main__":
    main()
