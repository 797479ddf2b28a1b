"""
quality.py - Data-quality rules for canonical record sets

Each dataset declares which rules apply and with what parameters; the task
driver runs them in declaration order, then the recency window, then
date-keyed deduplication (last write wins) right before batching.
Rejected rows are dropped with a diagnostic, never clamped.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional, Sequence

import pandas as pd

MAX_DIAGNOSTICS = 20


def _report_drops(df: pd.DataFrame, mask: pd.Series, reason: str) -> None:
    dropped = df[~mask]
    for i, (_, row) in enumerate(dropped.iterrows()):
        if i == MAX_DIAGNOSTICS:
            print(f"    [QC] ... and {len(dropped) - MAX_DIAGNOSTICS} more ({reason})")
            break
        print(f"    [QC] Skip {row.get('date')}: {reason}")


@dataclass(frozen=True)
class RangeRule:
    """Value must fall within low..high; `inclusive` takes pandas' between() options."""
    column: str
    low: float
    high: float
    inclusive: str = "both"

    def apply(self, df: pd.DataFrame, run_date: date) -> pd.DataFrame:
        if df.empty:
            return df
        values = pd.to_numeric(df[self.column], errors="coerce")
        mask = values.between(self.low, self.high, inclusive=self.inclusive)
        left = "[" if self.inclusive in ("both", "left") else "("
        right = "]" if self.inclusive in ("both", "right") else ")"
        _report_drops(df, mask, f"{self.column} outside {left}{self.low:g}, {self.high:g}{right}")
        return df[mask]


@dataclass(frozen=True)
class PositiveRule:
    """Value must be strictly positive and finite."""
    column: str

    def apply(self, df: pd.DataFrame, run_date: date) -> pd.DataFrame:
        if df.empty:
            return df
        values = pd.to_numeric(df[self.column], errors="coerce")
        mask = values.gt(0) & values.lt(float("inf"))
        _report_drops(df, mask, f"{self.column} not positive or not finite")
        return df[mask]


@dataclass(frozen=True)
class MaxDailyChangeRule:
    """
    Reject a record whose relative change from the nearest earlier *accepted*
    value exceeds max_pct. Rejected records never become the baseline, so one
    outlier cannot cascade into rejecting the legitimate days after it.
    """
    column: str
    max_pct: float

    def apply(self, df: pd.DataFrame, run_date: date) -> pd.DataFrame:
        if df.empty:
            return df
        df = df.sort_values("date", kind="stable").reset_index(drop=True)
        values = pd.to_numeric(df[self.column], errors="coerce")

        keep = pd.Series(False, index=df.index)
        baseline = None
        for idx in df.index:
            value = values[idx]
            if pd.isna(value):
                print(f"    [QC] Skip {df.at[idx, 'date']}: {self.column} missing")
                continue
            if baseline:
                change = abs((value - baseline) / baseline * 100)
                if change > self.max_pct:
                    print(f"    [QC] Skip {df.at[idx, 'date']}: {change:.2f}% daily change (abnormal)")
                    continue
            keep[idx] = True
            baseline = value
        return df[keep]


@dataclass(frozen=True)
class RecencyRule:
    """Keep only records dated within window_days of the run date."""
    window_days: int

    def cutoff(self, run_date: date) -> str:
        return (run_date - timedelta(days=self.window_days)).isoformat()

    def apply(self, df: pd.DataFrame, run_date: date) -> pd.DataFrame:
        if df.empty:
            return df
        mask = df["date"] >= self.cutoff(run_date)
        dropped = int((~mask).sum())
        if dropped:
            print(f"    [QC] Dropped {dropped} records older than {self.cutoff(run_date)}")
        return df[mask]


def dedupe(df: pd.DataFrame, key_columns: Sequence[str]) -> pd.DataFrame:
    """One record per conflict key; the last one in input order wins."""
    if df.empty:
        return df
    return df.drop_duplicates(subset=list(key_columns), keep="last")


def apply_rules(df: pd.DataFrame, rules: Sequence, key_columns: Sequence[str],
                run_date: date, window_days: Optional[int] = None) -> pd.DataFrame:
    """Run a dataset's rules, the recency window, then deduplication."""
    pipeline: List = list(rules)
    if window_days is not None:
        pipeline.append(RecencyRule(window_days))
    for rule in pipeline:
        df = rule.apply(df, run_date)
    return dedupe(df, key_columns).reset_index(drop=True)
