"""Shared fixtures: in-memory store, canned-payload fetcher and a fixed run date."""

from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd
import psycopg2
import pytest

from settings import CollectorSettings
from tasks import CollectionContext

RUN_DATE = date(2024, 6, 15)


def epoch_ms(day: str) -> int:
    """Midnight UTC of YYYY-MM-DD as epoch milliseconds."""
    return int(datetime.fromisoformat(day).replace(tzinfo=timezone.utc).timestamp() * 1000)


def days_before(run_date: date, n: int) -> List[str]:
    """The n calendar days ending at run_date, oldest first."""
    return [(pd.Timestamp(run_date) - pd.Timedelta(days=i)).strftime("%Y-%m-%d") for i in range(n - 1, -1, -1)]


class FakeStore:
    """Upserts by conflict key into dicts; chunks listed in fail_calls raise."""

    def __init__(self, fail_calls: Iterable[int] = ()):
        self.tables: Dict[str, Dict[tuple, Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.fail_calls = set(fail_calls)

    def upsert(self, table: str, rows: List[Dict[str, Any]], conflict_columns: Sequence[str]) -> int:
        call = len(self.calls)
        self.calls.append((table, len(rows)))
        if call in self.fail_calls:
            raise psycopg2.DatabaseError("simulated chunk failure")
        stored = self.tables.setdefault(table, {})
        for row in rows:
            stored[tuple(row[c] for c in conflict_columns)] = dict(row)
        return len(rows)

    def seed(self, table: str, rows: List[Dict[str, Any]], conflict_columns: Sequence[str] = ("date",)) -> None:
        stored = self.tables.setdefault(table, {})
        for row in rows:
            stored[tuple(row[c] for c in conflict_columns)] = dict(row)

    def rows(self, table: str) -> pd.DataFrame:
        return self.select(table, order_by="date")

    def select(self, table: str, columns: Optional[Sequence[str]] = None, order_by: Optional[str] = None,
               limit: Optional[int] = None, descending: bool = False) -> pd.DataFrame:
        records = list(self.tables.get(table, {}).values())
        if not records:
            return pd.DataFrame(columns=list(columns) if columns else [])
        df = pd.DataFrame(records)
        if columns:
            df = df[list(columns)]
        if order_by:
            df = df.sort_values(order_by, ascending=not descending, kind="stable")
        if limit is not None:
            df = df.head(limit)
        return df.reset_index(drop=True)


class FakeFetcher:
    """Serves canned payloads by URL; unknown URLs behave like an exhausted retry budget."""

    def __init__(self, payloads: Optional[Dict[str, Any]] = None):
        self.payloads = dict(payloads or {})
        self.calls: List[tuple] = []

    def fetch(self, url: str, params: Optional[Dict[str, Any]] = None,
              max_retries: Optional[int] = None) -> Optional[Any]:
        self.calls.append((url, params))
        return self.payloads.get(url)


@pytest.fixture
def run_date() -> date:
    return RUN_DATE


@pytest.fixture
def settings() -> CollectorSettings:
    return CollectorSettings(backoff_sec=0.0, task_pause=0.0, slow_pause=0.0, dimension_pause=0.0)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def ctx(fetcher, store, settings, run_date) -> CollectionContext:
    return CollectionContext(fetcher=fetcher, store=store, settings=settings, run_date=run_date)
