"""
db_manager.py - Supabase (PostgreSQL) store and chunked upserts
"""

import warnings
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import psycopg2
from psycopg2 import sql
from psycopg2.extras import execute_values

# Suppress pandas warning about raw DB connections
warnings.filterwarnings("ignore", ".*pandas only supports SQLAlchemy connectable.*")

DEFAULT_CHUNK_SIZE = 500


class DatabaseManager:
    """Handles communication with Supabase (PostgreSQL)."""
    def __init__(self, db_url: str, password: Optional[str] = None):
        self.db_url = db_url
        self.password = password
        print("[DB] Supabase Integration Enabled.")

    def _connect(self):
        if self.password:
            return psycopg2.connect(self.db_url, password=self.password)
        return psycopg2.connect(self.db_url)

    def _to_python(self, val):
        """Convert numpy/pandas types to native Python types for psycopg2."""
        if val is None or (not isinstance(val, (list, dict)) and pd.isna(val)):
            return None
        # Handle numpy types
        if hasattr(val, 'item'):  # numpy scalar
            val = val.item()
        # Handle infinity
        if isinstance(val, float) and (val == float('inf') or val == float('-inf')):
            return None
        return val

    def upsert(self, table: str, rows: List[Dict[str, Any]], conflict_columns: Sequence[str]) -> int:
        """
        Insert rows, overwriting any stored row with the same conflict key.

        The whole batch is one transaction. Raises psycopg2.Error on failure
        after rolling back.
        """
        if not rows:
            return 0

        columns = list(rows[0].keys())
        updates = [c for c in columns if c not in conflict_columns]
        values = [tuple(self._to_python(row.get(c)) for c in columns) for row in rows]

        if updates:
            on_conflict = sql.SQL("DO UPDATE SET {}").format(sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in updates
            ))
        else:
            on_conflict = sql.SQL("DO NOTHING")

        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES %s ON CONFLICT ({keys}) {on_conflict}").format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            keys=sql.SQL(", ").join(map(sql.Identifier, conflict_columns)),
            on_conflict=on_conflict,
        )

        conn = None
        try:
            conn = self._connect()
            cur = conn.cursor()
            execute_values(cur, query, values, page_size=len(values))
            conn.commit()
            cur.close()
            return len(values)
        except psycopg2.Error:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def select(self, table: str, columns: Optional[Sequence[str]] = None, order_by: Optional[str] = None,
               limit: Optional[int] = None, descending: bool = False) -> pd.DataFrame:
        """Read a table (or some of its columns) into a DataFrame; dates come back as YYYY-MM-DD."""
        query = sql.SQL("SELECT {columns} FROM {table}").format(
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)) if columns else sql.SQL("*"),
            table=sql.Identifier(table),
        )
        if order_by:
            query += sql.SQL(" ORDER BY {} {}").format(
                sql.Identifier(order_by), sql.SQL("DESC" if descending else "ASC"))
        if limit is not None:
            query += sql.SQL(" LIMIT {}").format(sql.Literal(int(limit)))

        conn = None
        try:
            conn = self._connect()
            df = pd.read_sql(query.as_string(conn), conn)
        finally:
            if conn:
                conn.close()

        if "date" in df.columns:
            df["date"] = df["date"].astype(str)
        return df


def upsert_batch(store, table: str, records: pd.DataFrame, conflict_columns: Sequence[str],
                 chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """
    Merge records into `table` in chunks of `chunk_size`.

    A failed chunk is logged and left out of the count; later chunks still
    run and earlier ones stay committed.

    Returns:
        Number of records in chunks the store accepted
    """
    if records is None or records.empty:
        return 0

    rows = records.to_dict("records")
    saved = 0
    for i in range(0, len(rows), chunk_size):
        chunk = rows[i:i + chunk_size]
        try:
            store.upsert(table, chunk, conflict_columns)
            saved += len(chunk)
        except psycopg2.Error as e:
            print(f"    [DB ERROR] {table} rows {i}-{i + len(chunk) - 1}: {e}")
    if saved:
        print(f"    [DB] Upserted {saved}/{len(rows)} rows into {table}.")
    return saved
