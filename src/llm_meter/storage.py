import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Sequence

import structlog

from llm_meter.errors import StorageError
from llm_meter.models import CostRecord, DashboardSummary, TimeWindow, UsageRecord

logger = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_records (
    id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    "window" TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cached_tokens INTEGER NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cost_records (
    id INTEGER PRIMARY KEY,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    "window" TEXT NOT NULL,
    input_cost REAL NOT NULL,
    output_cost REAL NOT NULL,
    total_cost REAL NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_key ON usage_records(provider, "window");
CREATE INDEX IF NOT EXISTS idx_cost_key ON cost_records(provider, "window");
"""

# top-N models shown in the dashboard summary
_TOP_MODELS = 10


def _where(
    provider: "str | None",
    window: "TimeWindow | None",
) -> "tuple[str, list[str]]":
    clauses: "list[str]" = []
    params: "list[str]" = []
    if provider is not None:
        clauses.append("provider = ?")
        params.append(provider)
    if window is not None:
        clauses.append('"window" = ?')
        params.append(window.label)
    sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return sql, params


class SnapshotStore:
    """
    SnapshotStore persists usage and cost rows in a single SQLite
    file, keyed by (provider, window).

    Every refresh of a key replaces its rows inside one explicit
    transaction, so repeated refreshes never accumulate rows and a
    reader never sees a half-written snapshot. A lock serializes
    access to the shared connection; async callers are expected to
    hop to a worker thread.
    """

    def __init__(self, path: "Path | str") -> "None":
        self.path = Path(path)
        self._lock: "threading.Lock" = threading.Lock()
        try:
            if str(path) != ":memory:":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None leaves transaction control to us
            self._conn = sqlite3.connect(
                str(path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"cannot open snapshot store at {path}: {exc}") from exc

    def close(self) -> "None":
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SnapshotStore":
        return self

    def __exit__(self, *exc_info: "object") -> "None":
        self.close()

    def _rollback(self) -> "None":
        # the shared connection must never be left inside a transaction
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def replace(
        self,
        provider: "str",
        window: "TimeWindow",
        usage: "Sequence[UsageRecord]",
        cost: "Sequence[CostRecord]",
    ) -> "None":
        """
        atomically swaps all rows stored for (provider, window) with
        the given rows. Either the delete and every insert commit
        together, or nothing changes.
        """
        for row in (*usage, *cost):
            if row.provider != provider or row.window is not window:
                raise StorageError(
                    f"row for ({row.provider}, {row.window.label}) does not "
                    f"belong to snapshot ({provider}, {window.label})"
                )

        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                self._conn.execute(
                    'DELETE FROM usage_records WHERE provider = ? AND "window" = ?',
                    (provider, window.label),
                )
                self._conn.execute(
                    'DELETE FROM cost_records WHERE provider = ? AND "window" = ?',
                    (provider, window.label),
                )
                self._conn.executemany(
                    'INSERT INTO usage_records (provider, model, "window", '
                    "input_tokens, output_tokens, cached_tokens, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            r.provider,
                            r.model,
                            r.window.label,
                            r.input_tokens,
                            r.output_tokens,
                            r.cached_tokens,
                            r.timestamp.isoformat(),
                        )
                        for r in usage
                    ],
                )
                self._conn.executemany(
                    'INSERT INTO cost_records (provider, model, "window", '
                    "input_cost, output_cost, total_cost, currency, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            r.provider,
                            r.model,
                            r.window.label,
                            r.input_cost,
                            r.output_cost,
                            r.total_cost,
                            r.currency,
                            r.timestamp.isoformat(),
                        )
                        for r in cost
                    ],
                )
                self._conn.execute("COMMIT")
            except (sqlite3.Error, OverflowError, TypeError, ValueError) as exc:
                self._rollback()
                logger.error(
                    "snapshot_replace_failed",
                    provider=provider,
                    window=window.label,
                    error=str(exc),
                )
                raise StorageError(
                    f"replace of ({provider}, {window.label}) failed: {exc}"
                ) from exc
            except BaseException:
                self._rollback()
                raise

        logger.debug(
            "snapshot_replaced",
            provider=provider,
            window=window.label,
            usage_rows=len(usage),
            cost_rows=len(cost),
        )

    def _query(self, sql: "str", params: "Sequence[object]") -> "list[sqlite3.Row]":
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"snapshot query failed: {exc}") from exc

    def read_all(
        self,
        provider: "str | None" = None,
        window: "TimeWindow | None" = None,
    ) -> "list[CostRecord]":
        """
        returns stored cost rows, optionally filtered by provider
        and/or window, newest first.
        """
        where, params = _where(provider, window)
        rows = self._query(
            'SELECT provider, model, "window", input_cost, output_cost, '
            "total_cost, currency, timestamp FROM cost_records"
            f"{where} ORDER BY timestamp DESC, provider, model, id",
            params,
        )
        return [
            CostRecord(
                provider=row["provider"],
                model=row["model"],
                window=TimeWindow(row["window"]),
                input_cost=row["input_cost"],
                output_cost=row["output_cost"],
                total_cost=row["total_cost"],
                currency=row["currency"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def read_usage(
        self,
        provider: "str | None" = None,
        window: "TimeWindow | None" = None,
    ) -> "list[UsageRecord]":
        where, params = _where(provider, window)
        rows = self._query(
            'SELECT provider, model, "window", input_tokens, output_tokens, '
            "cached_tokens, timestamp FROM usage_records"
            f"{where} ORDER BY timestamp DESC, provider, model, id",
            params,
        )
        return [
            UsageRecord(
                provider=row["provider"],
                model=row["model"],
                window=TimeWindow(row["window"]),
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cached_tokens=row["cached_tokens"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def count(self, provider: "str", window: "TimeWindow") -> "tuple[int, int]":
        """
        returns (usage rows, cost rows) stored for one key.
        """
        where, params = _where(provider, window)
        usage = self._query(f"SELECT COUNT(*) FROM usage_records{where}", params)
        cost = self._query(f"SELECT COUNT(*) FROM cost_records{where}", params)
        return usage[0][0], cost[0][0]

    def summary(self, window: "TimeWindow") -> "DashboardSummary":
        """
        aggregates one window for the dashboard: token and cost
        totals, cost per provider and the most expensive models.
        """
        params = [window.label]
        tokens = self._query(
            "SELECT COALESCE(SUM(input_tokens + output_tokens), 0) "
            'FROM usage_records WHERE "window" = ?',
            params,
        )[0][0]
        total = self._query(
            'SELECT COALESCE(SUM(total_cost), 0.0) FROM cost_records '
            'WHERE "window" = ?',
            params,
        )[0][0]
        by_provider = self._query(
            "SELECT provider, COALESCE(SUM(total_cost), 0.0) AS c FROM cost_records "
            'WHERE "window" = ? GROUP BY provider ORDER BY c DESC, provider',
            params,
        )
        by_model = self._query(
            "SELECT model, COALESCE(SUM(total_cost), 0.0) AS c FROM cost_records "
            'WHERE "window" = ? GROUP BY model ORDER BY c DESC, model LIMIT ?',
            [*params, _TOP_MODELS],
        )
        return DashboardSummary(
            window=window,
            total_tokens=max(int(tokens), 0),
            total_cost=float(total),
            by_provider=[(r[0], float(r[1])) for r in by_provider],
            by_model=[(r[0], float(r[1])) for r in by_model],
        )
