from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sqlite3
import threading
from typing import Any

from clob_quoter.models import PassResult, PassStatus


class Storage:
    def __init__(self, database_path: str) -> None:
        self.path = Path(database_path)
        if database_path != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        # Controller threads share one connection; writes go through _lock.
        self.conn = sqlite3.connect(database_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._create_schema()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS passes (
              ts TEXT NOT NULL,
              market TEXT NOT NULL,
              mode TEXT NOT NULL,
              status TEXT NOT NULL,
              used_fallback INTEGER NOT NULL,
              top_bid REAL,
              top_ask REAL,
              quote_bid REAL,
              quote_ask REAL,
              cancels INTEGER NOT NULL,
              places INTEGER NOT NULL,
              batch_id TEXT NOT NULL,
              error TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS operations (
              ts TEXT NOT NULL,
              market TEXT NOT NULL,
              mode TEXT NOT NULL,
              batch_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              order_id TEXT NOT NULL,
              side TEXT NOT NULL,
              price REAL NOT NULL,
              size REAL NOT NULL
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def record_pass(self, result: PassResult, mode: str) -> None:
        ts = result.finished_at.isoformat()
        plan = result.plan
        top = result.top_of_book
        quote = result.quote
        batch_id = result.confirmation.batch_id if result.confirmation else ""
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO passes (
                  ts, market, mode, status, used_fallback, top_bid, top_ask,
                  quote_bid, quote_ask, cancels, places, batch_id, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ts,
                    result.market,
                    mode,
                    result.status.value,
                    1 if result.used_fallback else 0,
                    top.best_bid if top else None,
                    top.best_ask if top else None,
                    quote.bid_price if quote else None,
                    quote.ask_price if quote else None,
                    len(plan.orders_to_cancel) if plan else 0,
                    len(plan.orders_to_place) if plan else 0,
                    batch_id,
                    result.error,
                ),
            )
            if result.status is PassStatus.SUBMITTED and plan is not None:
                rows: list[tuple[Any, ...]] = []
                for order in plan.orders_to_cancel:
                    rows.append(
                        (ts, result.market, mode, batch_id, "cancel", order.order_id, order.side.value, order.price, order.size)
                    )
                for planned in plan.orders_to_place:
                    kind = "reinforce" if planned.reinforcement else "place"
                    rows.append((ts, result.market, mode, batch_id, kind, "", planned.side.value, planned.price, planned.size))
                self.conn.executemany(
                    """
                    INSERT INTO operations (
                      ts, market, mode, batch_id, kind, order_id, side, price, size
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
            self.conn.commit()

    def report(self, window_hours: int) -> dict[str, Any]:
        cutoff = datetime.now(tz=timezone.utc) - timedelta(hours=window_hours)
        with self._lock:
            pass_rows = self.conn.execute(
                """
                SELECT market, status, used_fallback, error, ts
                FROM passes
                WHERE ts >= ?
                ORDER BY ts ASC
                """,
                (cutoff.isoformat(),),
            ).fetchall()
            op_rows = self.conn.execute(
                """
                SELECT market, kind, COUNT(*) AS n
                FROM operations
                WHERE ts >= ?
                GROUP BY market, kind
                """,
                (cutoff.isoformat(),),
            ).fetchall()

        per_market: dict[str, dict[str, Any]] = {}
        for row in pass_rows:
            metric = per_market.setdefault(
                str(row["market"]),
                {
                    "passes": 0,
                    "submitted": 0,
                    "skipped": 0,
                    "failed": 0,
                    "fallback_passes": 0,
                    "operations": {},
                    "last_error": "",
                    "last_error_ts": "",
                },
            )
            metric["passes"] += 1
            status = str(row["status"])
            if status in {"submitted", "skipped", "failed"}:
                metric[status] += 1
            if int(row["used_fallback"] or 0):
                metric["fallback_passes"] += 1
            if status == "failed" and row["error"]:
                metric["last_error"] = str(row["error"])
                metric["last_error_ts"] = str(row["ts"])

        for row in op_rows:
            metric = per_market.get(str(row["market"]))
            if metric is not None:
                metric["operations"][str(row["kind"])] = int(row["n"])

        return {
            "window_hours": window_hours,
            "markets": [{"market": market, **metrics} for market, metrics in sorted(per_market.items())],
        }
