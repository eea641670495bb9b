"""Trade repository — SQLite journal of position entries and exits."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from perpscout.lifecycle.models import ClosedTradeRecord, EntryRecord
from perpscout.repos.db import get_connection
from perpscout.reporting.stats import calculate_stats


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


class TradeRepo:
    """Data access layer for trade records.

    Implements the trade-logger interface the ``PositionManager`` calls:
    ``log_entry``, ``log_exit`` and ``open_entry``.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def log_entry(self, record: EntryRecord) -> int:
        """Insert an ENTRY row and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (event, timestamp, pair, side, entry_price, amount,
                     leverage, score, reason)
                VALUES ('ENTRY', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _iso(record.timestamp), record.pair, record.side,
                    record.entry_price, record.amount, record.leverage,
                    record.score, record.reason,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def log_exit(self, record: ClosedTradeRecord) -> int:
        """Insert an EXIT row and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (event, timestamp, pair, side, entry_price, exit_price,
                     amount, leverage, pnl, pnl_percent, reason,
                     duration_hours)
                VALUES ('EXIT', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _iso(record.timestamp), record.pair, record.side,
                    record.entry_price, record.exit_price, record.amount,
                    record.leverage, record.pnl, record.pnl_percent,
                    record.reason, record.duration_hours,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def open_entry(self, pair: str) -> Optional[dict]:
        """Most recent ENTRY row for *pair* with no EXIT after it, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM trades WHERE pair = ? ORDER BY id DESC LIMIT 1",
                (pair,),
            ).fetchone()
            if row is None or row["event"] != "ENTRY":
                return None
            return dict(row)
        finally:
            conn.close()

    def get_trades(
        self,
        limit: int = 20,
        event: Optional[str] = None,
        pair: Optional[str] = None,
    ) -> dict:
        """Return recent trade rows, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if event:
                conditions.append("event = ?")
                params.append(event)
            if pair:
                conditions.append("pair = ?")
                params.append(pair)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            return {"trades": [dict(row) for row in rows], "total": total}
        finally:
            conn.close()

    def daily_report(self, day: Optional[date] = None) -> dict:
        """Summary statistics for the EXIT rows of one UTC day (default today)."""
        day = day or datetime.now(timezone.utc).date()
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT pnl, pnl_percent FROM trades "
                "WHERE event = 'EXIT' AND timestamp >= ? AND timestamp < ? "
                "ORDER BY id",
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        finally:
            conn.close()

        report = calculate_stats([dict(r) for r in rows])
        report["date"] = day.isoformat()
        return report
