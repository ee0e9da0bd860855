"""
Cost ledger storage.

Append-only record of provider spend with windowed-sum reads. Two backends
share one contract: an in-process ledger guarded by a lock, and a SQLite
ledger for spend that must survive restarts.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from narrative_guard.config.models import BudgetScope, ScopeKind
from .db import DEFAULT_DB_PATH, get_connection
from .models import CostRecord

# Fixed-width UTC timestamps so SQLite string comparison matches time order
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


class LedgerUnavailable(Exception):
    """Raised when the ledger's backing store cannot be read or written."""


class CostLedger(Protocol):
    """Append-only spend ledger."""

    def record(self, record: CostRecord) -> None:
        ...

    def windowed_sum(
        self,
        scope: BudgetScope,
        window: timedelta,
        now: Optional[datetime] = None
    ) -> Decimal:
        ...


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _matches(record: CostRecord, scope: BudgetScope) -> bool:
    if scope.kind == ScopeKind.GLOBAL:
        return True
    if scope.kind == ScopeKind.PER_USER:
        return record.user_id == scope.key
    return record.provider_name == scope.key


class InMemoryCostLedger:
    """Process-local ledger.

    Appends and reads take a short lock; reads copy the list before summing
    so a sum never observes a half-written append.
    """

    def __init__(self) -> None:
        self._records: List[CostRecord] = []
        self._lock = threading.Lock()

    def record(self, record: CostRecord) -> None:
        with self._lock:
            self._records.append(record)

    def windowed_sum(
        self,
        scope: BudgetScope,
        window: timedelta,
        now: Optional[datetime] = None
    ) -> Decimal:
        end = _utc(now or datetime.now(timezone.utc))
        start = end - window
        with self._lock:
            records = list(self._records)
        return sum(
            (r.cost_amount for r in records
             if _matches(r, scope) and start <= _utc(r.timestamp) <= end),
            Decimal(0)
        )

    def records(self) -> List[CostRecord]:
        """Snapshot of all records in insertion order."""
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class SqliteCostLedger:
    """SQLite-backed ledger.

    Opens one connection per operation so concurrent callers on different
    threads never share a connection. Any sqlite3 error is surfaced as
    LedgerUnavailable.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the cost_record table if it doesn't exist.

        This creates an append-only ledger for immutable cost records.
        No UPDATE or DELETE operations should ever be performed on this table.
        """
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"Cannot open ledger at {self.db_path}: {e}") from e
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cost_record (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    provider_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    tokens_in INTEGER NOT NULL,
                    tokens_out INTEGER NOT NULL,
                    cost_amount TEXT NOT NULL,
                    request_id TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cost_record_timestamp ON cost_record (timestamp)"
            )
            conn.commit()
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"Cannot initialize ledger schema: {e}") from e
        finally:
            conn.close()

    def record(self, record: CostRecord) -> None:
        """Insert a single record into the append-only ledger."""
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"Cannot open ledger at {self.db_path}: {e}") from e
        try:
            conn.execute("""
                INSERT INTO cost_record
                (timestamp, provider_name, user_id, tokens_in, tokens_out,
                 cost_amount, request_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                _utc(record.timestamp).strftime(_TIMESTAMP_FORMAT),
                record.provider_name,
                record.user_id,
                record.tokens_in,
                record.tokens_out,
                str(record.cost_amount),
                record.request_id
            ))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerUnavailable(f"Cannot write cost record: {e}") from e
        finally:
            conn.close()

    def windowed_sum(
        self,
        scope: BudgetScope,
        window: timedelta,
        now: Optional[datetime] = None
    ) -> Decimal:
        """Sum cost_amount for records in scope within [now - window, now]."""
        end = _utc(now or datetime.now(timezone.utc))
        start = end - window
        query = "SELECT cost_amount FROM cost_record WHERE timestamp >= ? AND timestamp <= ?"
        params: list = [start.strftime(_TIMESTAMP_FORMAT), end.strftime(_TIMESTAMP_FORMAT)]
        if scope.kind == ScopeKind.PER_USER:
            query += " AND user_id = ?"
            params.append(scope.key)
        elif scope.kind == ScopeKind.PER_PROVIDER:
            query += " AND provider_name = ?"
            params.append(scope.key)

        rows = self._fetch(query, params)
        # Amounts are stored as text and summed as Decimal to stay exact
        return sum((Decimal(row[0]) for row in rows), Decimal(0))

    def fetch_recent_records(
        self,
        provider_name: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[CostRecord]:
        """Fetch recent records, optionally filtered by provider and user.

        Returns records in reverse chronological order (newest first).
        """
        query = """
            SELECT timestamp, provider_name, user_id, tokens_in, tokens_out,
                   cost_amount, request_id
            FROM cost_record
        """
        params: list = []
        conditions = []
        if provider_name:
            conditions.append("provider_name = ?")
            params.append(provider_name)
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        return [
            CostRecord(
                timestamp=datetime.strptime(row[0], _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc),
                provider_name=row[1],
                user_id=row[2],
                tokens_in=row[3],
                tokens_out=row[4],
                cost_amount=Decimal(row[5]),
                request_id=row[6]
            )
            for row in self._fetch(query, params)
        ]

    def get_usage_stats(self, window: timedelta, now: Optional[datetime] = None) -> Dict[str, Dict]:
        """Per-provider request count, token totals and spend within a window."""
        end = _utc(now or datetime.now(timezone.utc))
        start = end - window
        rows = self._fetch("""
            SELECT provider_name, tokens_in, tokens_out, cost_amount
            FROM cost_record
            WHERE timestamp >= ? AND timestamp <= ?
        """, [start.strftime(_TIMESTAMP_FORMAT), end.strftime(_TIMESTAMP_FORMAT)])

        stats: Dict[str, Dict] = {}
        for provider_name, tokens_in, tokens_out, cost_amount in rows:
            entry = stats.setdefault(provider_name, {
                "total_requests": 0,
                "tokens_in": 0,
                "tokens_out": 0,
                "total_cost": Decimal(0),
            })
            entry["total_requests"] += 1
            entry["tokens_in"] += tokens_in
            entry["tokens_out"] += tokens_out
            entry["total_cost"] += Decimal(cost_amount)
        return stats

    def _fetch(self, query: str, params: list) -> list:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"Cannot open ledger at {self.db_path}: {e}") from e
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"Cannot read cost records: {e}") from e
        finally:
            conn.close()
