"""
Repository pattern for usage ledger persistence.

Every write is an INSERT into an append-only table; rows are never
updated or deleted.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord

_COLUMNS = (
    "timestamp, call_type, provider, model, input_tokens, "
    "completion_tokens, cost_usd, source, retry_count"
)


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        timestamp=datetime.fromisoformat(row[0]),
        call_type=row[1],
        provider=row[2],
        model=row[3],
        input_tokens=row[4],
        completion_tokens=row[5],
        cost_usd=row[6],
        source=row[7],
        retry_count=row[8]
    )


def _record_params(record: UsageRecord) -> tuple:
    return (
        record.timestamp.isoformat(),
        record.call_type,
        record.provider,
        record.model,
        record.input_tokens,
        record.completion_tokens,
        record.cost_usd,
        record.source,
        record.retry_count
    )


GROUP_COLUMNS = ("call_type", "model", "provider")


class UsageRepository:
    """Read access to persisted usage records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_usage_stats(
        self,
        days: Optional[int] = 30,
        group_by: str = "call_type",
        hours: Optional[int] = None
    ) -> Dict[str, Dict[str, float]]:
        """Aggregate usage per call type, model or provider.

        Args:
            days: Look-back window in days, or None for all records
            group_by: Grouping column: call_type, model or provider
            hours: Look-back window in hours; overrides ``days`` when given

        Returns:
            Mapping of group key to requests, input/completion tokens and cost

        Raises:
            ValueError: If group_by is not a known column
        """
        if group_by not in GROUP_COLUMNS:
            raise ValueError(f"Cannot group usage by '{group_by}'; expected one of {', '.join(GROUP_COLUMNS)}")

        conn = get_connection(self.db_path)
        try:
            query = f"""
                SELECT {group_by},
                       COUNT(*),
                       SUM(input_tokens),
                       SUM(completion_tokens),
                       SUM(cost_usd)
                FROM llm_usage_record
            """
            params: list = []
            window = timedelta(hours=hours) if hours is not None else (
                timedelta(days=days) if days is not None else None
            )
            if window is not None:
                query += " WHERE timestamp >= ?"
                params.append((datetime.now() - window).isoformat())
            query += f" GROUP BY {group_by} ORDER BY {group_by}"

            stats = {}
            for row in conn.execute(query, params).fetchall():
                stats[row[0]] = {
                    "requests": row[1] or 0,
                    "input_tokens": row[2] or 0,
                    "completion_tokens": row[3] or 0,
                    "cost_usd": float(row[4] or 0),
                }
            return stats
        finally:
            conn.close()

    def total_cost(self, days: Optional[int] = None) -> float:
        return sum(s["cost_usd"] for s in self.get_usage_stats(days).values())


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the llm_usage_record table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS llm_usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                call_type TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                source TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage record to the ledger table."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO llm_usage_record ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _record_params(record)
        )
        conn.commit()
    finally:
        conn.close()


def insert_usage_records(records: List[UsageRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append several records in one transaction.

    Args:
        records: Usage records to persist
        db_path: Path to SQLite database file
    """
    if not records:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        conn.executemany(
            f"INSERT INTO llm_usage_record ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [_record_params(record) for record in records]
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_recent_usage_records(
    call_type: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch recent usage records, newest first.

    Args:
        call_type: Optional filter for a single call type
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_COLUMNS} FROM llm_usage_record"
        params: list = []
        if call_type:
            query += " WHERE call_type = ?"
            params.append(call_type)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()
