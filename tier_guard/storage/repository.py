"""
Repository pattern for data access.

Handles the usage_records, request_history and config tables.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import HistoryEntry, Tier, UsageRecord

CURRENT_DATE_KEY = "current_date"

_HISTORY_COLUMNS = """
    id, timestamp, model, tier, prompt_tokens, completion_tokens,
    total_tokens, request_path, status
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, history and config tables if they don't exist.

    request_history is an append-only table; no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_records (
                tier TEXT PRIMARY KEY,
                date TEXT NOT NULL,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                "limit" INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS request_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                model TEXT NOT NULL,
                tier TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                request_path TEXT NOT NULL,
                status INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_request_history_timestamp
            ON request_history(timestamp DESC)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _utc_iso(moment: datetime) -> str:
    """ISO text of an instant in UTC, the form timestamps are stored in.

    Naive datetimes are taken to be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        tier=Tier(row[0]),
        date=row[1],
        tokens_used=row[2],
        limit=row[3]
    )


def _row_to_entry(row) -> HistoryEntry:
    return HistoryEntry(
        id=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        model=row[2],
        tier=Tier(row[3]),
        prompt_tokens=row[4],
        completion_tokens=row[5],
        total_tokens=row[6],
        request_path=row[7],
        status=row[8]
    )


class UsageRepository:
    """Repository for the usage ledger and request history.

    Holds no locks of its own: serialization of writers is the job of the
    QuotaLedger, which is the only caller of the usage_records writes.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create tables for this repository's database."""
        initialize_schema(self.db_path)

    # Config

    def get_config_value(self, key: str) -> Optional[str]:
        """Read a value from the config table."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set_config_value(self, key: str, value: str) -> None:
        """Insert or replace a value in the config table."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO config (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (key, value))
            conn.commit()
        finally:
            conn.close()

    # Usage records

    def get_usage_record(self, tier: Tier) -> Optional[UsageRecord]:
        """Get the live usage record of a tier, if one exists."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                'SELECT tier, date, tokens_used, "limit" FROM usage_records WHERE tier = ?',
                (tier.value,)
            ).fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def ensure_usage_records(self, day: str, limits: Dict[Tier, int]) -> None:
        """Create missing tier records and sync every tier's limit.

        Existing counters and dates are left untouched. The current date
        marker is written only if it is not set yet.

        Args:
            day: Date used for newly created records and the date marker
            limits: Configured daily limit per tier
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute(
                "INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)",
                (CURRENT_DATE_KEY, day)
            )
            for tier, limit in limits.items():
                conn.execute("""
                    INSERT INTO usage_records (tier, date, tokens_used, "limit")
                    VALUES (?, ?, 0, ?)
                    ON CONFLICT(tier) DO UPDATE SET "limit" = excluded."limit"
                """, (tier.value, day, limit))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def increment_tokens(self, tier: Tier, tokens: int) -> None:
        """Add tokens to a tier's counter."""
        self.apply_increments({tier: tokens})

    def apply_increments(self, increments: Dict[Tier, int]) -> None:
        """Add tokens to several tier counters in a single transaction.

        Args:
            increments: Tokens to add per tier
        """
        if not increments:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for tier, tokens in increments.items():
                cursor = conn.execute(
                    "UPDATE usage_records SET tokens_used = tokens_used + ? WHERE tier = ?",
                    (tokens, tier.value)
                )
                if cursor.rowcount != 1:
                    raise LookupError(f"No usage record for tier {tier.value}")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def reset_usage(self, day: str, limits: Dict[Tier, int]) -> None:
        """Replace every tier record with a zeroed one and advance the date.

        Counters and the date marker change in one transaction, so no reader
        sees a new date with an old counter.

        Args:
            day: The new current date
            limits: Configured daily limit per tier
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for tier, limit in limits.items():
                conn.execute("""
                    INSERT INTO usage_records (tier, date, tokens_used, "limit")
                    VALUES (?, ?, 0, ?)
                    ON CONFLICT(tier) DO UPDATE SET
                        date = excluded.date,
                        tokens_used = 0,
                        "limit" = excluded."limit"
                """, (tier.value, day, limit))
            conn.execute("""
                INSERT INTO config (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (CURRENT_DATE_KEY, day))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Request history

    def insert_history_entry(self, entry: HistoryEntry) -> HistoryEntry:
        """Append an entry to the history table.

        Args:
            entry: The entry to record; its id is ignored

        Returns:
            The stored entry carrying the id assigned by the database
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO request_history
                (timestamp, model, tier, prompt_tokens, completion_tokens,
                 total_tokens, request_path, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                _utc_iso(entry.timestamp),
                entry.model,
                entry.tier.value,
                entry.prompt_tokens,
                entry.completion_tokens,
                entry.total_tokens,
                entry.request_path,
                entry.status
            ))
            conn.commit()
            return HistoryEntry(
                id=cursor.lastrowid,
                timestamp=entry.timestamp,
                model=entry.model,
                tier=entry.tier,
                prompt_tokens=entry.prompt_tokens,
                completion_tokens=entry.completion_tokens,
                total_tokens=entry.total_tokens,
                request_path=entry.request_path,
                status=entry.status
            )
        finally:
            conn.close()

    def fetch_history(self, limit: int = 100, offset: int = 0) -> List[HistoryEntry]:
        """Fetch history entries, newest first.

        Args:
            limit: Maximum number of entries to return
            offset: Number of newest entries to skip

        Returns:
            List of entries ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_HISTORY_COLUMNS}
                FROM request_history
                ORDER BY timestamp DESC, id DESC
                LIMIT ? OFFSET ?
            """, (limit, offset))
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_history_between(self, start: datetime, end: datetime) -> List[HistoryEntry]:
        """Fetch entries with start <= timestamp < end, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_HISTORY_COLUMNS}
                FROM request_history
                WHERE timestamp >= ? AND timestamp < ?
                ORDER BY timestamp ASC, id ASC
            """, (_utc_iso(start), _utc_iso(end)))
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_history(self) -> int:
        """Total number of history entries."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT COUNT(*) FROM request_history").fetchone()
            return row[0]
        finally:
            conn.close()
