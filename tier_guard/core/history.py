"""
Append-only request history.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import List

from ..storage.models import HistoryEntry
from ..storage.repository import UsageRepository
from .errors import NotInitializedError

MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class Pagination:
    limit: int
    offset: int
    total: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "offset": self.offset,
            "total": self.total,
            "hasMore": self.has_more,
        }


@dataclass(frozen=True)
class HistoryPage:
    """One page of history, newest entry first."""
    entries: List[HistoryEntry]
    pagination: Pagination

    def to_dict(self) -> dict:
        return {
            "data": [entry.to_dict() for entry in self.entries],
            "pagination": self.pagination.to_dict(),
        }


class HistoryLog:
    """Sole writer of history entries."""

    def __init__(self, repository: UsageRepository):
        self.repository = repository

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Record an entry; returns it with the id assigned by the store."""
        return self.repository.insert_history_entry(entry)

    def page(self, limit: int = 100, offset: int = 0) -> HistoryPage:
        """Read a page of entries, newest first.

        Args:
            limit: Page size, 1 to MAX_PAGE_SIZE
            offset: Number of newest entries to skip

        Raises:
            ValueError: If limit or offset is out of range
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValueError("offset must be >= 0")

        try:
            entries = self.repository.fetch_history(limit, offset)
            total = self.repository.count_history()
        except sqlite3.OperationalError as e:
            raise NotInitializedError() from e
        return HistoryPage(
            entries=entries,
            pagination=Pagination(
                limit=limit,
                offset=offset,
                total=total,
                has_more=offset + limit < total,
            ),
        )

    def entries_between(self, start: datetime, end: datetime) -> List[HistoryEntry]:
        """Entries with start <= timestamp < end, oldest first."""
        return self.repository.fetch_history_between(start, end)

    def count(self) -> int:
        return self.repository.count_history()
