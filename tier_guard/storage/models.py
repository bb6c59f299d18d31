"""
Data models for storage layer.

Defines the ledger and history entities.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Tier(str, Enum):
    """Quota bucket a model is billed against."""
    PREMIUM = "premium"
    MINI = "mini"


@dataclass(frozen=True)
class UsageRecord:
    """Token counter of a tier for the day it applies to.

    There is one live record per tier. At the UTC day boundary the record is
    replaced with a zeroed one; the previous day's total is not kept.
    """
    tier: Tier
    date: str  # YYYY-MM-DD, UTC
    tokens_used: int
    limit: int

    @property
    def remaining(self) -> int:
        """Tokens left before admission starts denying, never negative."""
        return max(0, self.limit - self.tokens_used)


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of one accounted request.

    Append-only: once written, these records are never modified.
    """
    timestamp: datetime
    model: str
    tier: Tier
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    request_path: str
    status: int
    id: Optional[int] = None

    def to_dict(self) -> dict:
        """Plain representation for JSON responses."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "model": self.model,
            "tier": self.tier.value,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "request_path": self.request_path,
            "status": self.status,
        }
