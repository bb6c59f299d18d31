"""
Daily per-tier token ledger.

Owns the current day's counters and the UTC daily rollover. Every write to
the usage records goes through QuotaLedger so that increments, corrections
and rollovers of a tier are strictly ordered.
"""

import sqlite3
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterator, Mapping, Optional

from ..log import get_logger
from ..storage.models import Tier, UsageRecord
from ..storage.repository import CURRENT_DATE_KEY, UsageRepository
from .errors import NotInitializedError, ReconciliationError

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current instant in UTC."""
    return datetime.now(timezone.utc)


def utc_date(moment: datetime) -> str:
    """Calendar day of an instant in UTC, as YYYY-MM-DD.

    The upstream provider resets its daily quotas at 00:00 UTC, so days are
    always counted in UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date().isoformat()


@dataclass(frozen=True)
class TierStats:
    """Usage of one tier as shown to callers."""
    used: int
    limit: int
    percentage: float

    def to_dict(self) -> dict:
        return {"used": self.used, "limit": self.limit, "percentage": self.percentage}


@dataclass(frozen=True)
class UsageStats:
    """Usage of every tier for the current day."""
    date: str
    tiers: Dict[Tier, TierStats]

    def to_dict(self) -> dict:
        body = {tier.value: stats.to_dict() for tier, stats in self.tiers.items()}
        body["date"] = self.date
        return body


@dataclass(frozen=True)
class Correction:
    """Outcome of an upward correction of one tier's counter."""
    before: int
    after: int
    added: int
    upstream: int

    def to_dict(self) -> dict:
        return {
            "before": self.before,
            "after": self.after,
            "added": self.added,
            "upstream": self.upstream,
        }


class QuotaLedger:
    """Current day token counters for every tier.

    Each tier has its own lock. Increments take the lock of their tier;
    rollovers and reconciliation corrections take every tier lock, always in
    Tier declaration order. Locks guard only store access and are never held
    across a call to the upstream API.
    """

    def __init__(
        self,
        repository: UsageRepository,
        limits: Mapping[Tier, int],
        clock: Optional[Clock] = None,
    ):
        """Initialize the ledger.

        Args:
            repository: Store holding the usage records
            limits: Configured daily limit per tier
            clock: Source of the current instant, UTC now by default
        """
        missing = set(Tier) - set(limits)
        if missing:
            raise ValueError(f"Missing daily limits for tiers: {sorted(t.value for t in missing)}")
        for tier, limit in limits.items():
            if limit <= 0:
                raise ValueError(f"Daily limit for {tier.value} tier must be > 0")

        self.repository = repository
        self.limits: Dict[Tier, int] = {tier: limits[tier] for tier in Tier}
        self.clock = clock or utc_now
        self._locks: Dict[Tier, threading.Lock] = {tier: threading.Lock() for tier in Tier}

    def today(self) -> str:
        """Current UTC date according to the ledger's clock."""
        return utc_date(self.clock())

    @contextmanager
    def _all_tiers_locked(self) -> Iterator[None]:
        with ExitStack() as stack:
            for tier in Tier:
                stack.enter_context(self._locks[tier])
            yield

    def initialize(self) -> None:
        """Create the store tables and the per-tier records.

        Safe to call on every start: existing counters are kept, limits are
        synced with the configuration.
        """
        self.repository.initialize_schema()
        with self._all_tiers_locked():
            self.repository.ensure_usage_records(self.today(), self.limits)
        logger.info(
            "Ledger initialized at %s (premium limit %d, mini limit %d)",
            self.repository.db_path,
            self.limits[Tier.PREMIUM],
            self.limits[Tier.MINI],
        )

    def current_date(self) -> str:
        """Date for which the counters are currently valid."""
        try:
            value = self.repository.get_config_value(CURRENT_DATE_KEY)
        except sqlite3.OperationalError as e:
            raise NotInitializedError() from e
        if value is None:
            raise NotInitializedError()
        return value

    def get(self, tier: Tier) -> UsageRecord:
        """Read-only snapshot of a tier's usage record."""
        try:
            record = self.repository.get_usage_record(tier)
        except sqlite3.OperationalError as e:
            raise NotInitializedError() from e
        if record is None:
            raise NotInitializedError()
        return record

    def increment(self, tier: Tier, tokens: int, day: Optional[str] = None) -> bool:
        """Add tokens to a tier's counter.

        The limit is not enforced here: usage is always recorded, even when
        the counter ends up above the limit.

        Args:
            tier: Tier to charge
            tokens: Non-negative number of tokens
            day: Date the usage belongs to; when it is no longer the ledger's
                date the counter it belonged to is gone and nothing is added

        Returns:
            True if the counter was incremented
        """
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0:
            raise ValueError(f"tokens must be a non-negative integer, got {tokens!r}")

        with self._locks[tier]:
            if day is not None:
                current = self.current_date()
                if current != day:
                    logger.warning(
                        "Dropping %d %s tokens from %s: ledger already rolled over to %s",
                        tokens, tier.value, day, current,
                    )
                    return False
            try:
                self.repository.increment_tokens(tier, tokens)
            except LookupError as e:
                raise NotInitializedError() from e
            except sqlite3.OperationalError as e:
                if "no such table" in str(e).lower():
                    raise NotInitializedError() from e
                raise
        return True

    def check_and_rollover(self) -> bool:
        """Reset every counter if the UTC date changed since the last call.

        Idempotent within a UTC day, so it can run before every admission
        check and stats read.

        Returns:
            True if a rollover happened
        """
        today = self.today()
        if self.current_date() == today:
            return False

        with self._all_tiers_locked():
            previous = self.current_date()
            if previous == today:
                return False
            self.repository.reset_usage(today, self.limits)

        logger.info("New day detected: %s -> %s. Resetting usage counters.", previous, today)
        return True

    def percentage(self, tier: Tier) -> float:
        """Share of the daily limit used, in percent. Not clamped at 100."""
        record = self.get(tier)
        return record.tokens_used / record.limit * 100

    def correct_upward(self, targets: Mapping[Tier, int], day: str) -> Dict[Tier, Correction]:
        """Raise counters to authoritative totals, never lowering them.

        For every tier, adds max(0, target - tokens_used). All additions are
        applied in one transaction while every tier lock is held.

        Args:
            targets: Authoritative token total per tier
            day: Date the totals belong to; must be the ledger's date

        Returns:
            Before/after/added per tier

        Raises:
            ReconciliationError: If the ledger is no longer on ``day``
        """
        with self._all_tiers_locked():
            current = self.current_date()
            if current != day:
                raise ReconciliationError(
                    f"Ledger moved to {current} while reconciling {day}; retry the reconciliation"
                )

            before = {tier: self.get(tier).tokens_used for tier in Tier}
            added = {
                tier: max(0, targets.get(tier, 0) - before[tier])
                for tier in Tier
            }
            self.repository.apply_increments(
                {tier: tokens for tier, tokens in added.items() if tokens > 0}
            )
            after = {tier: self.get(tier).tokens_used for tier in Tier}

        for tier in Tier:
            if added[tier] > 0:
                logger.info("Added %s tokens to %s tier", f"{added[tier]:,}", tier.value)

        return {
            tier: Correction(
                before=before[tier],
                after=after[tier],
                added=added[tier],
                upstream=targets.get(tier, 0),
            )
            for tier in Tier
        }

    def usage_stats(self) -> UsageStats:
        """Usage of every tier, after applying a pending rollover."""
        self.check_and_rollover()
        tiers = {}
        for tier in Tier:
            record = self.get(tier)
            tiers[tier] = TierStats(
                used=record.tokens_used,
                limit=record.limit,
                percentage=record.tokens_used / record.limit * 100,
            )
        return UsageStats(date=self.current_date(), tiers=tiers)


def parse_day(value: Optional[object], clock: Optional[Clock] = None) -> str:
    """Resolve a date, a YYYY-MM-DD string or None (today) to YYYY-MM-DD.

    Raises:
        ValueError: If a string is not a valid YYYY-MM-DD date
    """
    if value is None:
        return utc_date((clock or utc_now)())
    if isinstance(value, datetime):
        return utc_date(value)
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValueError(f'Invalid date: "{value}". Expected format: YYYY-MM-DD')
