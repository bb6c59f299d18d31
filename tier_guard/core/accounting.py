"""
Accounting of completed requests.

Applies the usage of a forwarded request to the ledger and the history log.
"""

from dataclasses import dataclass
from typing import Any, Optional

from ..log import get_logger
from ..storage.models import HistoryEntry, Tier
from .errors import AccountingError, AccountingInconsistencyError
from .history import HistoryLog
from .ledger import Clock, QuotaLedger, utc_now
from .token_counter import extract_usage

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestOutcome:
    """What is known about a forwarded request once it completed."""
    model: str
    tier: Tier
    path: str
    status: int
    is_streaming: bool
    response_body: Any = None
    day: Optional[str] = None


class Accountant:
    """Records usage of completed requests.

    Streaming responses are not counted: their usage is only known once the
    stream ends and bodies are not buffered. Reconciliation closes that gap.
    """

    def __init__(self, ledger: QuotaLedger, history: HistoryLog, clock: Optional[Clock] = None):
        self.ledger = ledger
        self.history = history
        self.clock = clock or utc_now

    def account(self, outcome: RequestOutcome) -> Optional[HistoryEntry]:
        """Charge a completed request to its tier and log it.

        Args:
            outcome: The completed request

        Returns:
            The history entry written, or None when nothing was billable

        Raises:
            AccountingError: If the ledger could not be updated
            AccountingInconsistencyError: If the ledger was updated but the
                history entry could not be written
        """
        if outcome.is_streaming:
            logger.info(
                "Streaming request: %s (%s tier) - token tracking not available for streaming",
                outcome.model, outcome.tier.value,
            )
            return None

        usage = extract_usage(outcome.response_body)
        if usage is None or usage.total_tokens <= 0:
            logger.debug("No billable usage in response for %s %s", outcome.model, outcome.path)
            return None

        try:
            self.ledger.increment(outcome.tier, usage.total_tokens, outcome.day)
        except Exception as e:
            raise AccountingError(
                f"Failed to record {usage.total_tokens} tokens for {outcome.tier.value} tier: {e}"
            ) from e

        entry = HistoryEntry(
            timestamp=self.clock(),
            model=outcome.model,
            tier=outcome.tier,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            request_path=outcome.path,
            status=outcome.status
        )
        try:
            stored = self.history.append(entry)
        except Exception as e:
            raise AccountingInconsistencyError(
                f"Ledger charged {usage.total_tokens} tokens to {outcome.tier.value} tier "
                f"but the history entry for {outcome.model} was not written: {e}",
                tier=outcome.tier,
                tokens=usage.total_tokens,
            ) from e

        logger.info(
            "Request tracked: %s (%s tier) - %d tokens used",
            outcome.model, outcome.tier.value, usage.total_tokens,
        )
        return stored
