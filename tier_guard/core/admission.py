"""
Admission control.

Decides, before a request is forwarded, whether its tier still has budget.
"""

from dataclasses import dataclass
from typing import Optional

from ..log import get_logger
from ..storage.models import Tier
from .errors import ClientInputError, QuotaExceededError
from .ledger import QuotaLedger
from .tiers import TierClassifier

logger = get_logger(__name__)

RESET_TIME = "00:00 UTC"


@dataclass(frozen=True)
class Decision:
    """Result of an admission check.

    ``day`` is the ledger date the check was made against; the accounting
    of the request is charged to that day only.
    """
    allowed: bool
    tier: Tier
    day: str
    used: int
    limit: int
    reason: Optional[str] = None


class AdmissionController:
    """Checks a tier's daily budget before forwarding.

    The check is advisory: a request admitted just under the limit may push
    the counter over it once its usage is known.
    """

    def __init__(self, ledger: QuotaLedger, classifier: TierClassifier):
        self.ledger = ledger
        self.classifier = classifier

    def admit(self, model) -> Decision:
        """Decide whether a request for ``model`` may be forwarded.

        Args:
            model: The ``model`` field of the request payload

        Returns:
            Decision allowing or denying the request

        Raises:
            ClientInputError: If the model is missing or not a string
        """
        if not isinstance(model, str) or not model.strip():
            raise ClientInputError("Model parameter is required")

        self.ledger.check_and_rollover()
        tier = self.classifier.classify(model)
        record = self.ledger.get(tier)

        if record.remaining == 0:
            reason = (
                f"Daily limit for {tier.value} tier exceeded "
                f"({record.tokens_used}/{record.limit} tokens). Resets at {RESET_TIME}."
            )
            logger.warning("Blocked %s: %s", model, reason)
            return Decision(
                allowed=False,
                tier=tier,
                day=record.date,
                used=record.tokens_used,
                limit=record.limit,
                reason=reason,
            )

        return Decision(
            allowed=True,
            tier=tier,
            day=record.date,
            used=record.tokens_used,
            limit=record.limit,
        )

    def enforce(self, model) -> Decision:
        """Like admit(), but raise when the request is denied.

        Raises:
            ClientInputError: If the model is missing or not a string
            QuotaExceededError: If the tier's budget is exhausted
        """
        decision = self.admit(model)
        if not decision.allowed:
            raise QuotaExceededError(decision.reason, decision)
        return decision
