"""
Model to quota tier classification.

Maps a model identifier to the tier whose daily budget it draws from.
"""

from typing import Iterable, Tuple

from ..config.loader import DEFAULT_MINI_PREFIXES, DEFAULT_PREMIUM_PREFIXES
from ..log import get_logger
from ..storage.models import Tier

logger = get_logger(__name__)

MATCH_ORDER = (Tier.MINI, Tier.PREMIUM)


def normalize_model(model: str) -> str:
    """Canonical form of a model name used for prefix matching."""
    return model.strip().lower()


class TierClassifier:
    """Prefix based tier classifier.

    Mini prefixes are checked before premium ones: names such as
    ``gpt-4o-mini`` or ``o1-mini`` also start with a premium prefix
    (``gpt-4o``, ``o1``) and would otherwise land in the coarser tier.
    Unknown models default to premium, the more restrictive budget.
    """

    def __init__(
        self,
        premium_prefixes: Iterable[str] = DEFAULT_PREMIUM_PREFIXES,
        mini_prefixes: Iterable[str] = DEFAULT_MINI_PREFIXES,
    ):
        self._premium: Tuple[str, ...] = tuple(normalize_model(p) for p in premium_prefixes)
        self._mini: Tuple[str, ...] = tuple(normalize_model(p) for p in mini_prefixes)

    def classify(self, model: str) -> Tier:
        """Determine the tier for a model.

        Args:
            model: Model name as sent by the client or reported upstream

        Returns:
            The matching tier, or Tier.PREMIUM when nothing matches
        """
        name = normalize_model(model)
        for tier in MATCH_ORDER:
            if any(name.startswith(prefix) for prefix in self.prefixes_for(tier)):
                return tier

        logger.warning('Unknown model "%s" - defaulting to premium tier', model)
        return Tier.PREMIUM

    def prefixes_for(self, tier: Tier) -> Tuple[str, ...]:
        """Get the model prefixes configured for a tier."""
        return self._mini if tier == Tier.MINI else self._premium


def classifier_from_config(config) -> TierClassifier:
    """Build a classifier from a TierGuardConfig."""
    return TierClassifier(
        premium_prefixes=config.get_tier_config(Tier.PREMIUM.value).prefixes,
        mini_prefixes=config.get_tier_config(Tier.MINI.value).prefixes,
    )
