"""
Tests for model to tier classification.
"""

from unittest.mock import patch

import pytest

from tier_guard.config.loader import (
    DEFAULT_MINI_PREFIXES,
    DEFAULT_PREMIUM_PREFIXES,
    default_config,
)
from tier_guard.core.tiers import TierClassifier, classifier_from_config
from tier_guard.storage.models import Tier


class TestTierClassifier:
    """Test prefix matching and defaults."""

    def setup_method(self):
        self.classifier = TierClassifier()

    @pytest.mark.parametrize("model", [
        "gpt-5", "gpt-5-codex", "gpt-5-chat-latest", "gpt-4.1",
        "gpt-4o", "gpt-4o-2024-08-06", "o1", "o1-preview", "o3", "o3-pro",
    ])
    def test_premium_models(self, model):
        assert self.classifier.classify(model) == Tier.PREMIUM

    @pytest.mark.parametrize("model", [
        "gpt-5-mini", "gpt-5-nano", "gpt-4.1-mini", "gpt-4.1-nano",
        "gpt-4o-mini", "gpt-4o-mini-2024-07-18", "o1-mini", "o3-mini",
        "o4-mini", "codex-mini-latest",
    ])
    def test_mini_models(self, model):
        assert self.classifier.classify(model) == Tier.MINI

    def test_mini_prefix_wins_over_shorter_premium_prefix(self):
        """gpt-4o-mini also starts with the premium prefix gpt-4o."""
        assert "gpt-4o-mini".startswith("gpt-4o")
        assert self.classifier.classify("gpt-4o-mini") == Tier.MINI
        assert self.classifier.classify("o1-mini-2024-09-12") == Tier.MINI

    def test_every_configured_prefix_classifies_to_its_tier(self):
        for prefix in DEFAULT_MINI_PREFIXES:
            assert self.classifier.classify(prefix) == Tier.MINI
        for prefix in DEFAULT_PREMIUM_PREFIXES:
            assert self.classifier.classify(prefix) == Tier.PREMIUM

    def test_classification_is_deterministic(self):
        results = {self.classifier.classify("gpt-4.1-nano") for _ in range(10)}
        assert results == {Tier.MINI}

    def test_names_are_normalized(self):
        assert self.classifier.classify("  GPT-4o-Mini ") == Tier.MINI
        assert self.classifier.classify("GPT-4O") == Tier.PREMIUM

    def test_unknown_model_defaults_to_premium_with_warning(self):
        with patch("tier_guard.core.tiers.logger") as mock_logger:
            assert self.classifier.classify("claude-3-opus") == Tier.PREMIUM

        mock_logger.warning.assert_called_once()
        assert "claude-3-opus" in mock_logger.warning.call_args[0]

    def test_empty_name_defaults_to_premium(self):
        assert self.classifier.classify("") == Tier.PREMIUM

    def test_known_model_does_not_warn(self):
        with patch("tier_guard.core.tiers.logger") as mock_logger:
            self.classifier.classify("gpt-4o")

        mock_logger.warning.assert_not_called()

    def test_custom_prefixes(self):
        classifier = TierClassifier(premium_prefixes=["big-"], mini_prefixes=["big-small"])

        assert classifier.classify("big-model") == Tier.PREMIUM
        assert classifier.classify("big-small-1") == Tier.MINI
        assert classifier.prefixes_for(Tier.MINI) == ("big-small",)
        assert classifier.prefixes_for(Tier.PREMIUM) == ("big-",)

    def test_classifier_from_config(self):
        classifier = classifier_from_config(default_config())

        assert classifier.prefixes_for(Tier.PREMIUM) == DEFAULT_PREMIUM_PREFIXES
        assert classifier.prefixes_for(Tier.MINI) == DEFAULT_MINI_PREFIXES
