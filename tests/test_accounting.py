"""
Tests for usage extraction and accounting.
"""

import json
import sqlite3
from unittest.mock import Mock

import pytest

from tier_guard.core.accounting import Accountant, RequestOutcome
from tier_guard.core.errors import AccountingError, AccountingInconsistencyError
from tier_guard.core.token_counter import TokenUsage, extract_usage
from tier_guard.storage.models import Tier


def completion_body(prompt=100, completion=50, total=150) -> bytes:
    return json.dumps({
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "model": "gpt-4o",
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": total,
        },
    }).encode("utf-8")


def outcome(body=None, streaming=False, status=200, tier=Tier.PREMIUM, model="gpt-4o", day=None):
    return RequestOutcome(
        model=model,
        tier=tier,
        path="/v1/chat/completions",
        status=status,
        is_streaming=streaming,
        response_body=body,
        day=day,
    )


class TestExtractUsage:
    """Test parsing of the usage object."""

    def test_from_bytes(self):
        assert extract_usage(completion_body()) == TokenUsage(100, 50, 150)

    def test_from_dict_and_str(self):
        body = {"usage": {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}}

        assert extract_usage(body) == TokenUsage(7, 3, 10)
        assert extract_usage(json.dumps(body)) == TokenUsage(7, 3, 10)

    def test_embedding_usage_without_completion_tokens(self):
        body = {"object": "list", "usage": {"prompt_tokens": 8, "total_tokens": 8}}

        assert extract_usage(body) == TokenUsage(8, 0, 8)

    def test_missing_total_is_computed(self):
        body = {"usage": {"prompt_tokens": 8, "completion_tokens": 2}}

        assert extract_usage(body) == TokenUsage.from_counts(8, 2)

    @pytest.mark.parametrize("body", [
        None,
        b"",
        b"not json",
        b"[1, 2]",
        {"id": "x"},
        {"usage": None},
        {"usage": {"prompt_tokens": "100", "completion_tokens": 1}},
        {"usage": {"prompt_tokens": -1, "completion_tokens": 1}},
        {"usage": {"prompt_tokens": True, "completion_tokens": 1}},
    ])
    def test_unusable_bodies(self, body):
        assert extract_usage(body) is None


class TestAccountant:
    """Test ledger and history updates for completed requests."""

    @pytest.fixture(autouse=True)
    def setup(self, ledger, history, clock):
        self.ledger = ledger
        self.history = history
        self.accountant = Accountant(ledger, history, clock)

    def test_non_streaming_usage_is_recorded(self):
        before = self.ledger.usage_stats().tiers[Tier.PREMIUM].used
        total_before = self.history.count()

        entry = self.accountant.account(outcome(completion_body(), day="2025-01-14"))

        assert self.ledger.usage_stats().tiers[Tier.PREMIUM].used == before + 150
        assert self.history.count() == total_before + 1
        stored = self.history.page().entries[0]
        assert stored == entry
        assert (stored.prompt_tokens, stored.completion_tokens, stored.total_tokens) == (100, 50, 150)
        assert stored.total_tokens == stored.prompt_tokens + stored.completion_tokens
        assert stored.model == "gpt-4o"
        assert stored.tier == Tier.PREMIUM
        assert stored.request_path == "/v1/chat/completions"
        assert stored.status == 200
        assert stored.timestamp.isoformat().startswith("2025-01-14T12:00:00")

    @pytest.mark.parametrize("status", [200, 400, 500])
    def test_streaming_is_never_counted(self, status):
        result = self.accountant.account(outcome(completion_body(), streaming=True, status=status))

        assert result is None
        assert self.ledger.get(Tier.PREMIUM).tokens_used == 0
        assert self.history.count() == 0

    @pytest.mark.parametrize("body", [None, b"{}", b"<html>", completion_body(0, 0, 0)])
    def test_nothing_billable_is_skipped(self, body):
        assert self.accountant.account(outcome(body)) is None
        assert self.ledger.get(Tier.PREMIUM).tokens_used == 0
        assert self.history.count() == 0

    def test_error_status_with_usage_is_counted(self):
        self.accountant.account(outcome(completion_body(), status=400))

        assert self.ledger.get(Tier.PREMIUM).tokens_used == 150
        assert self.history.page().entries[0].status == 400

    def test_usage_lands_on_the_resolved_tier(self):
        self.accountant.account(outcome(completion_body(10, 5, 15), tier=Tier.MINI, model="gpt-4o-mini"))

        assert self.ledger.get(Tier.MINI).tokens_used == 15
        assert self.ledger.get(Tier.PREMIUM).tokens_used == 0

    def test_usage_of_rolled_over_day_keeps_history(self, clock):
        clock.advance(days=1)
        self.ledger.check_and_rollover()

        entry = self.accountant.account(outcome(completion_body(), day="2025-01-14"))

        assert entry is not None
        assert self.ledger.get(Tier.PREMIUM).tokens_used == 0
        assert self.history.count() == 1

    def test_history_failure_after_increment_is_inconsistency(self):
        failing_history = Mock()
        failing_history.append.side_effect = sqlite3.OperationalError("database is locked")
        accountant = Accountant(self.ledger, failing_history)

        with pytest.raises(AccountingInconsistencyError) as excinfo:
            accountant.account(outcome(completion_body()))

        assert self.ledger.get(Tier.PREMIUM).tokens_used == 150
        assert excinfo.value.tier == Tier.PREMIUM
        assert excinfo.value.tokens == 150

    def test_increment_failure_skips_history(self):
        failing_ledger = Mock()
        failing_ledger.increment.side_effect = sqlite3.OperationalError("disk I/O error")
        history = Mock()
        accountant = Accountant(failing_ledger, history)

        with pytest.raises(AccountingError) as excinfo:
            accountant.account(outcome(completion_body()))

        assert not isinstance(excinfo.value, AccountingInconsistencyError)
        history.append.assert_not_called()
