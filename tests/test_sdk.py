"""
Unit tests for SDK layer.

Tests OpenAI client wrapper quota enforcement and usage recording.
"""

import sqlite3
from unittest.mock import Mock, patch

import pytest

from tier_guard.config.loader import TierGuardConfig
from tier_guard.core.errors import AccountingInconsistencyError, QuotaExceededError
from tier_guard.core.service import TierGuardService
from tier_guard.sdk.openai_client import GuardedOpenAI
from tier_guard.storage.models import Tier


def mock_completion(prompt=100, completion=50, total=150):
    response = Mock()
    response.id = "chatcmpl-123"
    response.usage.prompt_tokens = prompt
    response.usage.completion_tokens = completion
    response.usage.total_tokens = total
    return response


class TestGuardedOpenAI:
    """Test GuardedOpenAI client wrapper."""

    @pytest.fixture(autouse=True)
    def setup(self, db_path, clock):
        self.service = TierGuardService.from_config(
            TierGuardConfig(database_path=db_path), api_key="sk-test", clock=clock
        )
        self.service.initialize()
        yield
        self.service.close()

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        mock_openai_class.return_value = Mock()

        client = GuardedOpenAI(model="gpt-4o", service=self.service)

        assert client.model == "gpt-4o"
        assert client.service is self.service
        assert client.client is mock_openai_class.return_value
        assert client.last_entry is None

    def test_init_with_explicit_client(self):
        openai_client = Mock()

        client = GuardedOpenAI(model="gpt-4o", service=self.service, client=openai_client)

        assert client.client is openai_client

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            GuardedOpenAI(model="", service=self.service, client=Mock())

        with pytest.raises(ValueError, match="model is required"):
            GuardedOpenAI(model=None, service=self.service, client=Mock())

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_chat_success_records_usage(self, mock_openai_class):
        """Test successful chat call charges the tier and logs history."""
        mock_response = mock_completion()
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_response
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o-mini", service=self.service)
        messages = [{"role": "user", "content": "Hello"}]
        response = client.chat(messages=messages)

        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4o-mini",
            messages=messages,
            temperature=None,
            max_tokens=None
        )
        assert response == mock_response

        assert self.service.ledger.get(Tier.MINI).tokens_used == 150
        assert self.service.ledger.get(Tier.PREMIUM).tokens_used == 0

        entries = self.service.get_history().entries
        assert len(entries) == 1
        entry = entries[0]
        assert entry == client.last_entry
        assert entry.model == "gpt-4o-mini"
        assert entry.tier == Tier.MINI
        assert (entry.prompt_tokens, entry.completion_tokens, entry.total_tokens) == (100, 50, 150)
        assert entry.request_path == "/v1/chat/completions"

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_chat_with_optional_parameters(self, mock_openai_class):
        """Test chat call passes temperature, max_tokens and extra kwargs."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_completion()
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o", service=self.service)
        messages = [{"role": "user", "content": "Hello"}]
        client.chat(messages=messages, temperature=0.7, max_tokens=1000, stop=["\n"])

        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4o",
            messages=messages,
            temperature=0.7,
            max_tokens=1000,
            stop=["\n"]
        )

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_exhausted_tier_blocks_before_calling_openai(self, mock_openai_class):
        """Test quota denial raises and never reaches the API."""
        mock_client = Mock()
        mock_openai_class.return_value = mock_client
        self.service.ledger.increment(Tier.PREMIUM, 1_000_000)

        client = GuardedOpenAI(model="gpt-4o", service=self.service)

        with pytest.raises(QuotaExceededError, match="premium tier exceeded"):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        mock_client.chat.completions.create.assert_not_called()

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_chat_openai_failure_nothing_recorded(self, mock_openai_class):
        """Test OpenAI API failure does not record usage."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = Exception("API Error")
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o", service=self.service)

        with pytest.raises(Exception, match="API Error"):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        assert self.service.ledger.get(Tier.PREMIUM).tokens_used == 0
        assert self.service.history.count() == 0

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_streaming_call_is_not_counted(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = iter([Mock(), Mock()])
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o", service=self.service)
        client.chat(messages=[{"role": "user", "content": "Hello"}], stream=True)

        assert client.last_entry is None
        assert self.service.ledger.get(Tier.PREMIUM).tokens_used == 0
        assert self.service.history.count() == 0

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_response_without_usage_is_not_counted(self, mock_openai_class):
        mock_response = Mock()
        mock_response.usage = None
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_response
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o", service=self.service)
        response = client.chat(messages=[{"role": "user", "content": "Hello"}])

        assert response is mock_response
        assert self.service.history.count() == 0

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_history_failure_raises_error(self, mock_openai_class):
        """Test storage failure is raised, not swallowed."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_completion()
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o", service=self.service)

        with patch.object(
            self.service.history, "append", side_effect=sqlite3.OperationalError("database is locked")
        ):
            with pytest.raises(AccountingInconsistencyError):
                client.chat(messages=[{"role": "user", "content": "Hello"}])

        assert self.service.ledger.get(Tier.PREMIUM).tokens_used == 150

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_chat_empty_messages_raises_error(self, mock_openai_class):
        """Test empty messages raises error."""
        mock_openai_class.return_value = Mock()

        client = GuardedOpenAI(model="gpt-4o", service=self.service)

        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=[])

        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=None)

    @patch('tier_guard.sdk.openai_client.OpenAI')
    def test_exactly_one_entry_per_successful_call(self, mock_openai_class):
        """Test exactly one history entry is recorded per successful call."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_completion()
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI(model="gpt-4o", service=self.service)
        for _ in range(3):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        assert self.service.history.count() == 3
        assert self.service.ledger.get(Tier.PREMIUM).tokens_used == 450
