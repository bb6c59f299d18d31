"""
Guarded OpenAI client wrapper.

Applies the proxy's admission and accounting to in-process SDK calls.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.accounting import RequestOutcome
from ..core.service import TierGuardService
from ..storage.models import HistoryEntry

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"


class GuardedOpenAI:
    """OpenAI client wrapper that enforces tier quotas.

    Requests are checked against the tier budget before they are sent and
    their usage is charged to the same ledger the proxy uses.
    """

    def __init__(self, model: str, service: TierGuardService, client: Optional[OpenAI] = None):
        """Initialize guarded OpenAI client.

        Args:
            model: OpenAI model name (required)
            service: Initialized proxy service holding the ledger
            client: OpenAI client to use (defaults to a new OpenAI())

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.service = service
        self.client = client or OpenAI()
        self.last_entry: Optional[HistoryEntry] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ):
        """Create chat completion with quota enforcement and accounting.

        Streaming calls are admitted but not counted; reconciliation picks
        their usage up later.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            QuotaExceededError: If the model's tier has no budget left
            OpenAI API errors: Propagated without modification
            AccountingError: If usage could not be recorded
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        decision = self.service.admission.enforce(self.model)

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        is_streaming = kwargs.get("stream") is True
        self.last_entry = self.service.accountant.account(RequestOutcome(
            model=self.model,
            tier=decision.tier,
            path=CHAT_COMPLETIONS_PATH,
            status=200,
            is_streaming=is_streaming,
            response_body=None if is_streaming else _usage_body(response),
            day=decision.day,
        ))

        return response


def _usage_body(response: Any) -> Optional[Dict[str, Any]]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    return {
        "usage": {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0),
            "completion_tokens": getattr(usage, "completion_tokens", 0),
            "total_tokens": getattr(usage, "total_tokens", None),
        }
    }
