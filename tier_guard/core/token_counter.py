"""
Token usage extraction.

Reads the ``usage`` object of an upstream completion response.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported for one request."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        """Build usage whose total is prompt + completion."""
        return cls(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def extract_usage(body: Union[bytes, str, dict, None]) -> Optional[TokenUsage]:
    """Extract token usage from a response body.

    Embedding responses carry no completion_tokens; those count as zero.
    A missing total_tokens is computed from the other two.

    Args:
        body: Raw or decoded JSON response body

    Returns:
        TokenUsage, or None if the body has no usable usage object
    """
    if body is None:
        return None

    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return None

    if not isinstance(body, dict):
        return None

    usage = body.get("usage")
    if not isinstance(usage, dict):
        return None

    prompt_tokens = usage.get("prompt_tokens", 0)
    completion_tokens = usage.get("completion_tokens", 0)
    if not (_is_count(prompt_tokens) and _is_count(completion_tokens)):
        return None

    total_tokens = usage.get("total_tokens")
    if total_tokens is None:
        return TokenUsage.from_counts(prompt_tokens, completion_tokens)
    if not _is_count(total_tokens):
        return None

    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens
    )
