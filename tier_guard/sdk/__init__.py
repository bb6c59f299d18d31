"""
SDK for Tier Guard.

Provides in-process quota enforcement for OpenAI client calls.
"""

from .openai_client import GuardedOpenAI

__all__ = ["GuardedOpenAI"]
