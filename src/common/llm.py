"""
Shared LLM helpers.

This module centralizes the OpenAI-compatible chat completion call so every
AI tier reuses the same retry behavior and logging patterns.

Rate-limit responses are not retried here; they reach the caller so the AI
rate limiter can enter its cooldown window.
"""

import openai

from .utils import retry

RETRYABLE_OPENAI_EXCEPTIONS = (
    openai.APIConnectionError,
    openai.InternalServerError,
)


class OpenAIChatMixin:
    """
    Mixin providing a retried OpenAI-compatible chat completion call.

    The mixin expects ``self.settings`` to expose ``MAX_RETRIES`` and
    ``MAX_RETRY_BACKOFF_SECONDS`` for the retry decorator.
    """

    @retry(retryable_exceptions=RETRYABLE_OPENAI_EXCEPTIONS)
    def _create_completion(self, **kwargs):
        """Call the OpenAI-compatible chat completion API with retries."""
        return openai.chat.completions.create(**kwargs)
