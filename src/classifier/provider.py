"""
AI Classification Provider
==========================

This module handles the external AI tier: a short prompt per word (with a
key-word-in-context window when one is available) sent to an
OpenAI-compatible chat completion API, and a parsing layer that turns the
JSON reply into a taxonomy code.

The AI service is treated as unreliable. Every failure surfaces as a
`ProviderError`; an explicit overload signal surfaces as
`ProviderOverloaded` so the caller can trip the rate limiter.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import openai
import structlog

from common.config import Settings
from common.llm import OpenAIChatMixin

from .taxonomy import UNCLASSIFIED, split_code

log = structlog.get_logger(__name__)

DEFAULT_AI_CONFIDENCE = 0.85
TAXONOMY_VERSION = "v2"

CLASSIFICATION_PROMPT = """
You are an expert in the semantic classification of Brazilian Portuguese,
with particular knowledge of regional (gaúcho, nordestino, sertanejo) song lyrics.

Classify the word into the hierarchical semantic taxonomy (version {version}).
Codes are dot-delimited with up to four levels, e.g. "SH", "SH.02", "SH.02.01".

- Always reply only with a single, valid JSON object that matches the schema below.
Do not wrap it in markdown or add explanations. Do not wrap in ``` or similar.

----------  JSON schema  ----------
{{
  "code":          string,   # most specific code you are confident about
  "confidence":    number,   # between 0.70 and 1.00
  "cultural_tags": string[], # regional/cultural markers, may be empty
  "rationale":     string    # one short sentence
}}
-----------------------------------

Rules
-----
1. Prefer the most specific level (N4 > N3 > N2 > N1).
2. The CONTEXT is essential for polysemous words; use it when present.
3. Without context, use the most generic applicable classification.
4. If the word cannot be classified at all, reply with code "NC".
""".strip()

REFINEMENT_HINT = (
    "The word is already classified under \"{code}\". Reply with a more specific "
    "code under that domain; keep the same first level."
)


class ProviderError(RuntimeError):
    """The AI tier failed: timeout, API error, or a malformed reply."""


class ProviderOverloaded(ProviderError):
    """The AI service explicitly signalled overload (HTTP 429 or equivalent)."""

    def __init__(self, message: str, retry_after_ms: int | None = None):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


@dataclass(frozen=True)
class AIClassification:
    code: str
    confidence: float
    model: str
    cultural_tags: frozenset[str] = field(default_factory=frozenset)
    rationale: str = ""

    @property
    def is_unclassified(self) -> bool:
        return self.code == UNCLASSIFIED


def _extract_json(text: str) -> dict:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def _deepest_code(data: dict) -> str:
    """
    Pick the code from the reply.

    Accepts either a single ``code`` or explicit ``n1``..``n4`` levels; levels
    that do not extend the previous one are ignored.
    """
    code = str(data.get("code") or "").strip().upper()
    if code:
        return code
    n1 = str(data.get("n1") or "").strip().upper()
    if not n1:
        raise ValueError("Classification response has no code.")
    deepest = n1
    for key in ("n2", "n3", "n4"):
        level = str(data.get(key) or "").strip().upper()
        if not level or not level.startswith(deepest + "."):
            break
        deepest = level
    return deepest


def parse_classification_response(text: str, model: str = "") -> AIClassification:
    """
    Parse and sanitize the classification response.
    """
    raw = text.strip()
    if not raw:
        raise ValueError("Classification response is empty.")

    data = _extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError("Classification response is not a JSON object.")

    code = _deepest_code(data)
    if code != UNCLASSIFIED:
        split_code(code)

    try:
        confidence = float(data.get("confidence", DEFAULT_AI_CONFIDENCE))
    except (TypeError, ValueError):
        confidence = DEFAULT_AI_CONFIDENCE
    confidence = min(1.0, max(0.0, confidence))

    tags_value = data.get("cultural_tags", [])
    if isinstance(tags_value, str):
        tags_list = [tags_value] if tags_value.strip() else []
    elif isinstance(tags_value, list):
        tags_list = tags_value
    else:
        tags_list = []

    return AIClassification(
        code=code,
        confidence=confidence,
        model=model,
        cultural_tags=frozenset(str(t).strip() for t in tags_list if str(t).strip()),
        rationale=str(data.get("rationale") or "").strip(),
    )


def _retry_after_ms(error: openai.APIStatusError) -> int | None:
    try:
        value = error.response.headers.get("retry-after")
    except AttributeError:
        return None
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except ValueError:
        return None


class ClassificationProvider(OpenAIChatMixin):
    """
    Classification provider that uses OpenAI-compatible chat completions.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def classify_word(
        self,
        word: str,
        context: str = "",
        secondary: bool = False,
        parent_code: str | None = None,
    ) -> AIClassification:
        """
        Classify one word, returning the parsed reply.

        Raises ProviderError on any failure; the caller decides what to store.
        """
        model = self.settings.SECONDARY_MODEL if secondary else self.settings.PRIMARY_MODEL
        lines = [f'Word: "{word}"']
        if context:
            lines.append(f'Context: "{context}"')
        else:
            lines.append("[No context available]")
        if parent_code:
            lines.append(REFINEMENT_HINT.format(code=parent_code))

        messages = [
            {
                "role": "system",
                "content": CLASSIFICATION_PROMPT.format(version=TAXONOMY_VERSION),
            },
            {"role": "user", "content": "\n".join(lines)},
        ]
        params = {
            "model": model,
            "messages": messages,
            "timeout": self.settings.REQUEST_TIMEOUT,
        }
        if self.settings.AI_MAX_TOKENS:
            params["max_tokens"] = self.settings.AI_MAX_TOKENS

        try:
            response = self._create_completion(**params)
        except openai.RateLimitError as e:
            log.warning("Classification service overloaded", model=model, word=word)
            raise ProviderOverloaded(str(e), _retry_after_ms(e)) from e
        except openai.APIError as e:
            log.warning("Classification model failed", model=model, word=word, error=str(e))
            raise ProviderError(f"{model} failed: {e}") from e

        try:
            content = response.choices[0].message.content or ""
            return parse_classification_response(content, model=model)
        except (json.JSONDecodeError, ValueError, IndexError, AttributeError) as e:
            log.warning(
                "Classification response invalid", model=model, word=word, error=str(e)
            )
            raise ProviderError(f"{model} returned an invalid response: {e}") from e
