"""
Tiered Classifier
=================

Composes the classification tiers for one word, strictly in order:

1. cache hit (unless the stored N1 is the unclassified sentinel)
2. morphological rules
3. verbatim dictionary lookup
4. the external AI tier, behind the rate limiter

Only tier 4 costs money or latency, so it runs only when 1-3 miss. An NC entry
that the AI tier already produced still gets tiers 2-3, but never a second AI
call; re-asking the AI about NC words is the reprocess job's work (`force`).
Multi-word expressions are recognized first and skip the rule tier. Calls for
the same word are serialized, so concurrent tokens of one word cost at most one
AI call.

Failure mapping:

- an AI miss stores NC with confidence 0 and is not an error
- an AI failure stores NC with confidence 0 and counts as an error
- a rate-limited call returns DEFERRED and stores nothing
- a cache write that fails twice counts as an error
- datastore read failures propagate so the whole chunk is retried
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from common.config import Settings
from common.utils import KeyedLocks, normalize_word

from .cache import CacheWriteError, DisambiguationCache, UpsertOutcome
from .expressions import match_expression
from .lexicon import Lexicon
from .provider import ClassificationProvider, ProviderError, ProviderOverloaded
from .rate_limiter import RateLimiter
from .rules import RuleEngine
from .taxonomy import ClassificationResult, Source

log = structlog.get_logger(__name__)

AI_SOURCES = frozenset({Source.AI_PRIMARY, Source.AI_SECONDARY})


class Tier(str, Enum):
    CACHE = "cache"
    RULE = "rule"
    DICTIONARY = "dictionary"
    AI = "ai"


class Outcome(str, Enum):
    CACHED = "cached"
    CLASSIFIED = "classified"
    IMPROVED = "improved"
    UNCHANGED = "unchanged"
    UNCLASSIFIED = "unclassified"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True)
class ClassificationOutcome:
    word: str
    status: Outcome
    tier: Tier | None = None
    result: ClassificationResult | None = None
    error: str | None = None
    expression: bool = False

    @property
    def is_error(self) -> bool:
        return self.status is Outcome.FAILED

    @property
    def is_deferred(self) -> bool:
        return self.status is Outcome.DEFERRED


class TieredClassifier:
    def __init__(
        self,
        cache: DisambiguationCache,
        rules: RuleEngine,
        lexicon: Lexicon,
        provider: ClassificationProvider,
        limiter: RateLimiter,
        dictionary_confidence: float = 0.95,
        max_wait_seconds: float | None = 120,
    ):
        self.cache = cache
        self.rules = rules
        self.lexicon = lexicon
        self.provider = provider
        self.limiter = limiter
        self.dictionary_confidence = dictionary_confidence
        self.max_wait_seconds = max_wait_seconds
        self._word_locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cache: DisambiguationCache,
        lexicon: Lexicon,
        provider: ClassificationProvider | None = None,
        limiter: RateLimiter | None = None,
    ) -> TieredClassifier:
        return cls(
            cache=cache,
            rules=RuleEngine(lexicon),
            lexicon=lexicon,
            provider=provider or ClassificationProvider(settings),
            limiter=limiter or RateLimiter.from_settings(settings),
            dictionary_confidence=settings.DICTIONARY_CONFIDENCE,
            max_wait_seconds=settings.AI_MAX_WAIT_SECONDS,
        )

    def classify(
        self,
        word: str,
        pos: str | None = None,
        context: str = "",
        context_key: str | None = None,
        secondary: bool = False,
        force: bool = False,
        wait: bool = True,
        should_stop: Callable[[], bool] | None = None,
        song_id: str | None = None,
        artist_id: str | None = None,
    ) -> ClassificationOutcome:
        """
        Classify one word and store the decision.

        ``force`` skips the cache short-circuit (reprocessing of NC and
        low-confidence entries); manual entries are still never touched.
        """
        word = normalize_word(word)
        if not word:
            raise ValueError("Cannot classify an empty word")
        with self._word_locks.hold((word, context_key or "")):
            return self._classify(
                word, pos, context, context_key, secondary, force, wait, should_stop,
                song_id, artist_id,
            )

    def _classify(
        self, word, pos, context, context_key, secondary, force, wait, should_stop,
        song_id, artist_id,
    ) -> ClassificationOutcome:
        expression = match_expression(word) is not None
        extra = {
            "context_key": context_key or "",
            "song_id": song_id,
            "artist_id": artist_id,
        }

        existing = self.cache.get(word, context_key)
        if existing is not None:
            if existing.source is Source.MANUAL or (
                not force and not existing.is_unclassified
            ):
                return ClassificationOutcome(
                    word, Outcome.CACHED, Tier.CACHE, existing, expression=expression
                )
        # The AI already gave up on this word; only a forced pass asks again.
        ai_miss = None
        if not force and existing is not None and existing.source in AI_SOURCES:
            ai_miss = existing

        if not expression:
            candidate = self.rules.classify(word, pos)
            if candidate is not None:
                return self._store(
                    candidate.to_result(word, **extra), Tier.RULE, Outcome.CLASSIFIED, expression
                )

        entry = self.lexicon.lookup(word)
        if entry is not None:
            result = ClassificationResult.from_code(
                word,
                entry.code,
                self.dictionary_confidence,
                Source.DICTIONARY,
                **extra,
            )
            return self._store(result, Tier.DICTIONARY, Outcome.CLASSIFIED, expression)

        if ai_miss is not None:
            return ClassificationOutcome(
                word, Outcome.UNCLASSIFIED, Tier.CACHE, ai_miss, expression=expression
            )

        return self._classify_with_ai(
            word, context, secondary, wait, should_stop, extra, expression
        )

    def _classify_with_ai(self, word, context, secondary, wait, should_stop, extra, expression):
        source = Source.AI_SECONDARY if secondary else Source.AI_PRIMARY
        if not self._acquire_slot(wait, should_stop):
            return ClassificationOutcome(word, Outcome.DEFERRED, Tier.AI, expression=expression)

        try:
            answer = self.provider.classify_word(word, context=context, secondary=secondary)
        except ProviderError as e:
            if isinstance(e, ProviderOverloaded):
                self.limiter.record_external_block(e.retry_after_ms)
            log.warning("AI tier failed; storing as unclassified", word=word, error=str(e))
            stored = self._store(
                ClassificationResult.unclassified(word, source=source, **extra),
                Tier.AI,
                Outcome.FAILED,
                expression,
            )
            return ClassificationOutcome(
                word, Outcome.FAILED, Tier.AI, stored.result, error=str(e), expression=expression
            )

        if answer.is_unclassified:
            result = ClassificationResult.unclassified(
                word, source=source, cultural_tags=answer.cultural_tags, **extra
            )
            return self._store(result, Tier.AI, Outcome.UNCLASSIFIED, expression)

        result = ClassificationResult.from_code(
            word,
            answer.code,
            answer.confidence,
            source,
            cultural_tags=answer.cultural_tags,
            **extra,
        )
        return self._store(result, Tier.AI, Outcome.CLASSIFIED, expression)

    def refine(
        self,
        entry: ClassificationResult,
        context: str = "",
        secondary: bool = False,
        wait: bool = True,
        should_stop: Callable[[], bool] | None = None,
    ) -> ClassificationOutcome:
        """
        Ask the AI tier for a deeper code under the entry's known N1.

        The answer is applied only when it is deeper and keeps the same N1.
        An AI failure leaves the entry as it was and counts as an error.
        """
        if entry.source is Source.MANUAL:
            return ClassificationOutcome(entry.word, Outcome.SKIPPED, Tier.CACHE, entry)
        if not self._acquire_slot(wait, should_stop):
            return ClassificationOutcome(entry.word, Outcome.DEFERRED, Tier.AI)

        try:
            answer = self.provider.classify_word(
                entry.word, context=context, secondary=secondary, parent_code=entry.code
            )
        except ProviderError as e:
            if isinstance(e, ProviderOverloaded):
                self.limiter.record_external_block(e.retry_after_ms)
            return ClassificationOutcome(
                entry.word, Outcome.FAILED, Tier.AI, entry, error=str(e)
            )

        if (
            answer.is_unclassified
            or answer.code.split(".", 1)[0] != entry.n1
            or answer.code.count(".") + 1 <= entry.depth
        ):
            return ClassificationOutcome(entry.word, Outcome.UNCHANGED, Tier.AI, entry)

        refined = entry.with_code(
            answer.code,
            confidence=answer.confidence,
            source=Source.AI_SECONDARY if secondary else Source.AI_PRIMARY,
            cultural_tags=entry.cultural_tags | answer.cultural_tags,
        )
        return self._store(refined, Tier.AI, Outcome.IMPROVED, False)

    def _acquire_slot(self, wait: bool, should_stop: Callable[[], bool] | None) -> bool:
        while True:
            if should_stop is not None and should_stop():
                return False
            if self.limiter.try_acquire():
                return True
            if not wait:
                return False
            if not self.limiter.wait_for_slot(self.max_wait_seconds, should_stop):
                return False

    def _store(
        self,
        result: ClassificationResult,
        tier: Tier,
        status: Outcome,
        expression: bool,
    ) -> ClassificationOutcome:
        try:
            written = self.cache.upsert(result)
        except CacheWriteError as e:
            return ClassificationOutcome(
                result.word, Outcome.FAILED, tier, result, error=str(e), expression=expression
            )
        if written is UpsertOutcome.SKIPPED_MANUAL:
            return ClassificationOutcome(
                result.word, Outcome.SKIPPED, tier, result, expression=expression
            )
        log.debug(
            "Word classified",
            word=result.word,
            tier=tier.value,
            code=result.code,
            confidence=result.confidence,
        )
        return ClassificationOutcome(result.word, status, tier, result, expression=expression)
