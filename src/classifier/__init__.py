"""
Classification domain package.

This package contains:

- taxonomy types and the closed set of provenance values
- the morphological rule engine and the lexicon (base-lookup) adapter
- regional multi-word expressions
- the AI classification provider (prompt + parsing + LLM calls)
- the rate limiter guarding the AI tier
- the disambiguation cache access layer
- the tiered classifier composing all of the above
"""

from .cache import BatchReport, CacheWriteError, DisambiguationCache, UpsertOutcome
from .lexicon import LexiconEntry, SupabaseLexicon
from .provider import (
    AIClassification,
    ClassificationProvider,
    ProviderError,
    ProviderOverloaded,
    parse_classification_response,
)
from .rate_limiter import RateLimiter
from .rules import RuleEngine, has_pattern, rule_stats
from .taxonomy import UNCLASSIFIED, ClassificationResult, Source, TaxonomyCode, split_code
from .tiered import ClassificationOutcome, Outcome, Tier, TieredClassifier

__all__ = [
    "AIClassification",
    "BatchReport",
    "CacheWriteError",
    "ClassificationOutcome",
    "ClassificationProvider",
    "ClassificationResult",
    "DisambiguationCache",
    "LexiconEntry",
    "Outcome",
    "ProviderError",
    "ProviderOverloaded",
    "RateLimiter",
    "RuleEngine",
    "Source",
    "SupabaseLexicon",
    "TaxonomyCode",
    "Tier",
    "TieredClassifier",
    "UNCLASSIFIED",
    "UpsertOutcome",
    "has_pattern",
    "parse_classification_response",
    "rule_stats",
    "split_code",
]
