"""
Morphological Rule Engine
=========================

Zero-cost classification from Portuguese suffixes and prefixes.

Suffix rules are tried first, most specific (longest affix, then highest
confidence) first. A rule with a part-of-speech requirement fires only when
the caller supplies exactly that part of speech.

Inheritance rules (diminutives, augmentatives and every prefix rule) do not
carry a domain of their own: they strip the affix, look the base word up in
the lexicon, and return the base word's codes at the rule's own, lower,
confidence. A failed lookup skips the rule rather than ending the search.

The engine holds no mutable state and is safe to share between threads.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

import structlog

from common.utils import normalize_word

from .lexicon import Lexicon
from .taxonomy import ClassificationResult, Source

log = structlog.get_logger(__name__)

INHERIT = "INHERIT"
SUFFIX = "suffix"
PREFIX = "prefix"

MIN_SUFFIX_BASE_LENGTH = 3
MIN_PREFIX_BASE_LENGTH = 4


@dataclass(frozen=True)
class MorphologicalRule:
    affix: str
    n1: str
    confidence: float
    description: str
    n2: str | None = None
    requires_pos: str | None = None
    kind: str = SUFFIX
    # Gender vowel to try on the stripped stem ("gauch" -> "gaucho").
    base_vowel: str | None = None
    spellings: tuple[str, ...] = ()
    pattern: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        alternatives = "|".join(re.escape(s) for s in (self.affix,) + self.spellings)
        if self.kind == SUFFIX:
            regex = rf"(?:{alternatives})$"
        else:
            regex = rf"^(?:{alternatives})"
        object.__setattr__(self, "pattern", re.compile(regex, re.IGNORECASE))

    @property
    def inherits(self) -> bool:
        return self.n1 == INHERIT

    def matches(self, word: str) -> bool:
        return self.pattern.search(word) is not None

    def strip(self, word: str) -> str:
        return self.pattern.sub("", word, count=1)


def _suffix(affix, n1, confidence, description, n2=None, pos=None, vowel=None):
    return MorphologicalRule(
        affix=affix,
        n1=n1,
        n2=n2,
        confidence=confidence,
        description=description,
        requires_pos=pos,
        base_vowel=vowel,
    )


def _prefix(affix, confidence, description, spellings=()):
    return MorphologicalRule(
        affix=affix,
        n1=INHERIT,
        confidence=confidence,
        description=description,
        kind=PREFIX,
        spellings=tuple(spellings),
    )


def _by_priority(rules: Iterable[MorphologicalRule]) -> tuple[MorphologicalRule, ...]:
    return tuple(sorted(rules, key=lambda r: (-len(r.affix), -r.confidence)))


SUFFIX_RULES = _by_priority(
    [
        # Action / process nouns
        _suffix("ção", "AP", 0.88, "Action/process (-ção)", n2="AP.01", pos="NOUN"),
        _suffix("mento", "AP", 0.85, "Action/result (-mento)", n2="AP.01", pos="NOUN"),
        _suffix("agem", "AP", 0.82, "Action/collection (-agem)", pos="NOUN"),
        # Agents
        _suffix("dor", "SH", 0.90, "Professional agent (-dor)", n2="SH.02", pos="NOUN"),
        _suffix("eiro", "SH", 0.85, "Occupation (-eiro)", n2="SH.02", pos="NOUN"),
        _suffix("ista", "SH", 0.87, "Professional/adherent (-ista)", n2="SH.02", pos="NOUN"),
        _suffix("ante", "SH", 0.80, "Agent (-ante)", pos="NOUN"),
        # Qualities
        _suffix("oso", "SE", 0.83, "Abundant quality (-oso)", pos="ADJ"),
        _suffix("ável", "AB", 0.80, "Capability (-ável)", pos="ADJ"),
        _suffix("ível", "AB", 0.80, "Capability (-ível)", pos="ADJ"),
        _suffix("ico", "CC", 0.78, "Relating to knowledge (-ico)", pos="ADJ"),
        _suffix("al", "AB", 0.75, "Relating to (-al)", pos="ADJ"),
        # Abstract nouns
        _suffix("idade", "AB", 0.85, "Abstract quality (-idade)", pos="NOUN"),
        _suffix("eza", "AB", 0.83, "Abstract quality (-eza)", pos="NOUN"),
        _suffix("ismo", "CC", 0.88, "Doctrine/movement (-ismo)", n2="CC.06", pos="NOUN"),
        _suffix("ura", "AB", 0.78, "Result/quality (-ura)", pos="NOUN"),
        # Adverbs
        _suffix("mente", "MG", 0.95, "Adverb of manner (-mente)", pos="ADV"),
        # Diminutives / augmentatives
        _suffix("zinho", INHERIT, 0.75, "Diminutive (-zinho)", vowel="o"),
        _suffix("zinha", INHERIT, 0.75, "Diminutive (-zinha)", vowel="a"),
        _suffix("inho", INHERIT, 0.70, "Diminutive (-inho)", vowel="o"),
        _suffix("inha", INHERIT, 0.70, "Diminutive (-inha)", vowel="a"),
        _suffix("ão", INHERIT, 0.65, "Augmentative (-ão)", vowel="o"),
        _suffix("ona", INHERIT, 0.65, "Augmentative (-ona)", vowel="a"),
    ]
)

PREFIX_RULES = _by_priority(
    [
        _prefix("des", 0.75, "Negation/reversal (des-)"),
        _prefix("in", 0.72, "Negation (in-)"),
        _prefix("re", 0.70, "Repetition (re-)"),
        _prefix("pré", 0.68, "Anteriority (pré-)", spellings=("pre",)),
        _prefix("anti", 0.75, "Opposition (anti-)"),
        _prefix("contra", 0.75, "Opposition (contra-)"),
    ]
)


@dataclass(frozen=True)
class ClassificationCandidate:
    """What a rule proposes for a word, before it is stored."""

    n1: str
    confidence: float
    source: Source
    rule: str
    n2: str | None = None
    n3: str | None = None
    n4: str | None = None
    base_word: str | None = None

    def to_result(self, word: str, **kwargs) -> ClassificationResult:
        return ClassificationResult(
            word=word,
            n1=self.n1,
            n2=self.n2,
            n3=self.n3,
            n4=self.n4,
            confidence=self.confidence,
            source=self.source,
            base_word=self.base_word,
            rule=self.rule,
            **kwargs,
        )


class RuleEngine:
    """Suffix/prefix classifier with lexicon-backed inheritance."""

    def __init__(
        self,
        lexicon: Lexicon | None = None,
        suffix_rules: Iterable[MorphologicalRule] = SUFFIX_RULES,
        prefix_rules: Iterable[MorphologicalRule] = PREFIX_RULES,
    ):
        self._lexicon = lexicon
        self._suffix_rules = tuple(suffix_rules)
        self._prefix_rules = tuple(prefix_rules)

    def classify(self, word: str, pos: str | None = None) -> ClassificationCandidate | None:
        """
        Return the first rule-derived candidate for *word*, or None.

        None is not an error; it tells the caller to try the next tier.
        """
        word = normalize_word(word)
        if not word or " " in word:
            return None
        pos = pos.strip().upper() if pos else None

        for rule in self._suffix_rules:
            if not rule.matches(word):
                continue
            if rule.requires_pos and rule.requires_pos != pos:
                continue
            if rule.inherits:
                candidate = self._inherit(word, rule, MIN_SUFFIX_BASE_LENGTH)
                if candidate is not None:
                    return candidate
                continue
            return ClassificationCandidate(
                n1=rule.n1,
                n2=rule.n2,
                confidence=rule.confidence,
                source=Source.RULE_BASED,
                rule=rule.description,
            )

        for rule in self._prefix_rules:
            if not rule.matches(word):
                continue
            candidate = self._inherit(word, rule, MIN_PREFIX_BASE_LENGTH)
            if candidate is not None:
                return candidate
        return None

    def _inherit(
        self, word: str, rule: MorphologicalRule, min_length: int
    ) -> ClassificationCandidate | None:
        if self._lexicon is None:
            return None
        stem = rule.strip(word)
        if len(stem) < min_length:
            return None
        for base in _base_candidates(stem, rule.base_vowel):
            entry = self._lexicon.lookup(base)
            if entry is None:
                continue
            log.debug("Inherited classification", word=word, base_word=base, rule=rule.description)
            return ClassificationCandidate(
                n1=entry.n1,
                n2=entry.n2,
                n3=entry.n3,
                n4=entry.n4,
                confidence=rule.confidence,
                source=Source.DICTIONARY_INHERITED,
                rule=f'{rule.description} of "{base}"',
                base_word=base,
            )
        return None


def _base_candidates(stem: str, vowel: str | None) -> list[str]:
    candidates = [stem]
    if vowel and not stem.endswith(vowel):
        candidates.append(stem + vowel)
    return candidates


def has_pattern(
    word: str,
    suffix_rules: Iterable[MorphologicalRule] = SUFFIX_RULES,
    prefix_rules: Iterable[MorphologicalRule] = PREFIX_RULES,
) -> bool:
    """Cheap pre-filter: does any rule's affix match the word at all?"""
    word = normalize_word(word)
    return any(rule.matches(word) for rule in suffix_rules) or any(
        rule.matches(word) for rule in prefix_rules
    )


def rule_stats(
    suffix_rules: Iterable[MorphologicalRule] = SUFFIX_RULES,
    prefix_rules: Iterable[MorphologicalRule] = PREFIX_RULES,
) -> dict[str, int]:
    suffix_rules = tuple(suffix_rules)
    prefix_rules = tuple(prefix_rules)
    return {
        "total_suffix_rules": len(suffix_rules),
        "total_prefix_rules": len(prefix_rules),
        "total_rules": len(suffix_rules) + len(prefix_rules),
        "rules_with_pos": sum(1 for r in suffix_rules if r.requires_pos),
        "inheritance_rules": sum(1 for r in suffix_rules if r.inherits),
    }
