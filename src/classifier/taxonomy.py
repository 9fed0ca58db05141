"""
Taxonomy types shared by every classification tier.

A taxonomy code is dot-delimited with one to four segments (``AB``,
``AB.01``, ``AB.01.03``). Each depth maps to one level, N1 to N4, and the
levels are stored as cumulative prefixes of the deepest code.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

UNCLASSIFIED = "NC"
MAX_DEPTH = 4


class Source(str, Enum):
    """Which tier produced a classification."""

    RULE_BASED = "rule-based"
    DICTIONARY = "dictionary"
    DICTIONARY_INHERITED = "dictionary-inherited"
    AI_PRIMARY = "ai-primary"
    AI_SECONDARY = "ai-secondary"
    MANUAL = "manual"

    @property
    def is_ai(self) -> bool:
        return self in (Source.AI_PRIMARY, Source.AI_SECONDARY)


def split_code(code: str) -> tuple[str | None, str | None, str | None, str | None]:
    """
    Expand a code into its four levels.

    >>> split_code("AB.01.03")
    ('AB', 'AB.01', 'AB.01.03', None)
    """
    segments = [segment.strip() for segment in str(code).strip().split(".")]
    if not segments or len(segments) > MAX_DEPTH or any(not s for s in segments):
        raise ValueError(f"Invalid taxonomy code: {code!r}")
    levels: list[str | None] = [
        ".".join(segments[: depth + 1]) for depth in range(len(segments))
    ]
    levels.extend([None] * (MAX_DEPTH - len(levels)))
    return levels[0], levels[1], levels[2], levels[3]


@dataclass(frozen=True)
class TaxonomyCode:
    value: str

    def __post_init__(self):
        split_code(self.value)
        object.__setattr__(self, "value", self.value.strip().upper())

    @property
    def depth(self) -> int:
        return self.value.count(".") + 1

    @property
    def n1(self) -> str:
        return self.value.split(".", 1)[0]

    @property
    def parent(self) -> TaxonomyCode | None:
        if self.depth == 1:
            return None
        return TaxonomyCode(self.value.rsplit(".", 1)[0])

    @property
    def levels(self) -> tuple[str | None, str | None, str | None, str | None]:
        return split_code(self.value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClassificationResult:
    """
    One classification decision as stored in the disambiguation cache.

    ``context_key`` is empty for context-free entries; context-sensitive
    entries carry a song/artist derived key and coexist with the
    context-free entry for the same word.
    """

    word: str
    n1: str
    confidence: float
    source: Source
    n2: str | None = None
    n3: str | None = None
    n4: str | None = None
    cultural_tags: frozenset[str] = field(default_factory=frozenset)
    context_key: str = ""
    song_id: str | None = None
    artist_id: str | None = None
    base_word: str | None = None
    rule: str | None = None

    def __post_init__(self):
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"Confidence out of range: {self.confidence!r}")
        object.__setattr__(self, "source", Source(self.source))
        object.__setattr__(self, "cultural_tags", frozenset(self.cultural_tags or ()))

    @classmethod
    def from_code(cls, word: str, code: str, confidence: float, source: Source, **kwargs):
        n1, n2, n3, n4 = split_code(code)
        return cls(
            word=word, n1=n1, n2=n2, n3=n3, n4=n4,
            confidence=confidence, source=source, **kwargs,
        )

    @classmethod
    def unclassified(cls, word: str, source: Source = Source.AI_PRIMARY, **kwargs):
        return cls(word=word, n1=UNCLASSIFIED, confidence=0.0, source=source, **kwargs)

    @property
    def is_unclassified(self) -> bool:
        return self.n1 == UNCLASSIFIED

    @property
    def code(self) -> str:
        """The deepest known code."""
        for level in (self.n4, self.n3, self.n2):
            if level:
                return level
        return self.n1

    @property
    def depth(self) -> int:
        return self.code.count(".") + 1

    def with_code(self, code: str, **changes) -> ClassificationResult:
        n1, n2, n3, n4 = split_code(code)
        return replace(self, n1=n1, n2=n2, n3=n3, n4=n4, **changes)

    def to_row(self) -> dict:
        return {
            "word": self.word,
            "context_key": self.context_key,
            "n1": self.n1,
            "n2": self.n2,
            "n3": self.n3,
            "n4": self.n4,
            "confidence": round(float(self.confidence), 4),
            "source": self.source.value,
            "cultural_tags": sorted(self.cultural_tags),
            "song_id": self.song_id,
            "artist_id": self.artist_id,
            "base_word": self.base_word,
        }

    @classmethod
    def from_row(cls, row: dict) -> ClassificationResult:
        return cls(
            word=row["word"],
            n1=row.get("n1") or UNCLASSIFIED,
            n2=row.get("n2"),
            n3=row.get("n3"),
            n4=row.get("n4"),
            confidence=float(row.get("confidence") or 0.0),
            source=Source(row.get("source") or Source.AI_PRIMARY.value),
            cultural_tags=frozenset(row.get("cultural_tags") or ()),
            context_key=row.get("context_key") or "",
            song_id=row.get("song_id"),
            artist_id=row.get("artist_id"),
            base_word=row.get("base_word"),
        )
