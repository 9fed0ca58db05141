"""
Dictionary / base-lookup adapter.

The lexicon is read-only reference data: a word's curated taxonomy codes.
The rule engine uses it to resolve the base of a diminutive or prefixed
form, and the tiered classifier uses it for verbatim dictionary hits.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Protocol

import structlog

from common.supabase import SupabaseClient
from common.utils import normalize_word

from .taxonomy import UNCLASSIFIED

log = structlog.get_logger(__name__)

LEXICON_TABLE = "semantic_lexicon"
MEMO_SIZE = 20_000


@dataclass(frozen=True)
class LexiconEntry:
    word: str
    n1: str
    n2: str | None = None
    n3: str | None = None
    n4: str | None = None
    pos: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> LexiconEntry:
        return cls(
            word=row["word"],
            n1=row["n1"],
            n2=row.get("n2"),
            n3=row.get("n3"),
            n4=row.get("n4"),
            pos=row.get("pos"),
        )

    @property
    def code(self) -> str:
        for level in (self.n4, self.n3, self.n2):
            if level:
                return level
        return self.n1


class Lexicon(Protocol):
    def lookup(self, word: str) -> LexiconEntry | None:
        ...


class SupabaseLexicon:
    """
    Lexicon backed by the ``semantic_lexicon`` table.

    Lookups are memoized, including misses; the table changes rarely and
    inheritance lookups ask for the same stems many times per chunk. The memo
    keeps the `memo_size` most recently used words.
    """

    def __init__(
        self,
        client: SupabaseClient,
        table: str = LEXICON_TABLE,
        memo_size: int = MEMO_SIZE,
    ):
        self._client = client
        self._table = table
        self._memo_size = max(1, memo_size)
        self._lock = threading.RLock()
        self._memo: OrderedDict[str, LexiconEntry | None] = OrderedDict()

    def lookup(self, word: str) -> LexiconEntry | None:
        key = normalize_word(word)
        if not key:
            return None
        with self._lock:
            if key in self._memo:
                self._memo.move_to_end(key)
                return self._memo[key]
        rows = self._client.select(
            self._table,
            filters={"word": f"eq.{key}"},
            columns="word,n1,n2,n3,n4,pos",
            limit=1,
        )
        entry = None
        if rows and rows[0].get("n1") and rows[0]["n1"] != UNCLASSIFIED:
            entry = LexiconEntry.from_row(rows[0])
        with self._lock:
            self._memo[key] = entry
            self._memo.move_to_end(key)
            while len(self._memo) > self._memo_size:
                self._memo.popitem(last=False)
        return entry

    def clear(self) -> None:
        """Forget memoized lookups, e.g. after the lexicon was curated."""
        with self._lock:
            self._memo.clear()
        log.debug("Lexicon memo cleared", table=self._table)
