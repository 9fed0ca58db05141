"""
Work sources: what each job type iterates over.

Every source pages through its table by ascending ``id``; the job cursor
is the last id handled, so a resumed job continues exactly after it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from classifier.cache import DisambiguationCache
from classifier.taxonomy import UNCLASSIFIED, ClassificationResult, Source
from common.config import Settings
from common.supabase import SupabaseClient, in_
from common.utils import extract_context

from .models import JobScope, JobType

TOKENS_TABLE = "corpus_tokens"


@dataclass(frozen=True)
class WorkItem:
    key: int
    word: str
    pos: str | None = None
    context: str = ""
    song_id: str | None = None
    artist_id: str | None = None
    entry: ClassificationResult | None = None


class WorkSource(Protocol):
    def count(self, scope: JobScope) -> int:
        ...

    def fetch(self, scope: JobScope, after: int | None, limit: int) -> list[WorkItem]:
        ...


def _after(filters: dict[str, str], after: int | None) -> dict[str, str]:
    if after is not None:
        filters["id"] = f"gt.{after}"
    return filters


class CorpusTokenSource:
    """Tokens of one corpus, for annotation jobs."""

    columns = "id,word,pos,song_id,artist_id,context"

    def __init__(self, client: SupabaseClient, settings: Settings):
        self._client = client
        self._window = settings.CONTEXT_WINDOW_CHARS

    @staticmethod
    def _filters(scope: JobScope) -> dict[str, str]:
        if not scope.corpus_id:
            raise ValueError("Annotation jobs need a corpus_id")
        return {"corpus_id": f"eq.{scope.corpus_id}"}

    def count(self, scope: JobScope) -> int:
        return self._client.count(TOKENS_TABLE, self._filters(scope))

    def fetch(self, scope: JobScope, after: int | None, limit: int) -> list[WorkItem]:
        rows = self._client.select(
            TOKENS_TABLE,
            filters=_after(self._filters(scope), after),
            columns=self.columns,
            order="id.asc",
            limit=limit,
        )
        return [
            WorkItem(
                key=int(row["id"]),
                word=row["word"],
                pos=row.get("pos"),
                context=extract_context(row.get("context") or "", row["word"], self._window),
                song_id=row.get("song_id"),
                artist_id=row.get("artist_id"),
            )
            for row in rows
        ]


class _CacheEntrySource:
    """Cache entries plus one usage line per word from the corpus, for KWIC context."""

    def __init__(self, cache: DisambiguationCache, client: SupabaseClient, settings: Settings):
        self._cache = cache
        self._client = client
        self._window = settings.CONTEXT_WINDOW_CHARS
        self.settings = settings

    def _filters(self, scope: JobScope) -> dict[str, str]:
        raise NotImplementedError

    def count(self, scope: JobScope) -> int:
        return self._cache.count_by_filter(self._filters(scope))

    def fetch(self, scope: JobScope, after: int | None, limit: int) -> list[WorkItem]:
        rows = self._cache.page(self._filters(scope), after_id=after, limit=limit)
        contexts = self._contexts({row["word"] for row in rows})
        return [
            WorkItem(
                key=int(row["id"]),
                word=row["word"],
                context=contexts.get(row["word"], ""),
                song_id=row.get("song_id"),
                artist_id=row.get("artist_id"),
                entry=ClassificationResult.from_row(row),
            )
            for row in rows
        ]

    def _contexts(self, words: set[str]) -> dict[str, str]:
        if not words:
            return {}
        rows = self._client.select(
            TOKENS_TABLE,
            filters={"word": in_(sorted(words)), "context": "not.is.null"},
            columns="word,context",
            order="id.asc",
        )
        contexts: dict[str, str] = {}
        for row in rows:
            word = row["word"]
            if word in contexts:
                continue
            context = extract_context(row.get("context") or "", word, self._window)
            if context:
                contexts[word] = context
        return contexts


class RefinementSource(_CacheEntrySource):
    """Entries known only at N1 (N2 is null), excluding NC and manual entries."""

    def _filters(self, scope: JobScope) -> dict[str, str]:
        filters = {"n2": "is.null", "source": f"neq.{Source.MANUAL.value}"}
        if scope.domain_filter == "MG":
            filters["n1"] = "eq.MG"
        elif scope.domain_filter == "DS":
            filters["n1"] = f"not.{in_([UNCLASSIFIED, 'MG'])}"
        else:
            filters["n1"] = f"neq.{UNCLASSIFIED}"
        return filters


class ReprocessSource(_CacheEntrySource):
    """
    NC and low-confidence entries.

    NC entries are stored with confidence 0, so one confidence bound covers
    both; manual entries carry 1.0 and never qualify.
    """

    def _filters(self, scope: JobScope) -> dict[str, str]:
        return {"confidence": f"lt.{self.settings.LOW_CONFIDENCE_THRESHOLD}"}


def build_sources(
    client: SupabaseClient, cache: DisambiguationCache, settings: Settings
) -> dict[JobType, WorkSource]:
    return {
        JobType.ANNOTATE: CorpusTokenSource(client, settings),
        JobType.REFINE: RefinementSource(cache, client, settings),
        JobType.REPROCESS: ReprocessSource(cache, client, settings),
    }
