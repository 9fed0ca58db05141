"""
Disambiguation Cache
====================

Access layer for ``semantic_disambiguation_cache``, the persisted ground
truth of the classifier: one row per word, or per word and context key.

Two rules hold for every write:

- a "manual" entry is terminal. Automated writes over it are no-ops that
  report `UpsertOutcome.SKIPPED_MANUAL` instead of failing.
- a "manual" write always stores confidence 1.0.

Writes to the same word are serialized within the process.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable

import structlog

from common.supabase import DatastoreError, SupabaseClient
from common.utils import KeyedLocks

from .taxonomy import UNCLASSIFIED, ClassificationResult, Source

log = structlog.get_logger(__name__)

CACHE_TABLE = "semantic_disambiguation_cache"
CONFLICT_COLUMNS = "word,context_key"
PAGE_SIZE = 1000


class CacheWriteError(RuntimeError):
    """A single cache write failed even after the in-chunk retry."""


class UpsertOutcome(str, Enum):
    WRITTEN = "written"
    SKIPPED_MANUAL = "skipped-manual"


@dataclass
class BatchReport:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def as_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class DisambiguationCache:
    def __init__(
        self,
        client: SupabaseClient,
        table: str = CACHE_TABLE,
        write_attempts: int = 2,
    ):
        self._client = client
        self._table = table
        self._write_attempts = max(1, write_attempts)
        self._word_locks = KeyedLocks()

    @property
    def table(self) -> str:
        return self._table

    @staticmethod
    def _key_filters(word: str, context_key: str | None) -> dict[str, str]:
        return {"word": f"eq.{word}", "context_key": f"eq.{context_key or ''}"}

    def get(self, word: str, context_key: str | None = None) -> ClassificationResult | None:
        """Exact lookup on the normalized word and, when given, the context key."""
        rows = self._client.select(
            self._table, filters=self._key_filters(word, context_key), limit=1
        )
        return ClassificationResult.from_row(rows[0]) if rows else None

    def upsert(self, result: ClassificationResult) -> UpsertOutcome:
        """
        Insert or overwrite one entry.

        A failed write is retried once; a second failure raises CacheWriteError.
        """
        if result.source is Source.MANUAL and result.confidence != 1.0:
            result = replace(result, confidence=1.0)

        with self._word_locks.hold(result.word):
            last_error: DatastoreError | None = None
            for attempt in range(1, self._write_attempts + 1):
                try:
                    return self._write(result)
                except DatastoreError as e:
                    last_error = e
                    log.warning(
                        "Cache write failed",
                        word=result.word,
                        attempt=attempt,
                        error=str(e),
                    )
            raise CacheWriteError(f"Could not store {result.word!r}: {last_error}") from last_error

    def _write(self, result: ClassificationResult) -> UpsertOutcome:
        row = result.to_row()
        if result.source is Source.MANUAL:
            self._client.upsert(self._table, row, on_conflict=CONFLICT_COLUMNS)
            return UpsertOutcome.WRITTEN

        existing = self._client.select(
            self._table,
            filters=self._key_filters(result.word, result.context_key),
            columns="id,source",
            limit=1,
        )
        if not existing:
            self._client.upsert(self._table, row, on_conflict=CONFLICT_COLUMNS)
            return UpsertOutcome.WRITTEN
        if existing[0].get("source") == Source.MANUAL.value:
            log.debug("Manual entry left untouched", word=result.word)
            return UpsertOutcome.SKIPPED_MANUAL

        filters = self._key_filters(result.word, result.context_key)
        filters["source"] = f"neq.{Source.MANUAL.value}"
        updated = self._client.update(self._table, row, filters)
        if not updated:
            # Curated between our read and write.
            return UpsertOutcome.SKIPPED_MANUAL
        return UpsertOutcome.WRITTEN

    def count_by_filter(self, filters: dict[str, str] | None = None) -> int:
        return self._client.count(self._table, filters)

    def page(
        self,
        filters: dict[str, str] | None = None,
        after_id: int | None = None,
        limit: int = PAGE_SIZE,
        columns: str = "*",
    ) -> list[dict]:
        """Rows ordered by id, starting after *after_id*."""
        query = dict(filters or {})
        if after_id is not None:
            query["id"] = f"gt.{after_id}"
        return self._client.select(
            self._table, filters=query, columns=columns, order="id.asc", limit=limit
        )

    def validate_batch(self, words: Iterable[str]) -> BatchReport:
        """Promote context-free entries to curated "manual" entries."""
        report = BatchReport()
        for word in words:
            try:
                with self._word_locks.hold(word):
                    updated = self._client.update(
                        self._table,
                        {"source": Source.MANUAL.value, "confidence": 1.0},
                        self._key_filters(word, None),
                    )
            except DatastoreError as e:
                report.failed += 1
                report.errors.append(f"{word}: {e}")
                continue
            if updated:
                report.succeeded += 1
            else:
                report.skipped += 1
        self._log_batch("validate", report)
        return report

    def update_batch(self, results: Iterable[ClassificationResult]) -> BatchReport:
        report = BatchReport()
        for result in results:
            try:
                outcome = self.upsert(result)
            except CacheWriteError as e:
                report.failed += 1
                report.errors.append(str(e))
                continue
            if outcome is UpsertOutcome.SKIPPED_MANUAL:
                report.skipped += 1
            else:
                report.succeeded += 1
        self._log_batch("update", report)
        return report

    def remove_batch(self, words: Iterable[str]) -> BatchReport:
        """Delete automated entries for *words*; manual entries are kept."""
        report = BatchReport()
        for word in words:
            try:
                with self._word_locks.hold(word):
                    deleted = self._client.delete(
                        self._table,
                        {"word": f"eq.{word}", "source": f"neq.{Source.MANUAL.value}"},
                    )
            except DatastoreError as e:
                report.failed += 1
                report.errors.append(f"{word}: {e}")
                continue
            if deleted:
                report.succeeded += 1
            else:
                report.skipped += 1
        self._log_batch("remove", report)
        return report

    def _log_batch(self, operation: str, report: BatchReport) -> None:
        log.info(
            "Cache batch finished",
            operation=operation,
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
        )

    def count_by_domain(self) -> dict[str, int]:
        """Entry counts per N1 domain, for curation screens."""
        counts: Counter[str] = Counter()
        after_id = None
        while True:
            rows = self.page(after_id=after_id, limit=PAGE_SIZE, columns="id,n1")
            for row in rows:
                counts[row.get("n1") or UNCLASSIFIED] += 1
            if len(rows) < PAGE_SIZE:
                break
            after_id = rows[-1]["id"]
        return dict(counts)

    def count_by_confidence(self, threshold: float) -> dict[str, int]:
        return {
            "high": self.count_by_filter({"confidence": f"gte.{threshold}"}),
            "low": self.count_by_filter(
                {"confidence": f"lt.{threshold}", "n1": f"neq.{UNCLASSIFIED}"}
            ),
            "unclassified": self.count_by_filter({"n1": f"eq.{UNCLASSIFIED}"}),
        }
