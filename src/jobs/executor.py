"""
Chunk Executor
==============

Runs exactly one chunk of one job per call; the daemon (or any other
trigger) is responsible for calling again. A chunk:

1. checks the kill switch and, if active, cancels the job
2. honours the job's own ``is_cancelling`` flag
3. fetches at most ``CHUNK_SIZE`` items after the persisted cursor, never
   more than the job has left
4. classifies the items on a bounded worker pool
5. persists counters, cursor and heartbeat in one guarded update
6. completes the job once the cursor reaches the total

Items deferred by the rate limiter stop the cursor: only the items before
the first deferred one are counted, and the rest are fetched again by the
next chunk. A datastore failure that hits the whole chunk leaves the cursor
untouched; ``MAX_CHUNK_FAILURES`` of those in a row mark the job errored.
"""

from __future__ import annotations

import datetime as dt
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import structlog

from classifier.tiered import ClassificationOutcome, Outcome, TieredClassifier
from common.config import Settings
from common.supabase import DatastoreError
from common.utils import utcnow

from .kill_switch import KillSwitch
from .models import ACTIVE_STATUSES, ChunkResult, ChunkStatus, Job, JobStatus, JobType
from .repository import JobRepository
from .work_sources import WorkItem, WorkSource

log = structlog.get_logger(__name__)

STOP_CHECK_INTERVAL_SECONDS = 1.0

_SUCCESS = {Outcome.CACHED, Outcome.CLASSIFIED, Outcome.IMPROVED, Outcome.UNCHANGED, Outcome.SKIPPED}


class StopSignal:
    """
    Throttled "should this chunk stop?" check shared by the word workers.

    Once it has answered True it keeps answering True.
    """

    def __init__(
        self,
        check: Callable[[], bool],
        interval: float = STOP_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._check = check
        self._interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last: float | None = None
        self._stopped = False

    def __call__(self) -> bool:
        with self._lock:
            if self._stopped:
                return True
            now = self._clock()
            if self._last is not None and now - self._last < self._interval:
                return False
            self._last = now
        stopped = self._check()
        if stopped:
            with self._lock:
                self._stopped = True
        return stopped


class ChunkExecutor:
    def __init__(
        self,
        repository: JobRepository,
        classifier: TieredClassifier,
        kill_switch: KillSwitch,
        sources: dict[JobType, WorkSource],
        settings: Settings,
        now: Callable[[], dt.datetime] = utcnow,
    ):
        self.repository = repository
        self.classifier = classifier
        self.kill_switch = kill_switch
        self.sources = sources
        self.settings = settings
        self._now = now
        self._failures_lock = threading.Lock()
        self._consecutive_failures: dict[str, int] = {}

    def run_chunk(self, job_type: JobType, job_id: str) -> ChunkResult:
        bound_log = log.bind(job_id=job_id, job_type=job_type.value)
        try:
            if self.kill_switch.is_active():
                self._cancel_for_kill_switch(job_type, job_id)
                bound_log.warning("Kill switch active; job cancelled")
                return ChunkResult(job_id, ChunkStatus.CANCELLED, message="kill switch active")

            job = self.repository.get(job_type, job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return ChunkResult(job_id, ChunkStatus.NOT_RUNNABLE)

            if job.is_cancelling:
                self.repository.transition(
                    job_type,
                    job_id,
                    JobStatus.CANCELLED,
                    expected=(JobStatus.RUNNING,),
                    values={"message": job.message or "Cancelled on request"},
                    now=self._now(),
                )
                bound_log.info("Job cancelled on request")
                return ChunkResult(job_id, ChunkStatus.CANCELLED, cursor=job.cursor)

            return self._execute(job, bound_log)
        except DatastoreError as e:
            return self._chunk_failed(job_type, job_id, e)

    def _cancel_for_kill_switch(self, job_type: JobType, job_id: str) -> None:
        self.repository.transition(
            job_type,
            job_id,
            JobStatus.CANCELLED,
            expected=ACTIVE_STATUSES,
            values={"is_cancelling": True, "message": "Cancelled by emergency kill switch"},
            now=self._now(),
        )

    def _execute(self, job: Job, bound_log) -> ChunkResult:
        limit = min(self.settings.CHUNK_SIZE, job.remaining)
        items: list[WorkItem] = []
        if limit > 0:
            items = self.sources[job.job_type].fetch(job.scope, job.cursor, limit)

        stop = StopSignal(lambda: self._should_stop(job))
        outcomes = self._classify_all(job, items, stop)

        consumed: list[tuple[WorkItem, ClassificationOutcome]] = []
        deferred = 0
        for item, outcome in zip(items, outcomes):
            if outcome.is_deferred:
                deferred = len(items) - len(consumed)
                break
            consumed.append((item, outcome))

        counts = _tally(job, consumed)
        processed = job.processed + len(consumed)
        exhausted = not deferred and len(items) < limit
        complete = processed >= job.total or exhausted
        cursor = consumed[-1][0].key if consumed else job.cursor

        values = {
            "processed": processed,
            "succeeded": job.succeeded + counts["succeeded"],
            "errors": job.errors + counts["errors"],
            "improved": job.improved + counts["improved"],
            "unchanged": job.unchanged + counts["unchanged"],
            "unclassified": job.unclassified + counts["unclassified"],
            "cursor": cursor,
        }
        if exhausted and processed < job.total:
            values["message"] = f"Work exhausted after {processed} of {job.total} items"

        saved = self.repository.advance(job, values, complete=complete, now=self._now())
        self._reset_failures(job.id)
        if saved is None:
            return self._resolve_lost_update(job, bound_log)

        if complete:
            status = ChunkStatus.COMPLETED
        elif stop() and self.kill_switch.is_active():
            self._cancel_for_kill_switch(job.job_type, job.id)
            status = ChunkStatus.CANCELLED
        elif deferred and not consumed:
            status = ChunkStatus.DEFERRED
        else:
            status = ChunkStatus.ADVANCED

        bound_log.info(
            "Chunk finished",
            status=status.value,
            processed=processed,
            total=job.total,
            errors=counts["errors"],
            deferred=deferred,
        )
        return ChunkResult(
            job.id,
            status,
            processed=len(consumed),
            deferred=deferred,
            cursor=cursor,
            **counts,
        )

    def _classify_all(
        self, job: Job, items: list[WorkItem], stop: StopSignal
    ) -> list[ClassificationOutcome]:
        if not items:
            return []
        workers = max(1, min(self.settings.WORD_WORKERS, len(items)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda item: self._classify_item(job, item, stop), items))

    def _classify_item(self, job: Job, item: WorkItem, stop: StopSignal) -> ClassificationOutcome:
        secondary = job.scope.secondary
        try:
            if job.job_type is JobType.REFINE:
                return self.classifier.refine(
                    item.entry, context=item.context, secondary=secondary, should_stop=stop
                )
            if job.job_type is JobType.REPROCESS:
                outcome = self.classifier.classify(
                    item.word,
                    context=item.context,
                    context_key=item.entry.context_key or None,
                    secondary=secondary,
                    force=True,
                    should_stop=stop,
                    song_id=item.song_id,
                    artist_id=item.artist_id,
                )
                return _reprocess_outcome(item, outcome)
            return self.classifier.classify(
                item.word,
                pos=item.pos,
                context=item.context,
                secondary=secondary,
                should_stop=stop,
                song_id=item.song_id,
                artist_id=item.artist_id,
            )
        except DatastoreError:
            raise
        except Exception as e:
            log.exception("Work item failed", job_id=job.id, word=item.word)
            return ClassificationOutcome(item.word, Outcome.FAILED, error=str(e))

    def _should_stop(self, job: Job) -> bool:
        if self.kill_switch.is_active():
            return True
        current = self.repository.get(job.job_type, job.id)
        return current is None or current.is_cancelling or current.status is not JobStatus.RUNNING

    def _resolve_lost_update(self, job: Job, bound_log) -> ChunkResult:
        current = self.repository.get(job.job_type, job.id)
        if current is not None and current.is_cancelling and current.status is JobStatus.RUNNING:
            self.repository.transition(
                job.job_type,
                job.id,
                JobStatus.CANCELLED,
                expected=(JobStatus.RUNNING,),
                values={"message": current.message or "Cancelled on request"},
                now=self._now(),
            )
            current = self.repository.get(job.job_type, job.id)
        if current is not None and current.status is JobStatus.CANCELLED:
            bound_log.info("Job cancelled while chunk was running")
            return ChunkResult(job.id, ChunkStatus.CANCELLED, cursor=current.cursor)
        if current is not None and current.status is JobStatus.PAUSED:
            bound_log.info("Job paused while chunk was running; progress discarded")
            return ChunkResult(job.id, ChunkStatus.PAUSED, cursor=current.cursor)
        bound_log.warning("Chunk progress not saved; job changed underneath")
        return ChunkResult(job.id, ChunkStatus.LOST, cursor=current.cursor if current else None)

    def _chunk_failed(self, job_type: JobType, job_id: str, error: Exception) -> ChunkResult:
        with self._failures_lock:
            failures = self._consecutive_failures.get(job_id, 0) + 1
            self._consecutive_failures[job_id] = failures
        log.warning(
            "Chunk failed; cursor not advanced",
            job_id=job_id,
            job_type=job_type.value,
            consecutive_failures=failures,
            error=str(error),
        )
        if failures < self.settings.MAX_CHUNK_FAILURES:
            return ChunkResult(job_id, ChunkStatus.RETRY, message=str(error))

        message = f"Datastore failed {failures} chunks in a row: {error}"
        try:
            self.repository.transition(
                job_type,
                job_id,
                JobStatus.ERRORED,
                expected=(JobStatus.RUNNING,),
                values={"message": message},
                now=self._now(),
            )
        except DatastoreError as e:
            log.error("Could not mark job errored", job_id=job_id, error=str(e))
            return ChunkResult(job_id, ChunkStatus.RETRY, message=message)
        self._reset_failures(job_id)
        return ChunkResult(job_id, ChunkStatus.ERRORED, message=message)

    def _reset_failures(self, job_id: str) -> None:
        with self._failures_lock:
            self._consecutive_failures.pop(job_id, None)


def _reprocess_outcome(item: WorkItem, outcome: ClassificationOutcome) -> ClassificationOutcome:
    """Map a forced reclassification to improved / unchanged."""
    if outcome.status not in (Outcome.CLASSIFIED, Outcome.UNCLASSIFIED):
        return outcome
    before = item.entry
    after = outcome.result
    improved = (
        after is not None
        and not after.is_unclassified
        and (before is None or before.is_unclassified or after.confidence > before.confidence)
    )
    status = Outcome.IMPROVED if improved else Outcome.UNCHANGED
    return ClassificationOutcome(
        outcome.word, status, outcome.tier, outcome.result, expression=outcome.expression
    )


def _tally(job: Job, consumed: list[tuple[WorkItem, ClassificationOutcome]]) -> dict[str, int]:
    counts = {"succeeded": 0, "errors": 0, "improved": 0, "unchanged": 0, "unclassified": 0}
    for _, outcome in consumed:
        if outcome.status is Outcome.FAILED:
            counts["errors"] += 1
            continue
        if outcome.status is Outcome.UNCLASSIFIED:
            counts["unclassified"] += 1
        elif outcome.status in _SUCCESS:
            counts["succeeded"] += 1
        if outcome.status is Outcome.IMPROVED:
            counts["improved"] += 1
        elif outcome.status in (Outcome.UNCHANGED, Outcome.SKIPPED) and job.job_type is not JobType.ANNOTATE:
            counts["unchanged"] += 1
    return counts
