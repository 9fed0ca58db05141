"""
Cross-Corpus Orchestrator
=========================

Sequences annotation jobs over an ordered corpus list, one corpus at a time,
and recovers orphaned jobs.

All state lives on the orchestrator instance (`OrchestratorState`); nothing
is module-global, so tests and the CLI can build as many as they need with
`create_orchestrator`. A new process loses that state; `recover` rebuilds the
pointer from the active annotation job, and completed corpora are read back
from their completed jobs.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Callable

import structlog

from classifier.cache import DisambiguationCache
from classifier.lexicon import SupabaseLexicon
from classifier.provider import ClassificationProvider
from classifier.rate_limiter import RateLimiter
from classifier.tiered import TieredClassifier
from common.config import Settings
from common.flag_store import FlagStore
from common.supabase import SupabaseClient
from common.utils import utcnow

from .executor import ChunkExecutor
from .kill_switch import KillSwitch
from .models import ACTIVE_STATUSES, Job, JobScope, JobStatus, JobType, InvalidTransition
from .repository import JobRepository
from .service import JobService
from .work_sources import build_sources

log = structlog.get_logger(__name__)


@dataclass
class OrchestratorState:
    corpora: list[str]
    current_index: int = 0
    running: bool = False
    completed: set[str] = field(default_factory=set)
    current_jobs: dict[JobType, str] = field(default_factory=dict)

    @property
    def current_corpus(self) -> str | None:
        if 0 <= self.current_index < len(self.corpora):
            return self.corpora[self.current_index]
        return None


class CorpusOrchestrator:
    def __init__(
        self,
        service: JobService,
        repository: JobRepository,
        settings: Settings,
        state: OrchestratorState | None = None,
        executor: ChunkExecutor | None = None,
        kill_switch: KillSwitch | None = None,
        classifier: TieredClassifier | None = None,
        now: Callable[[], dt.datetime] = utcnow,
    ):
        self.service = service
        self.repository = repository
        self.settings = settings
        self.state = state or OrchestratorState(corpora=list(settings.CORPORA))
        self.executor = executor
        self.kill_switch = kill_switch
        self.classifier = classifier
        self._now = now

    def _pending(self, corpus_id: str, job_type: JobType) -> int:
        return self.service.sources[job_type].count(JobScope(corpus_id=corpus_id))

    def _current_job(self, job_type: JobType) -> Job | None:
        job_id = self.state.current_jobs.get(job_type)
        return self.repository.get(job_type, job_id) if job_id else None

    def start(
        self,
        corpus_id: str | None = None,
        job_type: JobType = JobType.ANNOTATE,
        resume_from: Job | None = None,
    ) -> Job | None:
        """
        Start a job for *corpus_id*, or for the next corpus with pending work.

        Returns None (and stops) when every corpus is done.
        """
        if corpus_id is not None:
            if corpus_id not in self.state.corpora:
                raise ValueError(f"Unknown corpus: {corpus_id}")
            index = self.state.corpora.index(corpus_id)
        else:
            index = self._next_with_work(self.state.current_index, job_type)
            if index is None:
                self.state.running = False
                self.state.current_jobs.pop(job_type, None)
                log.info("All corpora complete", job_type=job_type.value)
                return None

        self.state.current_index = index
        corpus = self.state.corpora[index]
        job = self.service.start(job_type, JobScope(corpus_id=corpus), resume_from=resume_from)
        self.state.current_jobs[job_type] = job.id
        self.state.running = True
        log.info("Orchestrator started corpus", corpus_id=corpus, job_id=job.id)
        return job

    def _next_with_work(self, start: int, job_type: JobType) -> int | None:
        for index in range(max(0, start), len(self.state.corpora)):
            corpus = self.state.corpora[index]
            if self._finished(corpus, job_type):
                continue
            if self._pending(corpus, job_type) > 0:
                return index
            self.state.completed.add(corpus)
        return None

    def _finished(self, corpus_id: str, job_type: JobType) -> bool:
        """A corpus is done once a job of its scope has completed, in any process."""
        if corpus_id in self.state.completed:
            return True
        done = self.repository.list(
            job_type,
            statuses=(JobStatus.COMPLETED,),
            scope_key=JobScope(corpus_id=corpus_id).key,
            limit=1,
        )
        if done:
            self.state.completed.add(corpus_id)
        return bool(done)

    def skip(self, job_type: JobType = JobType.ANNOTATE) -> Job | None:
        """Cancel the current job and move on without marking the corpus complete."""
        job = self._current_job(job_type)
        if job is not None and not job.status.is_terminal:
            try:
                self.service.cancel(job_type, job.id, reason="Skipped by operator")
            except InvalidTransition as e:
                log.info("Current job already finished", job_id=job.id, error=str(e))
        self.state.current_jobs.pop(job_type, None)
        self.state.current_index += 1
        if self.state.current_index >= len(self.state.corpora):
            self.state.running = False
            return None
        return self.start(job_type=job_type)

    def stop(self) -> list[Job]:
        """Pause the current jobs and stop sequencing."""
        paused = []
        for job_type in list(self.state.current_jobs):
            job = self._current_job(job_type)
            if job is not None and job.status is JobStatus.RUNNING:
                try:
                    paused.append(self.service.pause(job_type, job.id))
                except InvalidTransition as e:
                    log.info("Job could not be paused", job_id=job.id, error=str(e))
        self.state.running = False
        return paused

    def cleanup(self) -> int:
        """Cancel orphaned jobs; returns how many this call cancelled."""
        return len(self._cancel_orphans())

    def _cancel_orphans(self) -> list[Job]:
        timeout = dt.timedelta(minutes=self.settings.ORPHAN_TIMEOUT_MINUTES)
        cutoff = self._now() - timeout
        cancelled = []
        for job_type in JobType:
            for job in self.repository.find_stale(job_type, cutoff):
                message = (
                    f"Orphaned: no heartbeat for {self.settings.ORPHAN_TIMEOUT_MINUTES} min"
                )
                result = self.repository.transition(
                    job_type,
                    job.id,
                    JobStatus.CANCELLED,
                    expected=(job.status,),
                    values={"message": message},
                    now=self._now(),
                )
                if result is not None:
                    log.warning("Orphaned job cancelled", job_id=job.id, job_type=job_type.value)
                    cancelled.append(job)
        return cancelled

    def recover(self, job_type: JobType = JobType.ANNOTATE) -> Job | None:
        """
        Rebuild the in-memory state of a new process from the datastore.

        Completed corpora come from their completed jobs; the pointer comes
        from the newest active job of a known corpus.
        """
        for corpus in self.state.corpora:
            self._finished(corpus, job_type)
        for job in self.repository.list(job_type, statuses=ACTIVE_STATUSES):
            corpus = job.scope.corpus_id
            if corpus in self.state.corpora:
                self.state.current_index = self.state.corpora.index(corpus)
                self.state.current_jobs[job_type] = job.id
                self.state.running = job.status is JobStatus.RUNNING
                return job
        return None

    def reconcile(self, job_type: JobType = JobType.ANNOTATE) -> dict:
        """
        One housekeeping pass, run by the daemon before every poll.

        Orphans are cancelled; an orphan of the current corpus is resumed from
        its cursor by a new job. A completed corpus advances the pointer.
        """
        orphans = self._cancel_orphans()
        resumed = None
        current_id = self.state.current_jobs.get(job_type)
        for orphan in orphans:
            if orphan.job_type is job_type and orphan.id == current_id and self.state.running:
                resumed = self.start(orphan.scope.corpus_id, job_type, resume_from=orphan)

        advanced = None
        job = self._current_job(job_type)
        if job is None or job.status in (JobStatus.CANCELLED, JobStatus.ERRORED):
            job = self.recover(job_type)
        elif job.status is JobStatus.COMPLETED:
            self.state.completed.add(job.scope.corpus_id)
            if self.state.running:
                advanced = self.start(job_type=job_type)

        return {
            "orphans_cancelled": len(orphans),
            "resumed_job": resumed.id if resumed else None,
            "started_job": advanced.id if advanced else None,
            "current_corpus": self.state.current_corpus if self.state.running else None,
        }

    def runnable_jobs(self) -> list[Job]:
        jobs = []
        for job_type in JobType:
            jobs.extend(self.repository.list(job_type, statuses=(JobStatus.RUNNING,)))
        return jobs

    def status(self, job_type: JobType = JobType.ANNOTATE) -> dict:
        corpora = []
        for corpus in self.state.corpora:
            corpora.append(
                {
                    "corpus_id": corpus,
                    "pending": self._pending(corpus, job_type),
                    "completed": corpus in self.state.completed,
                }
            )
        jobs = {}
        for kind in JobType:
            for job in self.service.active_jobs(kind):
                jobs.setdefault(kind.value, []).append(self.service.progress_of(job).as_dict())
        kill_state = self.kill_switch.state().value if self.kill_switch else None
        return {
            "running": self.state.running,
            "current_corpus": self.state.current_corpus,
            "corpora": corpora,
            "jobs": jobs,
            "kill_switch": kill_state,
        }

    def close(self) -> None:
        self.repository.close()
        if self.kill_switch is not None:
            self.kill_switch.close()


def create_orchestrator(
    settings: Settings,
    client: SupabaseClient | None = None,
    flag_store: FlagStore | None = None,
    provider: ClassificationProvider | None = None,
    limiter: RateLimiter | None = None,
    state: OrchestratorState | None = None,
) -> CorpusOrchestrator:
    """Wire every collaborator from settings; pass any of them to override."""
    client = client or SupabaseClient(settings)
    flag_store = flag_store or FlagStore(settings)
    cache = DisambiguationCache(client)
    lexicon = SupabaseLexicon(client)
    classifier = TieredClassifier.from_settings(
        settings, cache, lexicon, provider=provider, limiter=limiter
    )
    sources = build_sources(client, cache, settings)
    repository = JobRepository(client)
    kill_switch = KillSwitch(flag_store, client, settings)
    executor = ChunkExecutor(repository, classifier, kill_switch, sources, settings)
    service = JobService(repository, sources, settings)
    return CorpusOrchestrator(
        service,
        repository,
        settings,
        state=state,
        executor=executor,
        kill_switch=kill_switch,
        classifier=classifier,
    )
