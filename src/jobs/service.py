"""
Job commands and the progress read model.

These are the operations exposed to the presentation layer: start, pause,
resume and cancel as commands, `JobProgress` as the read side.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Callable

import structlog

from common.config import Settings
from common.utils import to_iso, utcnow

from .models import (
    ACTIVE_STATUSES,
    Job,
    JobScope,
    JobStatus,
    JobType,
    InvalidTransition,
    check_transition,
    format_eta,
)
from .repository import JobRepository
from .work_sources import WorkSource

log = structlog.get_logger(__name__)


class JobNotFound(LookupError):
    pass


@dataclass(frozen=True)
class JobProgress:
    job: Job
    percent: float
    items_per_second: float | None
    eta_seconds: float | None
    eta: str | None
    is_stale: bool
    heartbeat_age_seconds: float | None

    def as_dict(self) -> dict:
        job = self.job
        return {
            "id": job.id,
            "job_type": job.job_type.value,
            "status": job.status.value,
            "scope": job.scope.to_dict(),
            "total": job.total,
            "processed": job.processed,
            "succeeded": job.succeeded,
            "errors": job.errors,
            "improved": job.improved,
            "unchanged": job.unchanged,
            "unclassified": job.unclassified,
            "percent": self.percent,
            "items_per_second": (
                round(self.items_per_second, 2) if self.items_per_second else None
            ),
            "eta": self.eta,
            "is_stale": self.is_stale,
            "heartbeat_age_seconds": self.heartbeat_age_seconds,
            "message": job.message,
            "started_at": to_iso(job.started_at),
            "finished_at": to_iso(job.finished_at),
        }


class JobService:
    def __init__(
        self,
        repository: JobRepository,
        sources: dict[JobType, WorkSource],
        settings: Settings,
        now: Callable[[], dt.datetime] = utcnow,
    ):
        self.repository = repository
        self.sources = sources
        self.settings = settings
        self._now = now

    @property
    def orphan_timeout(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.settings.ORPHAN_TIMEOUT_MINUTES)

    def get(self, job_type: JobType, job_id: str) -> Job:
        job = self.repository.get(job_type, job_id)
        if job is None:
            raise JobNotFound(f"No {job_type.value} job with id {job_id}")
        return job

    def start(
        self,
        job_type: JobType,
        scope: JobScope | None = None,
        resume_from: Job | None = None,
    ) -> Job:
        """
        Size the work, cancel active jobs of the same scope, insert a running job.
        """
        scope = scope or JobScope()
        total = self.sources[job_type].count(scope)
        self.repository.cancel_active(
            job_type, scope.key, "Superseded by a newer job", now=self._now()
        )
        job = self.repository.create(
            job_type, scope, total, now=self._now(), resume_from=resume_from
        )
        log.info(
            "Job started",
            job_id=job.id,
            job_type=job_type.value,
            scope=scope.key,
            total=job.total,
        )
        return job

    def pause(self, job_type: JobType, job_id: str) -> Job:
        return self._move(job_type, job_id, JobStatus.PAUSED)

    def resume(self, job_type: JobType, job_id: str) -> Job:
        return self._move(job_type, job_id, JobStatus.RUNNING)

    def cancel(self, job_type: JobType, job_id: str, reason: str = "Cancelled on request") -> Job:
        job = self.get(job_type, job_id)
        if job.status is JobStatus.CANCELLED:
            return job
        check_transition(job.status, JobStatus.CANCELLED)
        cancelled = self.repository.request_cancel(job_type, job_id, reason, now=self._now())
        if cancelled is None:
            current = self.get(job_type, job_id)
            if current.status is JobStatus.CANCELLED:
                return current
            raise InvalidTransition(
                f"Job {job_id} moved to {current.status.value} before it could be cancelled"
            )
        log.info("Job cancelled", job_id=job_id, job_type=job_type.value)
        return cancelled

    def _move(self, job_type: JobType, job_id: str, target: JobStatus) -> Job:
        job = self.get(job_type, job_id)
        if job.status is target:
            return job
        check_transition(job.status, target)
        moved = self.repository.transition(
            job_type, job_id, target, expected=(job.status,), now=self._now()
        )
        if moved is None:
            current = self.get(job_type, job_id)
            raise InvalidTransition(
                f"Job {job_id} moved to {current.status.value} before it could be {target.value}"
            )
        log.info("Job status changed", job_id=job_id, status=target.value)
        return moved

    def active_jobs(self, job_type: JobType) -> list[Job]:
        return self.repository.list(job_type, statuses=ACTIVE_STATUSES)

    def progress(self, job_type: JobType, job_id: str) -> JobProgress:
        return self.progress_of(self.get(job_type, job_id))

    def progress_of(self, job: Job) -> JobProgress:
        now = self._now()
        eta_seconds = job.eta_seconds(now)
        age = job.heartbeat_age(now)
        return JobProgress(
            job=job,
            percent=job.percent,
            items_per_second=job.rate(now) if job.status is JobStatus.RUNNING else None,
            eta_seconds=eta_seconds,
            eta=format_eta(eta_seconds),
            is_stale=job.is_stale(self.orphan_timeout, now),
            heartbeat_age_seconds=round(age.total_seconds(), 1) if age is not None else None,
        )
