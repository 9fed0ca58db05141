"""
Job persistence.

Every state change is a conditional update: the PATCH carries the status
(and, when advancing, the cursor) the caller read, so a concurrent cancel or
a second executor makes the update match nothing. Callers get ``None`` back
and re-read instead of overwriting someone else's decision.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Iterable

import structlog

from common.supabase import SupabaseClient, in_
from common.utils import to_iso, utcnow

from .models import (
    ACTIVE_STATUSES,
    SERVICED_STATUSES,
    Job,
    JobScope,
    JobStatus,
    JobType,
)

log = structlog.get_logger(__name__)


def _status_filter(statuses: Iterable[JobStatus]) -> str:
    return in_(status.value for status in statuses)


class JobRepository:
    def __init__(self, client: SupabaseClient):
        self._client = client

    def get(self, job_type: JobType, job_id: str) -> Job | None:
        rows = self._client.select(job_type.table, filters={"id": f"eq.{job_id}"}, limit=1)
        return Job.from_row(rows[0], job_type) if rows else None

    def list(
        self,
        job_type: JobType,
        statuses: Iterable[JobStatus] | None = None,
        scope_key: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        filters: dict[str, str] = {}
        if statuses is not None:
            filters["status"] = _status_filter(statuses)
        if scope_key is not None:
            filters["scope_key"] = f"eq.{scope_key}"
        rows = self._client.select(
            job_type.table, filters=filters, order="started_at.desc", limit=limit
        )
        return [Job.from_row(row, job_type) for row in rows]

    def create(
        self,
        job_type: JobType,
        scope: JobScope,
        total: int,
        now: dt.datetime | None = None,
        resume_from: Job | None = None,
    ) -> Job:
        """
        Insert a running job.

        *resume_from* carries counters and cursor over from an orphaned job of
        the same scope, so the new job continues where the old one stopped.
        """
        now = now or utcnow()
        row = {
            "id": str(uuid.uuid4()),
            "status": JobStatus.RUNNING.value,
            "scope": scope.to_dict(),
            "scope_key": scope.key,
            "total": total,
            "processed": 0,
            "succeeded": 0,
            "errors": 0,
            "improved": 0,
            "unchanged": 0,
            "unclassified": 0,
            "cursor": None,
            "resumed_processed": 0,
            "is_cancelling": False,
            "message": None,
            "heartbeat_at": to_iso(now),
            "started_at": to_iso(now),
            "finished_at": None,
        }
        if resume_from is not None:
            row.update(
                {
                    "total": max(total, resume_from.total),
                    "processed": resume_from.processed,
                    "succeeded": resume_from.succeeded,
                    "errors": resume_from.errors,
                    "improved": resume_from.improved,
                    "unchanged": resume_from.unchanged,
                    "unclassified": resume_from.unclassified,
                    "cursor": resume_from.cursor,
                    "resumed_processed": resume_from.processed,
                    "message": f"Resumed from job {resume_from.id}",
                }
            )
        rows = self._client.insert(job_type.table, row)
        job = Job.from_row(rows[0] if rows else row, job_type)
        log.info("Job created", job_id=job.id, job_type=job_type.value, total=job.total)
        return job

    def transition(
        self,
        job_type: JobType,
        job_id: str,
        target: JobStatus,
        expected: Iterable[JobStatus],
        values: dict | None = None,
        now: dt.datetime | None = None,
    ) -> Job | None:
        """Move a job to *target* if it is still in one of *expected*."""
        now = now or utcnow()
        update = {"status": target.value, "heartbeat_at": to_iso(now)}
        if target.is_terminal:
            update["finished_at"] = to_iso(now)
        update.update(values or {})
        rows = self._client.update(
            job_type.table,
            update,
            {"id": f"eq.{job_id}", "status": _status_filter(expected)},
        )
        if not rows:
            log.info(
                "Job transition lost the race",
                job_id=job_id,
                target=target.value,
            )
            return None
        return Job.from_row(rows[0], job_type)

    def advance(
        self,
        job: Job,
        values: dict,
        complete: bool = False,
        now: dt.datetime | None = None,
    ) -> Job | None:
        """
        Persist a chunk's counters, cursor and heartbeat in one update.

        Guarded on the job still running, not cancelling, and still at the
        cursor the chunk started from.
        """
        now = now or utcnow()
        update = dict(values)
        update["heartbeat_at"] = to_iso(now)
        if complete:
            update["status"] = JobStatus.COMPLETED.value
            update["finished_at"] = to_iso(now)
        filters = {
            "id": f"eq.{job.id}",
            "status": f"eq.{JobStatus.RUNNING.value}",
            "is_cancelling": "eq.false",
            "cursor": "is.null" if job.cursor is None else f"eq.{job.cursor}",
        }
        rows = self._client.update(job.table, update, filters)
        return Job.from_row(rows[0], job.job_type) if rows else None

    def request_cancel(
        self, job_type: JobType, job_id: str, message: str, now: dt.datetime | None = None
    ) -> Job | None:
        """Flag and cancel an active job; a chunk in flight sees the flag."""
        return self.transition(
            job_type,
            job_id,
            JobStatus.CANCELLED,
            expected=ACTIVE_STATUSES,
            values={"is_cancelling": True, "message": message},
            now=now,
        )

    def cancel_active(
        self, job_type: JobType, scope_key: str, message: str, now: dt.datetime | None = None
    ) -> int:
        """Cancel every active job of a scope; returns how many were cancelled."""
        now = now or utcnow()
        rows = self._client.update(
            job_type.table,
            {
                "status": JobStatus.CANCELLED.value,
                "is_cancelling": True,
                "message": message,
                "heartbeat_at": to_iso(now),
                "finished_at": to_iso(now),
            },
            {"scope_key": f"eq.{scope_key}", "status": _status_filter(ACTIVE_STATUSES)},
        )
        if rows:
            log.info(
                "Cancelled sibling jobs",
                job_type=job_type.value,
                scope_key=scope_key,
                count=len(rows),
            )
        return len(rows)

    def find_stale(self, job_type: JobType, cutoff: dt.datetime) -> list[Job]:
        """Running/paused jobs whose heartbeat is older than *cutoff*."""
        rows = self._client.select(
            job_type.table,
            filters={
                "status": _status_filter(SERVICED_STATUSES),
                "heartbeat_at": f"lt.{to_iso(cutoff)}",
            },
            order="heartbeat_at.asc",
        )
        return [Job.from_row(row, job_type) for row in rows]

    def close(self) -> None:
        self._client.close()
