"""
Job model and state machine.

::

    pending --> running <--> paused
                   |
                   +--> completed | errored | cancelled

``pending`` and ``paused`` are the only states ``running`` is reachable from.
The three terminal states accept no further transition; once a job reaches
one, no chunk runs and its counters stop changing.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from enum import Enum

from common.utils import parse_timestamp, utcnow


class InvalidTransition(ValueError):
    """A command asked for a state change the state machine does not allow."""


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERRORED, JobStatus.CANCELLED})
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)
# Statuses whose heartbeat is expected to advance.
SERVICED_STATUSES = (JobStatus.RUNNING, JobStatus.PAUSED)

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.ERRORED, JobStatus.CANCELLED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERRORED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move a {current.value} job to {target.value}")


class JobType(str, Enum):
    ANNOTATE = "annotate"
    REFINE = "refine"
    REPROCESS = "reprocess"

    @property
    def table(self) -> str:
        return JOB_TABLES[self]


JOB_TABLES = {
    JobType.ANNOTATE: "semantic_annotation_jobs",
    JobType.REFINE: "semantic_refinement_jobs",
    JobType.REPROCESS: "semantic_reprocess_jobs",
}


@dataclass(frozen=True)
class JobScope:
    """
    What a job works on.

    ``domain_filter`` applies to refinement only: ``"MG"`` selects the MG
    domain, ``"DS"`` everything except MG.
    """

    corpus_id: str | None = None
    domain_filter: str | None = None
    secondary: bool = False

    def __post_init__(self):
        if self.domain_filter not in (None, "MG", "DS"):
            raise ValueError("domain_filter must be 'MG' or 'DS'")

    @property
    def key(self) -> str:
        """Identifies jobs that must not run side by side."""
        return f"corpus={self.corpus_id or '*'};domain={self.domain_filter or '*'}"

    def to_dict(self) -> dict:
        return {
            "corpus_id": self.corpus_id,
            "domain_filter": self.domain_filter,
            "secondary": self.secondary,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> JobScope:
        data = data or {}
        return cls(
            corpus_id=data.get("corpus_id"),
            domain_filter=data.get("domain_filter"),
            secondary=bool(data.get("secondary", False)),
        )


@dataclass(frozen=True)
class Job:
    id: str
    job_type: JobType
    status: JobStatus
    scope: JobScope = field(default_factory=JobScope)
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    errors: int = 0
    improved: int = 0
    unchanged: int = 0
    unclassified: int = 0
    cursor: int | None = None
    resumed_processed: int = 0
    is_cancelling: bool = False
    message: str | None = None
    heartbeat_at: dt.datetime | None = None
    started_at: dt.datetime | None = None
    finished_at: dt.datetime | None = None

    @property
    def table(self) -> str:
        return self.job_type.table

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed)

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0 if self.status is JobStatus.COMPLETED else 0.0
        return round(100.0 * self.processed / self.total, 1)

    def heartbeat_age(self, now: dt.datetime | None = None) -> dt.timedelta | None:
        reference = self.heartbeat_at or self.started_at
        if reference is None:
            return None
        return (now or utcnow()) - reference

    def is_stale(self, timeout: dt.timedelta, now: dt.datetime | None = None) -> bool:
        if self.status not in SERVICED_STATUSES:
            return False
        age = self.heartbeat_age(now)
        return age is None or age > timeout

    def rate(self, now: dt.datetime | None = None) -> float | None:
        """
        Items per second since the job started.

        Only this job's own work counts; progress carried over from the job it
        resumed was done before `started_at`.
        """
        done = self.processed - self.resumed_processed
        if self.started_at is None or done <= 0:
            return None
        elapsed = ((now or utcnow()) - self.started_at).total_seconds()
        if elapsed < 1:
            return None
        return done / elapsed

    def eta_seconds(self, now: dt.datetime | None = None) -> float | None:
        """remaining / rate; None unless the job is running and has progress."""
        if self.status is not JobStatus.RUNNING:
            return None
        rate = self.rate(now)
        if not rate:
            return None
        return self.remaining / rate

    @classmethod
    def from_row(cls, row: dict, job_type: JobType) -> Job:
        cursor = row.get("cursor")
        return cls(
            id=str(row["id"]),
            job_type=job_type,
            status=JobStatus(row["status"]),
            scope=JobScope.from_dict(row.get("scope")),
            total=int(row.get("total") or 0),
            processed=int(row.get("processed") or 0),
            succeeded=int(row.get("succeeded") or 0),
            errors=int(row.get("errors") or 0),
            improved=int(row.get("improved") or 0),
            unchanged=int(row.get("unchanged") or 0),
            unclassified=int(row.get("unclassified") or 0),
            cursor=int(cursor) if cursor is not None else None,
            resumed_processed=int(row.get("resumed_processed") or 0),
            is_cancelling=bool(row.get("is_cancelling")),
            message=row.get("message"),
            heartbeat_at=parse_timestamp(row.get("heartbeat_at")),
            started_at=parse_timestamp(row.get("started_at")),
            finished_at=parse_timestamp(row.get("finished_at")),
        )


def format_eta(seconds: float | None) -> str | None:
    """Human-readable ETA: ``~45s``, ``~12min``, ``~2h 5min``."""
    if seconds is None or math.isnan(seconds) or math.isinf(seconds):
        return None
    if seconds < 60:
        return f"~{round(seconds)}s"
    if seconds < 3600:
        return f"~{round(seconds / 60)}min"
    hours = int(seconds // 3600)
    minutes = round((seconds % 3600) / 60)
    return f"~{hours}h {minutes}min"


class ChunkStatus(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    DEFERRED = "deferred"
    RETRY = "retry"
    ERRORED = "errored"
    NOT_RUNNABLE = "not-runnable"
    LOST = "lost"


@dataclass(frozen=True)
class ChunkResult:
    """What one chunk invocation did to one job."""

    job_id: str
    status: ChunkStatus
    processed: int = 0
    succeeded: int = 0
    errors: int = 0
    improved: int = 0
    unchanged: int = 0
    unclassified: int = 0
    deferred: int = 0
    cursor: int | None = None
    message: str | None = None
