"""
Emergency Kill Switch
=====================

Activation fans out to independent, individually bounded operations:

1. set a TTL flag in the fast flag store (works while the datastore is down)
2. cancel every ``running`` job in each job table, one table per worker,
   each bounded by ``KILL_SWITCH_TABLE_TIMEOUT``

The caller gets a `KillSwitchReport` that distinguishes "fully stopped" from
"flag set, but some tables unreachable".

Reading the flag is tri-state. When the flag store cannot be reached the
answer is `KillSwitchState.UNKNOWN`, not inactive, unless this process
activated the switch itself within the TTL.
"""

from __future__ import annotations

import datetime as dt
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import structlog

from common.config import Settings
from common.flag_store import (
    COOLDOWN_UNTIL_KEY,
    KILL_FLAG_KEY,
    TRIGGER_REASON_KEY,
    FlagStore,
    FlagStoreUnavailable,
)
from common.supabase import DatastoreError, SupabaseClient
from common.utils import to_iso, utcnow

log = structlog.get_logger(__name__)

DEFAULT_REASON = "emergency_kill_switch"


class KillSwitchState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


@dataclass
class TableResult:
    cancelled: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class KillSwitchReport:
    reason: str
    flag_set: bool
    flag_error: str | None = None
    cooldown_until: str | None = None
    tables: dict[str, TableResult] = field(default_factory=dict)

    @property
    def jobs_cancelled(self) -> int:
        return sum(result.cancelled for result in self.tables.values())

    @property
    def unreachable_tables(self) -> list[str]:
        return sorted(name for name, result in self.tables.items() if not result.ok)

    @property
    def fully_stopped(self) -> bool:
        return self.flag_set and not self.unreachable_tables

    def as_dict(self) -> dict:
        return {
            "reason": self.reason,
            "flag_set": self.flag_set,
            "flag_error": self.flag_error,
            "cooldown_until": self.cooldown_until,
            "jobs_cancelled": self.jobs_cancelled,
            "fully_stopped": self.fully_stopped,
            "tables": {
                name: {"cancelled": result.cancelled, "error": result.error}
                for name, result in sorted(self.tables.items())
            },
        }


class KillSwitch:
    def __init__(
        self,
        flag_store: FlagStore,
        client: SupabaseClient,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        now: Callable[[], dt.datetime] = utcnow,
    ):
        self._flags = flag_store
        self._client = client
        self._tables = list(settings.JOB_TABLES)
        self._ttl = settings.KILL_SWITCH_TTL_SECONDS
        self._table_timeout = settings.KILL_SWITCH_TABLE_TIMEOUT
        self._clock = clock
        self._now = now
        self._lock = threading.Lock()
        self._local_until = 0.0

    def activate(self, reason: str = DEFAULT_REASON) -> KillSwitchReport:
        now = self._now()
        cooldown_until = now + dt.timedelta(seconds=self._ttl)
        with self._lock:
            self._local_until = self._clock() + self._ttl

        report = KillSwitchReport(
            reason=reason, flag_set=False, cooldown_until=to_iso(cooldown_until)
        )
        try:
            self._flags.set(KILL_FLAG_KEY, "true", self._ttl)
            self._flags.set(COOLDOWN_UNTIL_KEY, str(int(cooldown_until.timestamp() * 1000)), self._ttl)
            self._flags.set(TRIGGER_REASON_KEY, reason, self._ttl)
            report.flag_set = True
        except FlagStoreUnavailable as e:
            report.flag_error = str(e)
            log.error("Kill flag could not be set", error=str(e))

        report.tables = self._cancel_running_jobs(reason, now)
        log.warning(
            "Emergency kill switch activated",
            reason=reason,
            flag_set=report.flag_set,
            jobs_cancelled=report.jobs_cancelled,
            unreachable_tables=report.unreachable_tables,
        )
        return report

    def _cancel_running_jobs(self, reason: str, now: dt.datetime) -> dict[str, TableResult]:
        if not self._tables:
            return {}
        values = {
            "status": "cancelled",
            "is_cancelling": True,
            "message": f"Emergency stop: {reason}",
            "heartbeat_at": to_iso(now),
            "finished_at": to_iso(now),
        }
        pool = ThreadPoolExecutor(max_workers=len(self._tables))
        futures = {
            pool.submit(
                self._client.update,
                table,
                values,
                {"status": "eq.running"},
                timeout=self._table_timeout,
            ): table
            for table in self._tables
        }
        # A wedged table must not hold the report back past its own budget.
        done, _ = wait(futures, timeout=self._table_timeout + 1)
        pool.shutdown(wait=False, cancel_futures=True)

        results: dict[str, TableResult] = {}
        for future, table in futures.items():
            if future not in done:
                results[table] = TableResult(error="timed out")
                continue
            try:
                rows = future.result()
            except DatastoreError as e:
                results[table] = TableResult(error=str(e))
                continue
            results[table] = TableResult(cancelled=len(rows))
        return results

    def _locally_active(self) -> bool:
        with self._lock:
            return self._clock() < self._local_until

    def state(self) -> KillSwitchState:
        try:
            value = self._flags.get(KILL_FLAG_KEY)
        except FlagStoreUnavailable as e:
            if self._locally_active():
                return KillSwitchState.ACTIVE
            log.debug("Kill flag unknown", error=str(e))
            return KillSwitchState.UNKNOWN
        if value is not None and value.lower() == "true":
            return KillSwitchState.ACTIVE
        return KillSwitchState.INACTIVE

    def is_active(self) -> bool:
        return self.state() is KillSwitchState.ACTIVE

    def clear(self) -> bool:
        """Remove the flag and the cooldown; returns False if the store was unreachable."""
        with self._lock:
            self._local_until = 0.0
        try:
            self._flags.delete(KILL_FLAG_KEY, COOLDOWN_UNTIL_KEY, TRIGGER_REASON_KEY)
        except FlagStoreUnavailable as e:
            log.error("Kill flag could not be cleared", error=str(e))
            return False
        log.info("Emergency kill switch cleared")
        return True

    def close(self) -> None:
        self._flags.close()
