"""
Daemon Loop Utilities
=====================

The job daemon is the external trigger for chunked jobs. Chunks never loop on
their own: every poll fetches the runnable jobs, runs one chunk of each on a
thread pool, then sleeps. A poll therefore blocks for at most one chunk per
job, and a job that stops being runnable simply drops out of the next fetch.

A failing fetch (datastore down) backs off exponentially up to a cap instead
of hammering the datastore every interval; the first successful fetch resets
the backoff.
"""

from __future__ import annotations

import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Callable, Iterable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")

# Multiple of the poll interval that fetch-error backoff never exceeds.
MAX_BACKOFF_FACTOR = 8

_FAILED = object()


def run_polling_threadpool(
    *,
    daemon_name: str,
    fetch_work: Callable[[], list[T]],
    process_item: Callable[[T], object],
    poll_interval_seconds: int,
    max_workers: int,
    before_each_batch: Callable[[list[T]], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Poll for work until interrupted, processing each batch on a thread pool.

    Args:
        daemon_name:
            Name used in log messages.
        fetch_work:
            Returns the runnable items for this poll.
        process_item:
            Runs one item. Whatever it returns is tallied by its ``status``
            attribute for the poll summary; exceptions are logged and counted
            as ``failed``.
        poll_interval_seconds:
            Sleep between polls, at least one second.
        max_workers:
            Items processed in parallel.
        before_each_batch:
            Optional hook invoked once per non-empty batch.
        sleep:
            Injectable sleep function (primarily for tests).
    """
    interval = max(1, int(poll_interval_seconds))
    max_workers = max(1, int(max_workers))
    fetch_errors = 0
    was_idle = False

    while True:
        try:
            try:
                items = _unique(fetch_work())
            except Exception:
                fetch_errors += 1
                delay = _backoff(interval, fetch_errors)
                log.exception(
                    "Fetching work failed; backing off",
                    daemon=daemon_name,
                    consecutive_errors=fetch_errors,
                    sleep_seconds=delay,
                )
                sleep(delay)
                continue
            fetch_errors = 0

            if not items:
                if not was_idle:
                    log.info("No runnable work; waiting", daemon=daemon_name)
                was_idle = True
                sleep(interval)
                continue
            was_idle = False

            if before_each_batch is not None:
                before_each_batch(items)

            started = time.monotonic()
            results = _process_batch(daemon_name, items, process_item, max_workers)
            log.info(
                "Poll finished",
                daemon=daemon_name,
                item_count=len(items),
                outcomes=_tally(results),
                elapsed_seconds=round(time.monotonic() - started, 2),
            )
            sleep(interval)
        except KeyboardInterrupt:
            log.info("Ctrl-C received; exiting", daemon=daemon_name)
            break
        except Exception:
            log.exception("Unexpected error in daemon loop; sleeping", daemon=daemon_name)
            sleep(interval)


def _process_batch(
    daemon_name: str,
    items: list[T],
    process_item: Callable[[T], object],
    max_workers: int,
) -> list[object]:
    results: list[object] = []
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as pool:
        futures = {pool.submit(process_item, item): item for item in items}
        for future in as_completed(futures):
            try:
                results.append(future.result())
            except Exception:
                # The next poll fetches the item again if it is still runnable.
                log.exception(
                    "Work item failed",
                    daemon=daemon_name,
                    item=_safe_item_summary(futures[future]),
                )
                results.append(_FAILED)
    return results


def _backoff(interval: int, errors: int) -> int:
    return min(interval * 2 ** (errors - 1), interval * MAX_BACKOFF_FACTOR)


def _unique(items: Iterable[T]) -> list[T]:
    """Drop repeated items (same summary) while keeping fetch order."""
    seen: set[str] = set()
    unique = []
    for item in items or ():
        key = _safe_item_summary(item)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def _tally(results: Iterable[object]) -> dict[str, int]:
    counts: Counter[str] = Counter()
    for result in results:
        if result is _FAILED:
            counts["failed"] += 1
            continue
        status = getattr(result, "status", None)
        if isinstance(status, Enum):
            status = status.value
        counts[str(status) if status is not None else "done"] += 1
    return dict(counts)


def _safe_item_summary(item: object) -> str:
    """``table:id`` for jobs, something printable for anything else."""
    try:
        table = getattr(item, "table", None)
        item_id = getattr(item, "id", None)
        if table is not None and item_id is not None:
            return f"{table}:{item_id}"
        if isinstance(item, dict):
            if "id" in item:
                return f"job_id={item.get('id')}"
            return f"dict_keys={sorted(item.keys())}"
        return str(item)
    except Exception:
        return "<unprintable>"
