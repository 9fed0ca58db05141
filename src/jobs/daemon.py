"""
Corpus Tagging Daemon
=====================

This script is the external trigger for classification jobs. On every poll
it reconciles the orchestrator (orphan cleanup, advancing past completed
corpora) and then runs one chunk of every running job, several jobs in
parallel.
"""

from __future__ import annotations

import structlog

from common.config import Settings, setup_libraries
from common.daemon_loop import run_polling_threadpool
from common.logging_config import configure_logging

from .models import ChunkResult, Job
from .orchestrator import CorpusOrchestrator, create_orchestrator


def _fetch_runnable(orchestrator: CorpusOrchestrator) -> list[Job]:
    log = structlog.get_logger(__name__)
    report = orchestrator.reconcile()
    if report["orphans_cancelled"] or report["started_job"]:
        log.info("Reconciled jobs", **report)
    return orchestrator.runnable_jobs()


def main() -> None:
    """Main loop for the corpus tagging daemon."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    log.info(
        "Starting corpus tagging daemon",
        poll_interval=settings.POLL_INTERVAL,
        job_workers=settings.JOB_WORKERS,
        word_workers=settings.WORD_WORKERS,
        chunk_size=settings.CHUNK_SIZE,
        llm_provider=settings.LLM_PROVIDER,
        ai_models=settings.AI_MODELS,
        corpora=settings.CORPORA,
    )

    orchestrator = create_orchestrator(settings)
    orchestrator.recover()

    def process_job(job: Job) -> ChunkResult:
        return orchestrator.executor.run_chunk(job.job_type, job.id)

    try:
        run_polling_threadpool(
            daemon_name="jobs",
            fetch_work=lambda: _fetch_runnable(orchestrator),
            process_item=process_job,
            poll_interval_seconds=settings.POLL_INTERVAL,
            max_workers=settings.JOB_WORKERS,
        )
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
