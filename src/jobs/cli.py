"""
Operator command line.

Thin argparse front end over the orchestrator, the job service and the kill
switch. Every command prints one JSON document to stdout; failures print
``{"error": ...}`` to stderr and exit non-zero.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

import structlog

from classifier.cache import DisambiguationCache
from common.config import Settings, setup_libraries
from common.flag_store import FlagStoreUnavailable
from common.logging_config import configure_logging
from common.supabase import DatastoreError

from .models import InvalidTransition, JobScope, JobType
from .orchestrator import CorpusOrchestrator, create_orchestrator
from .service import JobNotFound

log = structlog.get_logger(__name__)

JOB_TYPES = [job_type.value for job_type in JobType]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="corpus-tagger",
        description="Control corpus classification jobs and the emergency kill switch.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a job.")
    start.add_argument("--type", dest="job_type", choices=JOB_TYPES, default="annotate")
    start.add_argument("--corpus", help="Corpus to annotate (default: next with pending work).")
    start.add_argument("--domain", choices=["MG", "DS"], help="Refinement domain filter.")
    start.add_argument(
        "--secondary", action="store_true", help="Use the secondary (more expensive) model."
    )
    start.set_defaults(handler=_run_start)

    for name, handler, help_text in (
        ("pause", _run_pause, "Pause a running job."),
        ("resume", _run_resume, "Resume a paused job."),
        ("cancel", _run_cancel, "Cancel a job."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("job_id")
        command.add_argument("--type", dest="job_type", choices=JOB_TYPES, default="annotate")
        command.set_defaults(handler=handler)

    skip = subparsers.add_parser("skip", help="Cancel the current corpus job and move on.")
    skip.add_argument("--type", dest="job_type", choices=JOB_TYPES, default="annotate")
    skip.set_defaults(handler=_run_skip)

    status = subparsers.add_parser("status", help="Show orchestrator or job progress.")
    status.add_argument("job_id", nargs="?")
    status.add_argument("--type", dest="job_type", choices=JOB_TYPES, default="annotate")
    status.set_defaults(handler=_run_status)

    cleanup = subparsers.add_parser("cleanup", help="Cancel orphaned jobs.")
    cleanup.set_defaults(handler=_run_cleanup)

    kill = subparsers.add_parser("kill", help="Activate the emergency kill switch.")
    kill.add_argument("--reason", default="emergency_kill_switch")
    kill.set_defaults(handler=_run_kill)

    clear_kill = subparsers.add_parser("clear-kill", help="Clear the emergency kill switch.")
    clear_kill.set_defaults(handler=_run_clear_kill)

    classify = subparsers.add_parser("classify", help="Classify a single word.")
    classify.add_argument("word")
    classify.add_argument("--pos", help="Part-of-speech tag, e.g. NOUN.")
    classify.add_argument("--context", default="", help="Surrounding text.")
    classify.add_argument("--force", action="store_true", help="Ignore the cached entry.")
    classify.add_argument("--secondary", action="store_true")
    classify.set_defaults(handler=_run_classify)

    stats = subparsers.add_parser("cache-stats", help="Cache counts by domain and confidence.")
    stats.set_defaults(handler=_run_cache_stats)

    return parser


def _run_start(orchestrator: CorpusOrchestrator, args: argparse.Namespace) -> dict:
    job_type = JobType(args.job_type)
    if job_type is JobType.ANNOTATE:
        job = orchestrator.start(corpus_id=args.corpus, job_type=job_type)
        if job is None:
            return {"started": None, "message": "All corpora complete"}
    else:
        scope = JobScope(
            corpus_id=args.corpus, domain_filter=args.domain, secondary=args.secondary
        )
        job = orchestrator.service.start(job_type, scope)
    return {"started": orchestrator.service.progress_of(job).as_dict()}


def _run_pause(orchestrator, args):
    job = orchestrator.service.pause(JobType(args.job_type), args.job_id)
    return orchestrator.service.progress_of(job).as_dict()


def _run_resume(orchestrator, args):
    job = orchestrator.service.resume(JobType(args.job_type), args.job_id)
    return orchestrator.service.progress_of(job).as_dict()


def _run_cancel(orchestrator, args):
    job = orchestrator.service.cancel(JobType(args.job_type), args.job_id)
    return orchestrator.service.progress_of(job).as_dict()


def _run_skip(orchestrator, args):
    job_type = JobType(args.job_type)
    orchestrator.recover(job_type)
    job = orchestrator.skip(job_type)
    return {"started": orchestrator.service.progress_of(job).as_dict() if job else None}


def _run_status(orchestrator, args):
    if args.job_id:
        return orchestrator.service.progress(JobType(args.job_type), args.job_id).as_dict()
    orchestrator.recover()
    return orchestrator.status()


def _run_cleanup(orchestrator, args):
    return {"cleaned": orchestrator.cleanup()}


def _run_kill(orchestrator, args):
    return orchestrator.kill_switch.activate(args.reason).as_dict()


def _run_clear_kill(orchestrator, args):
    return {"cleared": orchestrator.kill_switch.clear()}


def _run_classify(orchestrator, args):
    outcome = orchestrator.classifier.classify(
        args.word,
        pos=args.pos,
        context=args.context,
        force=args.force,
        secondary=args.secondary,
    )
    result = outcome.result
    return {
        "word": outcome.word,
        "status": outcome.status.value,
        "tier": outcome.tier.value if outcome.tier else None,
        "expression": outcome.expression,
        "result": result.to_row() if result else None,
        "error": outcome.error,
    }


def _run_cache_stats(orchestrator, args):
    cache: DisambiguationCache = orchestrator.classifier.cache
    return {
        "by_domain": cache.count_by_domain(),
        "by_confidence": cache.count_by_confidence(orchestrator.settings.LOW_CONFIDENCE_THRESHOLD),
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
        # stdout carries the JSON result.
        configure_logging(settings, stream=sys.stderr)
        setup_libraries(settings)
    except ValueError as e:
        print(json.dumps({"error": f"Configuration error: {e}"}), file=sys.stderr)
        return 2

    orchestrator = create_orchestrator(settings)
    try:
        payload = args.handler(orchestrator, args)
    except (
        JobNotFound,
        InvalidTransition,
        ValueError,
        DatastoreError,
        FlagStoreUnavailable,
    ) as e:
        log.warning("Command failed", command=args.command, error=str(e))
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1
    finally:
        orchestrator.close()

    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
