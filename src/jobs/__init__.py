"""
Job orchestration package.

This package contains:

- the job model and its state machine
- job persistence with guarded (conditional) updates
- work sources for annotation, refinement and reprocessing
- the chunk executor and the job command service
- the emergency kill switch
- the cross-corpus orchestrator
- the long-running daemon entrypoint and the operator CLI
"""

from .executor import ChunkExecutor
from .kill_switch import KillSwitch, KillSwitchReport, KillSwitchState
from .models import (
    ChunkResult,
    ChunkStatus,
    InvalidTransition,
    Job,
    JobScope,
    JobStatus,
    JobType,
)
from .orchestrator import CorpusOrchestrator, OrchestratorState, create_orchestrator
from .repository import JobRepository
from .service import JobNotFound, JobProgress, JobService

__all__ = [
    "ChunkExecutor",
    "ChunkResult",
    "ChunkStatus",
    "CorpusOrchestrator",
    "InvalidTransition",
    "Job",
    "JobNotFound",
    "JobProgress",
    "JobRepository",
    "JobScope",
    "JobService",
    "JobStatus",
    "JobType",
    "KillSwitch",
    "KillSwitchReport",
    "KillSwitchState",
    "OrchestratorState",
    "create_orchestrator",
]
