from __future__ import annotations

from .manager import TrainingJobManager
from .runner import JobOutcome, JobRunner, TrainingJobRunner
from .store import InMemoryJobStore, JobStore, RedisJobStore
from .types import INTERRUPTED_MESSAGE, Job, JobState, TrainingRequest

__all__ = [
    "INTERRUPTED_MESSAGE",
    "InMemoryJobStore",
    "Job",
    "JobOutcome",
    "JobRunner",
    "JobState",
    "JobStore",
    "RedisJobStore",
    "TrainingJobManager",
    "TrainingJobRunner",
    "TrainingRequest",
]
