"""
Batch jobs and the in-process scheduler that runs them.
"""

from .batch import BatchJobRunner, JobReport, JobAbortedError, chunked
from .scheduler import JobScheduler, ScheduledJob, DEFAULT_SCHEDULE

__all__ = [
    "BatchJobRunner",
    "JobReport",
    "JobAbortedError",
    "chunked",
    "JobScheduler",
    "ScheduledJob",
    "DEFAULT_SCHEDULE",
]
