"""Job Directory collaborator: typed jobs, web3 adapter and simulator."""

from __future__ import annotations

from .directory import JobDirectory, Web3JobDirectory, take_job_digest
from .memory import InMemoryJobDirectory
from .models import Job, JobState, decode_job

__all__ = [
    "InMemoryJobDirectory",
    "Job",
    "JobDirectory",
    "JobState",
    "Web3JobDirectory",
    "decode_job",
    "take_job_digest",
]
