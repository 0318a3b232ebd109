"""In-memory marketplace simulator used by simulated runs and the test suite."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct

from ..errors import StateConflictError
from .directory import take_job_digest
from .models import ZERO_HASH, Job, JobState

_LOGGER = logging.getLogger(__name__)


@dataclass
class Registration:
    public_key: bytes
    name: str = ""
    bio: str = ""
    avatar: str = ""


@dataclass
class LedgerState:
    jobs: Dict[int, Job] = field(default_factory=dict)
    events: Dict[int, int] = field(default_factory=dict)
    users: Dict[str, Registration] = field(default_factory=dict)
    messages: List[Tuple[int, str, bytes]] = field(default_factory=list)
    takes: List[Tuple[int, bytes]] = field(default_factory=list)
    deliveries: List[Tuple[int, bytes]] = field(default_factory=list)


class InMemoryJobDirectory:
    """In-process marketplace simulator.

    Mirrors the contract rules the agent depends on so the lifecycle can be
    exercised without a chain: messages only on actionable jobs, takes only on
    open single-applicant jobs with a signature bound to the current event
    count, deliveries only by the assigned worker.
    """

    def __init__(
        self,
        local_address: str,
        *,
        state: Optional[LedgerState] = None,
        latency: float = 0.0,
        verify_signatures: bool = True,
    ) -> None:
        self._local_address = local_address
        self.state = state or LedgerState()
        self.latency = latency
        self.verify_signatures = verify_signatures
        self._lock = threading.Lock()
        self._failures: Dict[str, List[BaseException]] = {}

    @property
    def local_address(self) -> str:
        return self._local_address

    # Simulation helpers --------------------------------------------------------
    def post_job(
        self,
        creator: str,
        title: str,
        *,
        tags: Sequence[str] = (),
        content_digest: bytes = ZERO_HASH,
        multiple_applicants: bool = False,
        amount: int = 0,
        **fields,
    ) -> Job:
        with self._lock:
            job_id = len(self.state.jobs)
            job = Job(
                id=job_id,
                state=JobState.OPEN,
                creator=creator,
                title=title,
                tags=tuple(tags),
                content_digest=bytes(content_digest),
                multiple_applicants=multiple_applicants,
                amount=amount,
                **fields,
            )
            self.state.jobs[job_id] = job
            self.state.events[job_id] = 1
        _LOGGER.debug("Simulated job %s posted by %s", job_id, creator)
        return job

    def update_job(self, job_id: int, **changes) -> Job:
        with self._lock:
            job = replace(self._require(job_id), **changes)
            self.state.jobs[job_id] = job
            self.state.events[job_id] = self.state.events.get(job_id, 0) + 1
        return job

    def assign_worker(self, job_id: int, worker: str) -> Job:
        """Creator-side selection of a worker for multi-applicant jobs."""

        return self.update_job(job_id, worker=worker, state=JobState.TAKEN)

    def close_job(self, job_id: int) -> Job:
        return self.update_job(job_id, state=JobState.CLOSED)

    def set_public_key(self, address: str, public_key: bytes) -> None:
        with self._lock:
            self.state.users[address.lower()] = Registration(public_key=bytes(public_key))

    def fail_next(self, operation: str, error: BaseException) -> None:
        """Make the next call to ``operation`` raise ``error``."""

        self._failures.setdefault(operation, []).append(error)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def _settle(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    def _require(self, job_id: int) -> Job:
        job = self.state.jobs.get(int(job_id))
        if job is None:
            raise StateConflictError(f"Job {job_id} does not exist", job_id=job_id)
        return job

    # Reads ---------------------------------------------------------------------
    async def job_count(self) -> int:
        self._maybe_fail("job_count")
        return len(self.state.jobs)

    async def get_job(self, job_id: int) -> Job:
        self._maybe_fail("get_job")
        with self._lock:
            return self._require(job_id)

    async def event_count(self, job_id: int) -> int:
        with self._lock:
            return self.state.events.get(int(job_id), 0)

    async def is_registered(self, address: str) -> bool:
        return address.lower() in self.state.users

    async def public_key_of(self, address: str) -> bytes:
        registration = self.state.users.get(address.lower())
        return registration.public_key if registration else b""

    # Writes --------------------------------------------------------------------
    async def apply_to_job(self, job_id: int, recipient: str, content_digest: bytes) -> None:
        self._maybe_fail("apply_to_job")
        await self._settle()
        with self._lock:
            job = self._require(job_id)
            if not job.is_actionable:
                raise StateConflictError(f"Job {job_id} is closed", job_id=job_id)
            self.state.messages.append((int(job_id), recipient, bytes(content_digest)))
            self.state.events[job_id] = self.state.events.get(job_id, 0) + 1

    async def assign_job(self, job_id: int, signature: bytes) -> None:
        self._maybe_fail("assign_job")
        await self._settle()
        with self._lock:
            job = self._require(job_id)
            if job.state is not JobState.OPEN:
                raise StateConflictError(f"Job {job_id} is not open", job_id=job_id)
            if job.multiple_applicants:
                raise StateConflictError(f"Job {job_id} requires creator selection", job_id=job_id)
            if self.verify_signatures:
                digest = take_job_digest(self.state.events.get(job_id, 0), job_id)
                signer = Account.recover_message(encode_defunct(primitive=digest), signature=bytes(signature))
                if signer.lower() != self._local_address.lower():
                    raise StateConflictError(f"Stale or foreign take signature for job {job_id}", job_id=job_id)
            self.state.jobs[job_id] = replace(job, state=JobState.TAKEN, worker=self._local_address)
            self.state.takes.append((int(job_id), bytes(signature)))
            self.state.events[job_id] = self.state.events.get(job_id, 0) + 1

    async def deliver_result(self, job_id: int, result_digest: bytes) -> None:
        self._maybe_fail("deliver_result")
        await self._settle()
        with self._lock:
            job = self._require(job_id)
            if job.state is not JobState.TAKEN or not job.is_worker(self._local_address):
                raise StateConflictError(f"Job {job_id} is not assigned to {self._local_address}", job_id=job_id)
            if job.has_result:
                raise StateConflictError(f"Job {job_id} already has a result", job_id=job_id)
            self.state.jobs[job_id] = replace(job, result_digest=bytes(result_digest))
            self.state.deliveries.append((int(job_id), bytes(result_digest)))
            self.state.events[job_id] = self.state.events.get(job_id, 0) + 1

    async def register_identity(self, public_key: bytes, name: str, bio: str, avatar: str) -> None:
        self._maybe_fail("register_identity")
        await self._settle()
        with self._lock:
            self.state.users[self._local_address.lower()] = Registration(
                public_key=bytes(public_key), name=name, bio=bio, avatar=avatar
            )


__all__ = ["InMemoryJobDirectory", "LedgerState", "Registration"]
