"""Job lifecycle manager: discovery, application, execution and delivery.

Two entry points are driven by independent timers: :meth:`discovery_tick`
looks at the most recent jobs and applies to relevant ones, and
:meth:`active_jobs_tick` follows the jobs the agent applied to until they are
delivered or leave the actionable range. Each tick is single-flight and every
per-job step runs under that job's lock, so the two timers never act on the
same job at the same time and no job is applied to or delivered twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .capabilities.base import WorkerCapability, run_capability, select_capability
from .crypto.keys import Signer
from .errors import AgentError, MissingKeyError, StateConflictError
from .ledger.directory import JobDirectory, take_job_digest
from .ledger.models import Job, JobState
from .storage.facade import ContentStore

_LOGGER = logging.getLogger(__name__)

DEFAULT_RECENT_JOB_WINDOW = 10
DEFAULT_KEYWORDS = ("bot", "automation")


class JobPhase(str, Enum):
    DISCOVERED = "discovered"
    IRRELEVANT = "irrelevant"
    RELEVANT = "relevant"
    APPLIED = "applied"
    AWAITING_ASSIGNMENT = "awaiting_assignment"
    TAKEN = "taken"
    EXECUTING = "executing"
    DELIVERED = "delivered"
    ABANDONED = "abandoned"


class RecordStatus(str, Enum):
    STARTED = "started"
    EXECUTING = "executing"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"


@dataclass
class ActiveJobRecord:
    """Local bookkeeping for a job the agent applied to."""

    job: Job
    content: str
    capability: WorkerCapability
    status: RecordStatus = RecordStatus.STARTED
    start_time: float = field(default_factory=time.time)
    result: Any = None
    packaged: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    result_locator: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "jobId": self.job.id,
            "title": self.job.title,
            "capability": self.capability.name,
            "status": self.status.value,
            "startTime": self.start_time,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "resultLocator": self.result_locator,
        }


@dataclass
class TickReport:
    skipped: bool = False
    examined: List[int] = field(default_factory=list)
    outcomes: Dict[int, JobPhase] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)


def matches_keywords(job: Job, content: str, keywords: Iterable[str]) -> bool:
    """Case-insensitive keyword test over title, tags and content."""

    haystacks = [job.title.lower(), (content or "").lower()] + [tag.lower() for tag in job.tags]
    for keyword in keywords:
        needle = keyword.strip().lower()
        if needle and any(needle in text for text in haystacks):
            return True
    return False


class JobLifecycleManager:
    def __init__(
        self,
        directory: JobDirectory,
        store: ContentStore,
        signer: Signer,
        capabilities: Sequence[WorkerCapability],
        *,
        keywords: Sequence[str] = DEFAULT_KEYWORDS,
        recent_job_window: int = DEFAULT_RECENT_JOB_WINDOW,
    ) -> None:
        if recent_job_window < 1:
            raise ValueError("recent_job_window must be at least 1")
        self.directory = directory
        self.store = store
        self.signer = signer
        self.capabilities = list(capabilities)
        self.keywords = tuple(keywords)
        self.recent_job_window = recent_job_window

        self.processed_job_ids: Set[int] = set()
        self.active_jobs: Dict[int, ActiveJobRecord] = {}
        self.phases: Dict[int, JobPhase] = {}
        self._job_locks: Dict[int, asyncio.Lock] = {}
        self._discovery_in_flight = False
        self._active_in_flight = False

    # Bookkeeping -------------------------------------------------------------
    def _lock_for(self, job_id: int) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._job_locks[job_id] = lock
        return lock

    def _set_phase(self, job_id: int, phase: JobPhase) -> JobPhase:
        previous = self.phases.get(job_id)
        self.phases[job_id] = phase
        if previous is not phase:
            _LOGGER.debug("Job %s: %s -> %s", job_id, previous.value if previous else "-", phase.value,
                          extra={"job_id": job_id, "phase": phase.value})
        return phase

    def phase_of(self, job_id: int) -> Optional[JobPhase]:
        return self.phases.get(job_id)

    def _abandon(self, job_id: int, reason: str) -> JobPhase:
        self.active_jobs.pop(job_id, None)
        _LOGGER.info("Job %s removed from active jobs: %s", job_id, reason, extra={"job_id": job_id})
        return self._set_phase(job_id, JobPhase.ABANDONED)

    def _forget_before(self, start: int) -> None:
        """Drop phases and locks of jobs that slid out of the discovery window."""

        for job_id in [job_id for job_id in self.phases if job_id < start and job_id not in self.active_jobs]:
            del self.phases[job_id]
        for job_id, lock in list(self._job_locks.items()):
            if job_id < start and job_id not in self.active_jobs and not lock.locked():
                del self._job_locks[job_id]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "processed": sorted(self.processed_job_ids),
            "active": [record.summary() for record in self.active_jobs.values()],
        }

    # Relevance ---------------------------------------------------------------
    async def fetch_content(self, job: Job) -> str:
        if not job.has_content:
            return ""
        return await self.store.retrieve_text(job.content_digest)

    def is_relevant(self, job: Job, content: str) -> bool:
        if job.id in self.processed_job_ids or not job.is_open:
            return False
        return matches_keywords(job, content, self.keywords)

    # Discovery ---------------------------------------------------------------
    async def discovery_tick(self) -> TickReport:
        if self._discovery_in_flight:
            _LOGGER.warning("Previous discovery tick still running; skipping this one")
            return TickReport(skipped=True)
        self._discovery_in_flight = True
        try:
            return await self._discover()
        finally:
            self._discovery_in_flight = False

    async def _discover(self) -> TickReport:
        report = TickReport()
        count = await self.directory.job_count()
        start = max(0, count - self.recent_job_window)
        self._forget_before(start)
        _LOGGER.info("Found %d jobs, checking %d to %d", count, start, count - 1)
        for job_id in range(start, count):
            if job_id in self.processed_job_ids or self.phases.get(job_id) is JobPhase.IRRELEVANT:
                continue
            report.examined.append(job_id)
            try:
                report.outcomes[job_id] = await self.process_job(job_id)
            except MissingKeyError as exc:
                report.errors[job_id] = str(exc)
                _LOGGER.warning("Skipping job %s: %s", job_id, exc, extra={"job_id": job_id})
            except AgentError as exc:
                report.errors[job_id] = str(exc)
                _LOGGER.warning("Job %s failed this tick: %s", job_id, exc, extra={"job_id": job_id})
            except Exception as exc:
                report.errors[job_id] = str(exc) or type(exc).__name__
                _LOGGER.exception("Unexpected error while processing job %s", job_id, extra={"job_id": job_id})
        return report

    async def process_job(self, job_id: int) -> JobPhase:
        """Evaluate one job and apply to it when relevant.

        Raises :class:`MissingKeyError` when the creator has no published key;
        the job then stays ``discovered`` and is evaluated again next tick.
        """

        async with self._lock_for(job_id):
            if job_id in self.processed_job_ids:
                return self.phases.get(job_id, JobPhase.APPLIED)
            job = await self.directory.get_job(job_id)
            self._set_phase(job_id, JobPhase.DISCOVERED)
            if not job.is_open:
                return self._set_phase(job_id, JobPhase.IRRELEVANT)

            content = await self.fetch_content(job)
            if not self.is_relevant(job, content):
                _LOGGER.info("Job %s is not relevant", job_id, extra={"job_id": job_id})
                return self._set_phase(job_id, JobPhase.IRRELEVANT)
            capability = select_capability(self.capabilities, job, content)
            if capability is None:
                _LOGGER.info("No capability matches job %s", job_id, extra={"job_id": job_id})
                return self._set_phase(job_id, JobPhase.IRRELEVANT)
            self._set_phase(job_id, JobPhase.RELEVANT)
            _LOGGER.info("Using %s for job %s: %s", capability.name, job_id, job.title, extra={"job_id": job_id})
            try:
                return await self._apply(job, content, capability)
            except MissingKeyError:
                self._set_phase(job_id, JobPhase.DISCOVERED)
                raise

    async def _session_key(self, job: Job) -> bytes:
        creator_key = await self.directory.public_key_of(job.creator)
        if not creator_key:
            raise MissingKeyError(job.creator, job_id=job.id)
        return self.store.session_key(self.signer, creator_key, job.id)

    async def _apply(self, job: Job, content: str, capability: WorkerCapability) -> JobPhase:
        session_key = await self._session_key(job)
        message = capability.build_application_message(job, content)
        published = await self.store.publish(message, session_key)
        await self.directory.apply_to_job(job.id, job.creator, published.digest)

        self.processed_job_ids.add(job.id)
        self.active_jobs[job.id] = ActiveJobRecord(job=job, content=content, capability=capability)
        self._set_phase(job.id, JobPhase.APPLIED)
        _LOGGER.info("Applied to job %s with message %s", job.id, published.locator, extra={"job_id": job.id})

        if job.multiple_applicants:
            return self._set_phase(job.id, JobPhase.AWAITING_ASSIGNMENT)
        return await self._take(job)

    async def _take(self, job: Job) -> JobPhase:
        revision = await self.directory.event_count(job.id)
        signature = self.signer.sign_message(take_job_digest(revision, job.id))
        try:
            await self.directory.assign_job(job.id, signature)
        except StateConflictError as exc:
            _LOGGER.info("Could not take job %s: %s", job.id, exc, extra={"job_id": job.id})
            return self._set_phase(job.id, JobPhase.AWAITING_ASSIGNMENT)
        _LOGGER.info("Took job %s", job.id, extra={"job_id": job.id})
        return self._set_phase(job.id, JobPhase.TAKEN)

    # Active jobs -------------------------------------------------------------
    async def active_jobs_tick(self) -> TickReport:
        if self._active_in_flight:
            _LOGGER.warning("Previous active-jobs tick still running; skipping this one")
            return TickReport(skipped=True)
        self._active_in_flight = True
        try:
            report = TickReport()
            for job_id in list(self.active_jobs):
                report.examined.append(job_id)
                try:
                    phase = await self.process_active_job(job_id)
                except AgentError as exc:
                    report.errors[job_id] = str(exc)
                    _LOGGER.warning("Active job %s failed this tick: %s", job_id, exc, extra={"job_id": job_id})
                    continue
                except Exception as exc:
                    report.errors[job_id] = str(exc) or type(exc).__name__
                    _LOGGER.exception("Unexpected error while following job %s", job_id, extra={"job_id": job_id})
                    continue
                if phase is not None:
                    report.outcomes[job_id] = phase
            return report
        finally:
            self._active_in_flight = False

    async def process_active_job(self, job_id: int) -> Optional[JobPhase]:
        async with self._lock_for(job_id):
            record = self.active_jobs.get(job_id)
            if record is None:
                return None
            job = await self.directory.get_job(job_id)
            record.job = job
            local = self.directory.local_address

            if job.state > JobState.TAKEN or job.disputed:
                return self._abandon(job_id, f"state {job.state.name.lower()}, disputed={job.disputed}")
            if job.state is JobState.OPEN:
                if job.multiple_applicants:
                    return self._set_phase(job_id, JobPhase.AWAITING_ASSIGNMENT)
                # An earlier take did not go through; retry with a fresh revision.
                return await self._take(job)
            if not job.is_worker(local):
                return self._abandon(job_id, f"worker is {job.worker}")
            if job.has_result:
                record.status = RecordStatus.DELIVERED
                return self._set_phase(job_id, JobPhase.DELIVERED)
            if record.status in (RecordStatus.STARTED, RecordStatus.DELIVERY_FAILED):
                return await self._execute_and_deliver(record)
            return self.phases.get(job_id, JobPhase.TAKEN)

    async def _execute_and_deliver(self, record: ActiveJobRecord) -> JobPhase:
        job = record.job
        record.status = RecordStatus.EXECUTING
        record.attempts += 1
        self._set_phase(job.id, JobPhase.EXECUTING)
        _LOGGER.info("Executing job %s (attempt %d)", job.id, record.attempts, extra={"job_id": job.id})
        try:
            if record.packaged is None:
                if record.result is None:
                    record.result = await run_capability(record.capability, job, record.content)
                record.packaged = record.capability.package_result(job, record.content, record.result)
            session_key = await self._session_key(job)
            published = await self.store.publish(record.packaged, session_key)
            await self.directory.deliver_result(job.id, published.digest)
        except StateConflictError as exc:
            record.last_error = str(exc)
            return self._abandon(job.id, f"delivery rejected: {exc}")
        except Exception as exc:
            record.status = RecordStatus.DELIVERY_FAILED
            record.last_error = str(exc) or type(exc).__name__
            _LOGGER.warning("Delivery of job %s failed, will retry: %s", job.id, record.last_error,
                            exc_info=not isinstance(exc, AgentError), extra={"job_id": job.id})
            return self._set_phase(job.id, JobPhase.TAKEN)

        record.status = RecordStatus.DELIVERED
        record.result_locator = published.locator
        record.last_error = None
        _LOGGER.info("Delivered job %s as %s", job.id, published.locator, extra={"job_id": job.id})
        return self._set_phase(job.id, JobPhase.DELIVERED)


__all__ = [
    "ActiveJobRecord",
    "DEFAULT_KEYWORDS",
    "DEFAULT_RECENT_JOB_WINDOW",
    "JobLifecycleManager",
    "JobPhase",
    "RecordStatus",
    "TickReport",
    "matches_keywords",
]
