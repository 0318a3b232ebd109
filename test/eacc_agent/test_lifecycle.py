import asyncio
import hashlib

import pytest

from eacc_agent.errors import MissingKeyError, StateConflictError, TransportError
from eacc_agent.ledger.models import JobState
from eacc_agent.lifecycle import JobLifecycleManager, JobPhase, RecordStatus, matches_keywords


def _manager(directory, store, agent_signer, capability, **kwargs):
    return JobLifecycleManager(directory, store, agent_signer, [capability], **kwargs)


def test_keyword_matching_covers_title_content_and_tags(directory, client_signer):
    job = directory.post_job(client_signer.address, "Need a Discord bot", tags=["DO"])
    assert matches_keywords(job, "", ["bot"])
    assert matches_keywords(job, "", ["BOT "])
    plain = directory.post_job(client_signer.address, "Logo design", tags=["Automation"])
    assert matches_keywords(plain, "", ["automation"])
    assert matches_keywords(plain, "please write a bot", ["bot"])
    assert not matches_keywords(plain, "vector art", ["bot", ""])


def test_open_keyword_job_is_relevant_and_taken(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability, keywords=["bot"])

    async def runner():
        job = await post_job("Need a Discord bot", "slash commands please")
        phase = await manager.process_job(job.id)
        return job, phase

    job, phase = asyncio.run(runner())
    assert phase is JobPhase.TAKEN
    assert job.id in manager.processed_job_ids
    assert manager.active_jobs[job.id].content == "slash commands please"
    assert len(directory.state.messages) == 1
    assert len(directory.state.takes) == 1
    assert directory.state.jobs[job.id].is_worker(agent_signer.address)


def test_creator_without_key_stays_discovered(directory, store, agent_signer, capability, other_signer):
    manager = _manager(directory, store, agent_signer, capability)
    job = directory.post_job(other_signer.address, "Need a bot")

    with pytest.raises(MissingKeyError):
        asyncio.run(manager.process_job(job.id))

    assert manager.phase_of(job.id) is JobPhase.DISCOVERED
    assert job.id not in manager.processed_job_ids
    assert job.id not in manager.active_jobs
    assert directory.state.messages == []

    report = asyncio.run(manager.discovery_tick())
    assert job.id in report.errors
    assert report.examined == [job.id]


def test_client_can_read_application_and_result(directory, store, agent_signer, capability, client_signer, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("automation bot", "count the messages")
        await manager.discovery_tick()
        await manager.active_jobs_tick()
        agent_key = await directory.public_key_of(agent_signer.address)
        client_key = store.session_key(client_signer, agent_key, job.id)
        application = await store.retrieve_text(directory.state.messages[0][2], client_key)
        result = await store.retrieve_text(directory.state.jobs[job.id].result_digest, client_key)
        return job, application, result

    job, application, result = asyncio.run(runner())
    assert application == f"I can do job {job.id}"
    assert result == f"result for {job.id}: count the messages"
    assert manager.phase_of(job.id) is JobPhase.DELIVERED
    assert manager.active_jobs[job.id].status is RecordStatus.DELIVERED


def test_multi_applicant_job_waits_for_assignment(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("bot wanted", "details", multiple_applicants=True)
        first = await manager.process_job(job.id)
        waiting = await manager.process_active_job(job.id)
        directory.assign_worker(job.id, agent_signer.address)
        delivered = await manager.process_active_job(job.id)
        return first, waiting, delivered

    first, waiting, delivered = asyncio.run(runner())
    assert first is JobPhase.AWAITING_ASSIGNMENT
    assert waiting is JobPhase.AWAITING_ASSIGNMENT
    assert delivered is JobPhase.DELIVERED
    assert directory.state.takes == []
    assert capability.executions == [0]


def test_overlapping_discovery_ticks_apply_once(directory, store, agent_signer, capability, post_job):
    directory.latency = 0.01
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        await post_job("bot one", "a")
        await post_job("bot two", "b")
        return await asyncio.gather(manager.discovery_tick(), manager.discovery_tick())

    first, second = asyncio.run(runner())
    assert sorted(first.outcomes) == [0, 1]
    assert second.skipped
    assert [message[0] for message in directory.state.messages] == [0, 1]


def test_concurrent_processing_of_one_job_applies_once(directory, store, agent_signer, capability, post_job):
    directory.latency = 0.01
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("bot", "x")
        return await asyncio.gather(manager.process_job(job.id), manager.process_job(job.id))

    phases = asyncio.run(runner())
    assert set(phases) == {JobPhase.TAKEN}
    assert len(directory.state.messages) == 1
    assert len(directory.state.takes) == 1


def test_overlapping_active_ticks_deliver_once(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        await post_job("bot", "x")
        await manager.discovery_tick()
        directory.latency = 0.01
        return await asyncio.gather(manager.active_jobs_tick(), manager.active_jobs_tick())

    first, second = asyncio.run(runner())
    assert first.outcomes == {0: JobPhase.DELIVERED}
    assert second.skipped
    assert len(directory.state.deliveries) == 1
    assert capability.executions == [0]


def test_failed_delivery_is_retried_without_reexecuting(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("bot", "x")
        await manager.process_job(job.id)
        directory.fail_next("deliver_result", TransportError("rpc unavailable"))
        failed = await manager.process_active_job(job.id)
        record = manager.active_jobs[job.id]
        status_after_failure = record.status
        delivered = await manager.process_active_job(job.id)
        return record, failed, status_after_failure, delivered

    record, failed, status_after_failure, delivered = asyncio.run(runner())
    assert failed is JobPhase.TAKEN
    assert status_after_failure is RecordStatus.DELIVERY_FAILED
    assert delivered is JobPhase.DELIVERED
    assert record.attempts == 2
    assert record.last_error is None
    assert capability.executions == [0]
    assert len(directory.state.deliveries) == 1


def test_delivered_job_is_not_delivered_again(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        await post_job("bot", "x")
        await manager.discovery_tick()
        await manager.active_jobs_tick()
        return await manager.active_jobs_tick()

    report = asyncio.run(runner())
    assert report.outcomes == {0: JobPhase.DELIVERED}
    assert len(directory.state.deliveries) == 1


@pytest.mark.parametrize("change", ["other_worker", "closed", "disputed"])
def test_job_leaving_actionable_set_is_abandoned(directory, store, agent_signer, capability, other_signer, post_job, change):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("bot", "x")
        await manager.process_job(job.id)
        if change == "other_worker":
            directory.assign_worker(job.id, other_signer.address)
        elif change == "closed":
            directory.close_job(job.id)
        else:
            directory.update_job(job.id, disputed=True)
        return job, await manager.process_active_job(job.id)

    job, phase = asyncio.run(runner())
    assert phase is JobPhase.ABANDONED
    assert job.id not in manager.active_jobs
    assert job.id in manager.processed_job_ids
    assert directory.state.deliveries == []


def test_rejected_take_is_retried_on_active_poll(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("bot", "x")
        directory.fail_next("assign_job", StateConflictError("nonce too low"))
        first = await manager.process_job(job.id)
        second = await manager.process_active_job(job.id)
        return first, second

    first, second = asyncio.run(runner())
    assert first is JobPhase.AWAITING_ASSIGNMENT
    assert second is JobPhase.TAKEN
    assert directory.state.jobs[0].state is JobState.TAKEN


def test_irrelevant_jobs_are_not_revisited(directory, store, agent_signer, capability, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        await post_job("Logo design", "vector art")
        first = await manager.discovery_tick()
        second = await manager.discovery_tick()
        return first, second

    first, second = asyncio.run(runner())
    assert first.outcomes == {0: JobPhase.IRRELEVANT}
    assert second.examined == []
    assert directory.state.messages == []


def test_unreachable_content_is_retried_next_tick(directory, store, agent_signer, capability, client_signer):
    manager = _manager(directory, store, agent_signer, capability)
    job = directory.post_job(
        client_signer.address, "bot", content_digest=hashlib.sha256(b"never published").digest()
    )

    first = asyncio.run(manager.discovery_tick())
    assert job.id in first.errors
    assert manager.phase_of(job.id) is JobPhase.DISCOVERED
    assert job.id not in manager.processed_job_ids

    second = asyncio.run(manager.discovery_tick())
    assert second.examined == [job.id]


def test_only_recent_jobs_are_examined(directory, store, agent_signer, capability, client_signer):
    for index in range(12):
        directory.post_job(client_signer.address, f"translation {index}")
    manager = _manager(directory, store, agent_signer, capability, recent_job_window=10)

    report = asyncio.run(manager.discovery_tick())

    assert report.examined == list(range(2, 12))
    assert set(report.outcomes.values()) == {JobPhase.IRRELEVANT}


def test_job_already_taken_by_someone_else_is_irrelevant(directory, store, agent_signer, capability, other_signer, post_job):
    manager = _manager(directory, store, agent_signer, capability)

    async def runner():
        job = await post_job("bot", "x")
        directory.assign_worker(job.id, other_signer.address)
        return await manager.process_job(job.id)

    assert asyncio.run(runner()) is JobPhase.IRRELEVANT
    assert directory.state.messages == []


def test_snapshot_and_window_validation(directory, store, agent_signer, capability):
    manager = _manager(directory, store, agent_signer, capability)
    assert manager.snapshot() == {"processed": [], "active": []}
    with pytest.raises(ValueError):
        _manager(directory, store, agent_signer, capability, recent_job_window=0)


def test_bookkeeping_follows_the_discovery_window(directory, store, agent_signer, capability, client_signer, post_job):
    manager = _manager(directory, store, agent_signer, capability, recent_job_window=2)

    async def runner():
        waiting = await post_job("bot wanted", "details", multiple_applicants=True)
        await manager.discovery_tick()
        for index in range(5):
            directory.post_job(client_signer.address, f"translation {index}")
            await manager.discovery_tick()
        return waiting

    waiting = asyncio.run(runner())
    assert set(manager.phases) == {waiting.id, 4, 5}
    assert set(manager._job_locks) <= {waiting.id, 4, 5}
    assert manager.phase_of(waiting.id) is JobPhase.AWAITING_ASSIGNMENT
    assert manager.phase_of(1) is None
    assert waiting.id in manager.processed_job_ids
