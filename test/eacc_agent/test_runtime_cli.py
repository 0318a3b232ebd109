import asyncio
import json
import logging

import pytest

from eacc_agent.cli import main
from eacc_agent.config import load_settings
from eacc_agent.errors import ConfigurationError, IdentityMismatchError
from eacc_agent.ledger.memory import InMemoryJobDirectory
from eacc_agent.lifecycle import JobPhase
from eacc_agent.logging_utils import StructuredJsonFormatter, abbreviate
from eacc_agent.runtime import EXIT_FAILURE, EXIT_OK, AgentRuntime, seed_simulation

AGENT_KEY = "0x" + "11" * 32


@pytest.fixture
def runtime() -> AgentRuntime:
    settings = load_settings(env={"PRIVATE_KEY": AGENT_KEY, "JOB_POLL_INTERVAL": "1000"})
    return AgentRuntime.build(settings, simulate=True)


def test_simulated_runtime_uses_in_memory_collaborators(runtime, agent_signer):
    assert isinstance(runtime.directory, InMemoryJobDirectory)
    assert runtime.signer.address == agent_signer.address
    assert [c.name for c in runtime.manager.capabilities] == ["discord-bot"]


def test_live_build_requires_configuration():
    with pytest.raises(ConfigurationError):
        AgentRuntime.build(load_settings(env={}))


def test_ensure_registration_registers_then_verifies(runtime):
    async def runner():
        before = await runtime.registration_status()
        await runtime.ensure_registration()
        after = await runtime.registration_status()
        await runtime.ensure_registration()
        return before, after

    before, after = asyncio.run(runner())
    assert not before.registered and not before.matches
    assert after.matches
    assert after.summary()["publishedKey"] == runtime.identity().public_key_hex


def test_foreign_published_key_is_an_identity_mismatch(runtime, other_signer):
    foreign = runtime.store.identity(other_signer).public_key
    runtime.directory.set_public_key(runtime.signer.address, foreign)
    with pytest.raises(IdentityMismatchError):
        asyncio.run(runtime.ensure_registration())


def test_run_once_delivers_a_seeded_job(runtime):
    async def runner():
        job_id = await seed_simulation(runtime)
        discovered, followed = await runtime.run_once()
        return job_id, discovered, followed

    job_id, discovered, followed = asyncio.run(runner())
    assert discovered.outcomes == {job_id: JobPhase.TAKEN}
    assert followed.outcomes == {job_id: JobPhase.DELIVERED}
    job = runtime.directory.state.jobs[job_id]
    assert job.has_result


def test_run_stops_after_max_runtime(runtime):
    async def runner():
        await seed_simulation(runtime)
        return await runtime.run(install_signal_handlers=False, max_runtime=0.3)

    assert asyncio.run(runner()) == EXIT_OK
    assert runtime.manager.processed_job_ids == {0}


def test_unexpected_tick_error_stops_the_process(runtime):
    async def broken_tick():
        raise RuntimeError("bug in discovery")

    runtime.manager.discovery_tick = broken_tick
    exit_code = asyncio.run(runtime.run(install_signal_handlers=False, max_runtime=5))
    assert exit_code == EXIT_FAILURE


def test_cli_simulated_single_pass(capsys):
    assert main(["--simulate", "run", "--once"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["discovery"] == {"0": "taken"}
    assert payload["active"] == {"0": "delivered"}


def test_cli_reports_configuration_problems(capsys, tmp_path):
    assert main(["run", "--once"]) == 2
    assert "RPC_URL: required" in capsys.readouterr().err
    assert main(["--config", str(tmp_path / "missing.yaml"), "--simulate", "run"]) == 2


def test_cli_check_registration_fails_when_unregistered(capsys):
    assert main(["--simulate", "check-registration"]) == 1
    captured = capsys.readouterr()
    assert json.loads(captured.out)["registered"] is False
    assert "register" in captured.err


def test_json_log_records_carry_context():
    formatter = StructuredJsonFormatter()
    record = logging.LogRecord("eacc_agent.lifecycle", logging.INFO, __file__, 1, "Took job %s", (4,), None)
    record.job_id = 4
    record.phase = "taken"
    payload = json.loads(formatter.format(record))
    assert payload["message"] == "Took job 4"
    assert payload["job_id"] == 4 and payload["phase"] == "taken"
    assert "tx_hash" not in payload


def test_abbreviate_shortens_key_material():
    assert abbreviate(b"\x02" + b"\xab" * 32) == "0x02abab...ababab"
    assert abbreviate("short") == "short"


def test_cli_accepts_simulate_after_run(capsys):
    assert main(["run", "--simulate", "--once", "--seed-jobs", "0"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["discovery"] == {}
    assert payload["state"] == {"processed": [], "active": []}
