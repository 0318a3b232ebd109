import pytest

from eacc_agent.config import AgentSettings, load_settings
from eacc_agent.errors import ConfigurationError

LIVE_ENV = {
    "RPC_URL": "https://rpc.test",
    "PRIVATE_KEY": "0x" + "11" * 32,
    "MARKETPLACE_ADDRESS": "0x" + "01" * 20,
    "MARKETPLACE_DATA_ADDRESS": "0x" + "02" * 20,
    "PINATA_JWT": "token",
}


def test_defaults_are_usable_for_simulation():
    settings = load_settings(env={})
    assert settings.agent.enabled_agents == ["discord-bot"]
    assert settings.agent.relevant_tags == ["bot", "automation"]
    assert settings.polling.job_poll_interval == 60.0
    assert settings.polling.active_jobs_poll_interval == 120.0
    assert settings.ipfs.envelope_encoding == "base64"
    settings.require_runnable(simulate=True)


def test_yaml_file_is_overridden_by_environment(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text(
        "ledger:\n"
        "  rpc_url: https://from-file.test\n"
        "  chain_id: 8453\n"
        "polling:\n"
        "  job_poll_interval_ms: 5000\n"
        "agent:\n"
        "  relevant_tags: [discord]\n"
        "  options:\n"
        "    discord-bot:\n"
        "      keywords: [discord bot]\n",
        encoding="utf-8",
    )

    settings = load_settings(path, env={"RPC_URL": "https://from-env.test", "RELEVANT_TAGS": "bot, scraper ,"})

    assert settings.ledger.rpc_url == "https://from-env.test"
    assert settings.ledger.chain_id == 8453
    assert settings.polling.job_poll_interval == 5.0
    assert settings.agent.relevant_tags == ["bot", "scraper"]
    assert settings.agent.options == {"discord-bot": {"keywords": ["discord bot"]}}


def test_environment_values_are_coerced(monkeypatch):
    monkeypatch.setenv("CHAIN_ID", "84532")
    monkeypatch.setenv("ACTIVE_JOBS_POLL_INTERVAL", "30000")
    monkeypatch.setenv("ENVELOPE_ENCODING", " RAW ")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("IPFS_GATEWAYS", "https://a.test/ipfs/,https://b.test/ipfs/")
    monkeypatch.setenv("IPFS_GATEWAY_URL", "https://b.test/ipfs/")

    settings = load_settings()

    assert settings.ledger.chain_id == 84532
    assert settings.polling.active_jobs_poll_interval == 30.0
    assert settings.ipfs.envelope_encoding == "raw"
    assert settings.logging.level == "DEBUG"
    assert settings.ipfs.ordered_gateways() == ["https://b.test/ipfs/", "https://a.test/ipfs/"]


def test_blank_environment_values_are_ignored():
    settings = load_settings(env={"RPC_URL": "   ", "ENABLED_AGENTS": ""})
    assert settings.ledger.rpc_url == ""
    assert settings.agent.enabled_agents == ["discord-bot"]


@pytest.mark.parametrize(
    "env,field",
    [
        ({"JOB_POLL_INTERVAL": "10"}, "polling.job_poll_interval_ms"),
        ({"CHAIN_ID": "mainnet"}, "ledger.chain_id"),
        ({"LOG_LEVEL": "chatty"}, "logging.level"),
        ({"ENVELOPE_ENCODING": "hex"}, "ipfs.envelope_encoding"),
    ],
)
def test_invalid_values_are_reported_per_field(env, field):
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(env=env)
    assert any(problem.startswith(field) for problem in excinfo.value.problems)


def test_unknown_yaml_keys_are_rejected(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text("ledger:\n  rpc: https://typo.test\n", encoding="utf-8")
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(path, env={})
    assert len(excinfo.value.problems) == 1
    assert excinfo.value.problems[0].startswith("ledger.rpc")


def test_unreadable_or_malformed_files(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.yaml", env={})
    broken = tmp_path / "broken.yaml"
    broken.write_text("ledger: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_settings(broken, env={})
    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_settings(scalar, env={})
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert isinstance(load_settings(empty, env={}), AgentSettings)


def test_live_mode_requires_ledger_and_pinning_settings():
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(env={}).require_runnable()
    names = {problem.split(":", 1)[0] for problem in excinfo.value.problems}
    assert {"RPC_URL", "PRIVATE_KEY", "MARKETPLACE_ADDRESS", "MARKETPLACE_DATA_ADDRESS"} <= names
    assert "IPFS_API_KEY/IPFS_API_SECRET or PINATA_JWT" in names

    settings = load_settings(env=LIVE_ENV)
    assert settings.require_runnable() is settings
    assert settings.ipfs.has_credentials


def test_secrets_are_hidden_from_repr():
    settings = load_settings(env=LIVE_ENV)
    assert LIVE_ENV["PRIVATE_KEY"] not in repr(settings)
    assert "token" not in repr(settings.ipfs)
