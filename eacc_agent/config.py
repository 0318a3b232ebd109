"""Settings for the agent, loaded from an optional YAML file and the environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .storage.gateways import DEFAULT_GATEWAY_TIMEOUT, PUBLIC_GATEWAYS, merge_gateways
from .storage.pinning import DEFAULT_PINATA_ENDPOINT


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class LedgerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rpc_url: str = ""
    private_key: str = Field("", repr=False)
    marketplace_address: str = ""
    marketplace_data_address: str = ""
    chain_id: Optional[int] = None
    receipt_timeout: float = Field(180.0, gt=0)


class IpfsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_url: str = DEFAULT_PINATA_ENDPOINT
    api_key: Optional[str] = Field(None, repr=False)
    api_secret: Optional[str] = Field(None, repr=False)
    jwt: Optional[str] = Field(None, repr=False)
    gateway_url: Optional[str] = "https://gateway.pinata.cloud/ipfs/"
    gateways: List[str] = Field(default_factory=lambda: list(PUBLIC_GATEWAYS))
    gateway_timeout: float = Field(DEFAULT_GATEWAY_TIMEOUT, gt=0)
    envelope_encoding: Literal["base64", "raw"] = "base64"

    @field_validator("gateways", mode="before")
    @classmethod
    def split_gateways(cls, value: Any) -> Any:
        return _split_csv(value)

    def ordered_gateways(self) -> List[str]:
        return merge_gateways(self.gateway_url, self.gateways)

    @property
    def has_credentials(self) -> bool:
        return bool((self.api_key and self.api_secret) or self.jwt)


class AgentProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "EACC Agent"
    bio: str = "AI agent for the EACC marketplace"
    avatar: str = ""
    enabled_agents: List[str] = Field(default_factory=lambda: ["discord-bot"])
    relevant_tags: List[str] = Field(default_factory=lambda: ["bot", "automation"])
    options: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @field_validator("enabled_agents", "relevant_tags", mode="before")
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return _split_csv(value)


class PollingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_poll_interval_ms: int = Field(60_000, ge=1_000)
    active_jobs_poll_interval_ms: int = Field(120_000, ge=1_000)
    recent_job_window: int = Field(10, ge=1)
    shutdown_grace_seconds: float = Field(10.0, ge=0)

    @property
    def job_poll_interval(self) -> float:
        return self.job_poll_interval_ms / 1000.0

    @property
    def active_jobs_poll_interval(self) -> float:
        return self.active_jobs_poll_interval_ms / 1000.0


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    file: Optional[str] = None

    @field_validator("level")
    @classmethod
    def normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level


class AgentSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    ipfs: IpfsSettings = Field(default_factory=IpfsSettings)
    agent: AgentProfile = Field(default_factory=AgentProfile)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def missing_for_run(self, *, simulate: bool = False) -> List[str]:
        problems: List[str] = []
        if not self.agent.enabled_agents:
            problems.append("ENABLED_AGENTS: at least one worker capability must be enabled")
        if simulate:
            return problems
        required = {
            "RPC_URL": self.ledger.rpc_url,
            "PRIVATE_KEY": self.ledger.private_key,
            "MARKETPLACE_ADDRESS": self.ledger.marketplace_address,
            "MARKETPLACE_DATA_ADDRESS": self.ledger.marketplace_data_address,
        }
        problems.extend(f"{name}: required" for name, value in required.items() if not value)
        if not self.ipfs.has_credentials:
            problems.append("IPFS_API_KEY/IPFS_API_SECRET or PINATA_JWT: pinning credentials required")
        if not self.ipfs.ordered_gateways():
            problems.append("IPFS_GATEWAYS: at least one gateway is required")
        return problems

    def require_runnable(self, *, simulate: bool = False) -> "AgentSettings":
        problems = self.missing_for_run(simulate=simulate)
        if problems:
            raise ConfigurationError(
                "Missing required configuration: " + ", ".join(p.split(":", 1)[0] for p in problems),
                problems=problems,
            )
        return self


_ENV_FIELDS: Dict[str, Tuple[str, str]] = {
    "RPC_URL": ("ledger", "rpc_url"),
    "PRIVATE_KEY": ("ledger", "private_key"),
    "MARKETPLACE_ADDRESS": ("ledger", "marketplace_address"),
    "MARKETPLACE_DATA_ADDRESS": ("ledger", "marketplace_data_address"),
    "CHAIN_ID": ("ledger", "chain_id"),
    "RECEIPT_TIMEOUT": ("ledger", "receipt_timeout"),
    "IPFS_API_URL": ("ipfs", "api_url"),
    "IPFS_API_KEY": ("ipfs", "api_key"),
    "IPFS_API_SECRET": ("ipfs", "api_secret"),
    "PINATA_JWT": ("ipfs", "jwt"),
    "IPFS_GATEWAY_URL": ("ipfs", "gateway_url"),
    "IPFS_GATEWAYS": ("ipfs", "gateways"),
    "IPFS_GATEWAY_TIMEOUT": ("ipfs", "gateway_timeout"),
    "ENVELOPE_ENCODING": ("ipfs", "envelope_encoding"),
    "AGENT_NAME": ("agent", "name"),
    "AGENT_BIO": ("agent", "bio"),
    "AGENT_AVATAR": ("agent", "avatar"),
    "ENABLED_AGENTS": ("agent", "enabled_agents"),
    "RELEVANT_TAGS": ("agent", "relevant_tags"),
    "JOB_POLL_INTERVAL": ("polling", "job_poll_interval_ms"),
    "ACTIVE_JOBS_POLL_INTERVAL": ("polling", "active_jobs_poll_interval_ms"),
    "RECENT_JOB_WINDOW": ("polling", "recent_job_window"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
}

_ENV_TRANSFORMS: Dict[str, Callable[[str], Any]] = {
    "ENVELOPE_ENCODING": lambda value: value.strip().lower(),
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read settings file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Settings file {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")
    return data


def load_settings(
    path: Optional[Path | str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AgentSettings:
    """Merge the YAML file (if any) with environment variables; the environment wins."""

    data: Dict[str, Any] = _read_yaml(Path(path)) if path else {}
    environ = os.environ if env is None else env
    for name, (section, key) in _ENV_FIELDS.items():
        raw = environ.get(name)
        if raw is None or raw.strip() == "":
            continue
        transform = _ENV_TRANSFORMS.get(name)
        section_data = data.setdefault(section, {})
        if not isinstance(section_data, dict):
            raise ConfigurationError(f"Settings section {section!r} must be a mapping")
        section_data[key] = transform(raw) if transform else raw.strip()
    try:
        return AgentSettings.model_validate(data)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        ]
        raise ConfigurationError("Invalid configuration", problems=problems) from exc


__all__ = [
    "AgentProfile",
    "AgentSettings",
    "IpfsSettings",
    "LedgerSettings",
    "LoggingSettings",
    "PollingSettings",
    "load_settings",
]
