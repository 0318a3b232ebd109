"""Repository-wide pytest configuration.

Keeps the repository root on ``sys.path`` so the package imports without an
editable install, and shields tests from the operator's environment.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_AGENT_ENV = (
    "RPC_URL",
    "PRIVATE_KEY",
    "MARKETPLACE_ADDRESS",
    "MARKETPLACE_DATA_ADDRESS",
    "CHAIN_ID",
    "RECEIPT_TIMEOUT",
    "IPFS_API_URL",
    "IPFS_API_KEY",
    "IPFS_API_SECRET",
    "PINATA_JWT",
    "IPFS_GATEWAY_URL",
    "IPFS_GATEWAYS",
    "IPFS_GATEWAY_TIMEOUT",
    "ENVELOPE_ENCODING",
    "AGENT_NAME",
    "AGENT_BIO",
    "AGENT_AVATAR",
    "ENABLED_AGENTS",
    "RELEVANT_TAGS",
    "JOB_POLL_INTERVAL",
    "ACTIVE_JOBS_POLL_INTERVAL",
    "RECENT_JOB_WINDOW",
    "LOG_LEVEL",
    "LOG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_agent_env(monkeypatch: pytest.MonkeyPatch):
    for name in _AGENT_ENV:
        monkeypatch.delenv(name, raising=False)
    yield
