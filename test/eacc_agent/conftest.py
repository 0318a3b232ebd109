from __future__ import annotations

from typing import Any, List

import pytest

from eacc_agent.crypto.keys import EthereumSigner
from eacc_agent.ledger.memory import InMemoryJobDirectory
from eacc_agent.storage.facade import ContentStore
from eacc_agent.storage.gateways import GatewayFetcher
from eacc_agent.storage.pinning import InMemoryPinningService

AGENT_KEY = "0x" + "11" * 32
CLIENT_KEY = "0x" + "22" * 32
OTHER_KEY = "0x" + "33" * 32


class EchoCapability:
    """Minimal worker used to observe how often execution happens."""

    name = "echo"

    def __init__(self, keyword: str = "bot") -> None:
        self.keyword = keyword
        self.executions: List[int] = []

    def matches(self, job, content: str) -> bool:
        return self.keyword in job.title.lower() or self.keyword in content.lower()

    def build_application_message(self, job, content: str) -> str:
        return f"I can do job {job.id}"

    async def execute(self, job, content: str) -> Any:
        self.executions.append(job.id)
        return {"echo": content}

    def package_result(self, job, content: str, result: Any) -> str:
        return f"result for {job.id}: {result['echo']}"


@pytest.fixture
def capability() -> EchoCapability:
    return EchoCapability()


@pytest.fixture
def agent_signer() -> EthereumSigner:
    return EthereumSigner(AGENT_KEY)


@pytest.fixture
def client_signer() -> EthereumSigner:
    return EthereumSigner(CLIENT_KEY)


@pytest.fixture
def other_signer() -> EthereumSigner:
    return EthereumSigner(OTHER_KEY)


@pytest.fixture
def pinning() -> InMemoryPinningService:
    return InMemoryPinningService()


@pytest.fixture
def store(pinning: InMemoryPinningService) -> ContentStore:
    fetcher = GatewayFetcher(["https://gateway.test/ipfs/"], transport=pinning.transport())
    return ContentStore(pinning, fetcher)


@pytest.fixture
def directory(agent_signer, client_signer, store) -> InMemoryJobDirectory:
    ledger = InMemoryJobDirectory(agent_signer.address)
    ledger.set_public_key(client_signer.address, store.identity(client_signer).public_key)
    ledger.set_public_key(agent_signer.address, store.identity(agent_signer).public_key)
    return ledger


@pytest.fixture
def post_job(directory: InMemoryJobDirectory, store: ContentStore, client_signer):
    """Publish plaintext job content and record a job pointing at it."""

    async def _post(title: str, content: str = "", **fields):
        digest = bytes(32)
        if content:
            digest = (await store.publish(content)).digest
        return directory.post_job(client_signer.address, title, content_digest=digest, **fields)

    return _post
