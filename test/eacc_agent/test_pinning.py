import asyncio
import hashlib
import json

import httpx
import pytest

from eacc_agent.errors import PinningError
from eacc_agent.storage.address import locator_to_digest
from eacc_agent.storage.pinning import (
    FallbackPinningService,
    InMemoryPinningService,
    PinataCredentials,
    PinataPinningService,
)


def _capture(requests, response):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return response

    return httpx.MockTransport(handler)


def test_pinata_upload_uses_key_headers_and_metadata():
    requests = []
    transport = _capture(requests, httpx.Response(200, json={"IpfsHash": "QmPinned", "PinSize": 5}))
    service = PinataPinningService(
        PinataCredentials(api_key="key", api_secret="secret"),
        endpoint="https://pinata.test/",
        transport=transport,
    )

    locator = asyncio.run(service.publish(b"hello", {"name": "eacc-data-1", "encrypted": "true"}))

    assert locator == "QmPinned"
    request = requests[0]
    assert str(request.url) == "https://pinata.test/pinning/pinFileToIPFS"
    assert request.headers["pinata_api_key"] == "key"
    assert request.headers["pinata_secret_api_key"] == "secret"
    body = request.read()
    assert b"hello" in body
    assert b"pinataMetadata" in body
    assert json.dumps({"name": "eacc-data-1", "keyvalues": {"encrypted": "true"}}).encode() in body


def test_pinata_upload_requests_cidv0_locators():
    requests = []
    transport = _capture(requests, httpx.Response(200, json={"IpfsHash": "QmPinned"}))
    service = PinataPinningService(PinataCredentials(jwt="t"), transport=transport)

    asyncio.run(service.publish(b"payload", {"name": "eacc-data-2"}))

    body = requests[0].read()
    assert b'name="pinataOptions"' in body
    assert json.dumps({"cidVersion": 0}).encode() in body


def test_jwt_credentials_become_bearer_token():
    assert PinataCredentials(jwt="abc").headers() == {"Authorization": "Bearer abc"}
    assert PinataCredentials(jwt="Bearer abc").headers() == {"Authorization": "Bearer abc"}
    assert not PinataCredentials().configured


@pytest.mark.parametrize("status,retryable", [(429, True), (503, True), (401, False)])
def test_http_errors_are_classified(status, retryable):
    service = PinataPinningService(
        PinataCredentials(jwt="t"), transport=_capture([], httpx.Response(status, text="nope"))
    )
    with pytest.raises(PinningError) as excinfo:
        asyncio.run(service.publish(b"x", {}))
    assert excinfo.value.status == status
    assert excinfo.value.retryable is retryable
    assert excinfo.value.provider == "pinata"


def test_response_without_cid_is_rejected():
    service = PinataPinningService(PinataCredentials(jwt="t"), transport=_capture([], httpx.Response(200, json={})))
    with pytest.raises(PinningError):
        asyncio.run(service.publish(b"x", {}))


class _Failing:
    name = "broken"

    async def publish(self, data, metadata):
        raise PinningError("boom", provider=self.name, retryable=True)


def test_fallback_uses_next_provider():
    memory = InMemoryPinningService()
    service = FallbackPinningService([_Failing(), memory])
    locator = asyncio.run(service.publish(b"data", {"name": "n"}))
    assert memory.get(locator) == b"data"


def test_fallback_reports_all_failures():
    service = FallbackPinningService([_Failing(), _Failing()])
    with pytest.raises(PinningError) as excinfo:
        asyncio.run(service.publish(b"data", {}))
    assert excinfo.value.provider == "all"
    with pytest.raises(ValueError):
        FallbackPinningService([])


def test_in_memory_store_is_content_addressed_and_serves_gateway_requests():
    memory = InMemoryPinningService()
    locator = asyncio.run(memory.publish(b"abc", {"encrypted": "false"}))

    assert locator_to_digest(locator) == hashlib.sha256(b"abc").digest()
    assert locator in memory and len(memory) == 1
    assert memory.metadata(locator) == {"encrypted": "false"}

    async def runner():
        async with httpx.AsyncClient(transport=memory.transport()) as client:
            found = await client.get(f"https://gw.test/ipfs/{locator}")
            missing = await client.get("https://gw.test/ipfs/QmMissing")
        return found, missing

    found, missing = asyncio.run(runner())
    assert found.status_code == 200 and found.content == b"abc"
    assert missing.status_code == 404
    assert len(memory.requests) == 2
