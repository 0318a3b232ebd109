"""Write path of the content-addressed store (pinning services)."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..errors import PinningError
from .address import digest_to_locator

_LOGGER = logging.getLogger(__name__)

DEFAULT_PINATA_ENDPOINT = "https://api.pinata.cloud"


class PinningService(Protocol):
    """Store bytes and return the locator they are addressable under."""

    name: str

    async def publish(self, data: bytes, metadata: Mapping[str, str]) -> str: ...


def _strip_slashes(value: str) -> str:
    return value.rstrip("/ ")


def _ensure_upload_url(endpoint: str) -> str:
    trimmed = _strip_slashes(endpoint)
    if trimmed.lower().endswith("pinning/pinfiletoipfs"):
        return trimmed
    return f"{trimmed}/pinning/pinFileToIPFS"


def _is_retryable_status(status: int) -> bool:
    return status >= 500 or status in {408, 409, 429}


@dataclass
class PinataCredentials:
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    jwt: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        if self.api_key and self.api_secret:
            return {
                "pinata_api_key": self.api_key.strip(),
                "pinata_secret_api_key": self.api_secret.strip(),
            }
        if self.jwt:
            token = self.jwt.strip()
            if not token.lower().startswith("bearer "):
                token = f"Bearer {token}"
            return {"Authorization": token}
        return {}

    @property
    def configured(self) -> bool:
        return bool(self.headers())


class PinataPinningService:
    """Upload files through the Pinata ``pinFileToIPFS`` endpoint."""

    name = "pinata"

    def __init__(
        self,
        credentials: PinataCredentials,
        *,
        endpoint: str = DEFAULT_PINATA_ENDPOINT,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        file_name: str = "data.txt",
    ) -> None:
        self._credentials = credentials
        self._url = _ensure_upload_url(endpoint)
        self._timeout = timeout
        self._transport = transport
        self._file_name = file_name

    async def publish(self, data: bytes, metadata: Mapping[str, str]) -> str:
        pin_metadata = {
            "name": metadata.get("name", "eacc-data"),
            "keyvalues": {key: str(value) for key, value in metadata.items() if key != "name"},
        }
        files = {"file": (self._file_name, bytes(data), "text/plain")}
        # The ledger stores the multihash digest, which only CIDv0 locators carry.
        form = {
            "pinataMetadata": json.dumps(pin_metadata),
            "pinataOptions": json.dumps({"cidVersion": 0}),
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._url, headers=self._credentials.headers(), files=files, data=form
                )
        except httpx.HTTPError as exc:
            raise PinningError(f"Pinata upload failed: {exc}", provider=self.name, retryable=True) from exc

        if response.status_code not in (200, 201):
            raise PinningError(
                f"Pinata responded with HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
                status=response.status_code,
                retryable=_is_retryable_status(response.status_code),
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise PinningError("Pinata returned a non-JSON response", provider=self.name) from exc
        locator = payload.get("IpfsHash") or payload.get("cid") or payload.get("hash")
        if not locator:
            raise PinningError("Missing CID in pinning response", provider=self.name)
        _LOGGER.info("Pinned %d bytes as %s (size reported %s)", len(data), locator, payload.get("PinSize"))
        return str(locator)


class FallbackPinningService:
    """Try each provider in order until one accepts the upload."""

    name = "fallback"

    def __init__(self, providers: Sequence[PinningService]) -> None:
        if not providers:
            raise ValueError("At least one pinning provider is required")
        self._providers = list(providers)

    async def publish(self, data: bytes, metadata: Mapping[str, str]) -> str:
        errors: List[PinningError] = []
        for provider in self._providers:
            try:
                return await provider.publish(data, metadata)
            except PinningError as exc:
                errors.append(exc)
                _LOGGER.warning("Pinning provider %s failed: %s", provider.name, exc)
        raise PinningError(
            "All configured pinning services failed: "
            + "; ".join(f"{err.provider}: {err}" for err in errors),
            provider="all",
        )


class InMemoryPinningService:
    """Content-addressed in-process store.

    Locators are CIDv0 encodings of the SHA-256 of the stored bytes, so the
    digest recorded on the ledger round-trips through the resolver. The store
    can also act as a gateway through :meth:`transport`.
    """

    name = "memory"

    def __init__(self) -> None:
        self._objects: Dict[str, bytes] = {}
        self._metadata: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()
        self.requests: List[str] = []

    async def publish(self, data: bytes, metadata: Mapping[str, str]) -> str:
        locator = digest_to_locator(hashlib.sha256(bytes(data)).digest())
        with self._lock:
            self._objects[locator] = bytes(data)
            self._metadata[locator] = dict(metadata)
        return locator

    def get(self, locator: str) -> Optional[bytes]:
        with self._lock:
            return self._objects.get(locator)

    def metadata(self, locator: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._metadata.get(locator, {}))

    def __contains__(self, locator: object) -> bool:
        return isinstance(locator, str) and self.get(locator) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def transport(self) -> httpx.MockTransport:
        """Serve stored objects at ``<any host>/ipfs/<locator>``."""

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(str(request.url))
            locator = request.url.path.rstrip("/").rsplit("/", 1)[-1]
            data = self.get(locator)
            if data is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, content=data)

        return httpx.MockTransport(handler)


__all__ = [
    "DEFAULT_PINATA_ENDPOINT",
    "FallbackPinningService",
    "InMemoryPinningService",
    "PinataCredentials",
    "PinataPinningService",
    "PinningService",
]
