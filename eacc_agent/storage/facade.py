"""Publish and retrieve (optionally encrypted) content by ledger digest."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Union

from ..crypto.codec import AeadCodec, EncryptedEnvelope
from ..crypto.keys import EncryptionIdentity, KeyLike, SessionKeyDeriver, Signer
from ..errors import ContentDecodeError, EnvelopeFormatError, PinningError
from .address import digest_hex, digest_to_locator, is_locator, locator_to_digest
from .gateways import GatewayFetcher
from .pinning import PinningService

_LOGGER = logging.getLogger(__name__)

EnvelopeEncoding = Literal["base64", "raw"]

_HEX_DIGEST = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class PublishedContent:
    digest: bytes
    locator: str
    encrypted: bool
    size: int

    @property
    def digest_hex(self) -> str:
        return digest_hex(self.digest)


class ContentStore:
    """Compose key agreement, envelopes, addressing and gateway retrieval.

    The digest returned by :meth:`publish` is the one carried by the locator the
    backend reports, so a reader resolving it later fetches exactly the stored
    bytes. Backends whose locators do not carry such a digest are rejected.
    """

    def __init__(
        self,
        pinning: PinningService,
        fetcher: GatewayFetcher,
        *,
        codec: Optional[AeadCodec] = None,
        deriver: Optional[SessionKeyDeriver] = None,
        encoding: EnvelopeEncoding = "base64",
        name_prefix: str = "eacc-data",
    ) -> None:
        if encoding not in ("base64", "raw"):
            raise ValueError(f"Unknown envelope encoding {encoding!r}")
        self._pinning = pinning
        self._fetcher = fetcher
        self._codec = codec or AeadCodec()
        self._deriver = deriver or SessionKeyDeriver()
        self._encoding = encoding
        self._name_prefix = name_prefix

    # Keys ------------------------------------------------------------------
    def identity(self, signer: Signer) -> EncryptionIdentity:
        return self._deriver.identity(signer)

    def verify_identity(self, signer: Signer, published_key: KeyLike | None) -> EncryptionIdentity:
        return self._deriver.verify_identity(signer, published_key)

    def session_key(self, signer: Signer, counterparty_key: KeyLike | None, conversation_id: int | str) -> bytes:
        return self._deriver.derive(signer, counterparty_key, conversation_id)

    # Write path --------------------------------------------------------------
    def _encode(self, envelope: EncryptedEnvelope) -> bytes:
        if self._encoding == "base64":
            return envelope.to_base64().encode("ascii")
        return envelope.to_bytes()

    async def publish(
        self,
        plaintext: Union[str, bytes],
        session_key: Optional[bytes] = None,
    ) -> PublishedContent:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        encrypted = session_key is not None
        stored = self._encode(self._codec.seal(data, session_key)) if encrypted else data

        now_ms = int(time.time() * 1000)
        metadata: Dict[str, str] = {
            "name": f"{self._name_prefix}-{now_ms}",
            "encrypted": "true" if encrypted else "false",
            "timestamp": str(now_ms),
        }
        locator = await self._pinning.publish(stored, metadata)
        digest = locator_to_digest(locator)
        if digest is None:
            raise PinningError(
                f"Pinned content as {locator}, which carries no SHA-256 digest the ledger can "
                "record; configure the pinning service to return CIDv0 locators",
                provider=getattr(self._pinning, "name", "unknown"),
            )
        _LOGGER.info(
            "Published %d bytes (%s) as %s",
            len(stored),
            "encrypted" if encrypted else "plaintext",
            locator,
        )
        return PublishedContent(digest=digest, locator=locator, encrypted=encrypted, size=len(stored))

    # Read path ---------------------------------------------------------------
    @staticmethod
    def resolve(locator_or_digest: Union[str, bytes]) -> str:
        if isinstance(locator_or_digest, str):
            text = locator_or_digest.strip()
            if is_locator(text):
                return text
            if not _HEX_DIGEST.match(text):
                # CIDv1 and other identifiers are passed through untouched.
                return text
        return digest_to_locator(locator_or_digest)

    def _decode(self, blob: bytes) -> EncryptedEnvelope:
        if self._encoding == "base64":
            try:
                return EncryptedEnvelope.from_base64(blob.strip(), iv_size=self._codec.iv_size)
            except EnvelopeFormatError:
                _LOGGER.debug("Stored envelope is not base64, parsing as raw bytes")
        return self._codec.parse(blob)

    async def fetch_raw(self, locator_or_digest: Union[str, bytes]) -> bytes:
        return await self._fetcher.fetch(self.resolve(locator_or_digest))

    async def retrieve(
        self,
        locator_or_digest: Union[str, bytes],
        session_key: Optional[bytes] = None,
    ) -> bytes:
        blob = await self.fetch_raw(locator_or_digest)
        if session_key is None:
            return blob
        return self._codec.open(self._decode(blob), session_key)

    async def retrieve_text(
        self,
        locator_or_digest: Union[str, bytes],
        session_key: Optional[bytes] = None,
    ) -> str:
        data = await self.retrieve(locator_or_digest, session_key)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ContentDecodeError(
                f"Content at {self.resolve(locator_or_digest)} is not UTF-8 text ({exc.reason} at byte "
                f"{exc.start}); retrieve it as bytes instead"
            ) from exc


__all__ = ["ContentStore", "PublishedContent"]
