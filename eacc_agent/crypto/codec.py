"""AES-256-GCM envelopes framed as ``iv || auth_tag || ciphertext``."""

from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import AuthenticationFailure, EnvelopeFormatError

KEY_SIZE = 32
TAG_SIZE = 16
DEFAULT_IV_SIZE = 16
SUPPORTED_IV_SIZES = (12, 16)


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Authenticated ciphertext together with its nonce and tag."""

    iv: bytes
    auth_tag: bytes
    ciphertext: bytes

    def __post_init__(self) -> None:
        if len(self.iv) not in SUPPORTED_IV_SIZES:
            raise EnvelopeFormatError(f"Unsupported IV length {len(self.iv)}")
        if len(self.auth_tag) != TAG_SIZE:
            raise EnvelopeFormatError(f"Auth tag must be {TAG_SIZE} bytes")

    def to_bytes(self) -> bytes:
        return self.iv + self.auth_tag + self.ciphertext

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, blob: bytes, *, iv_size: int = DEFAULT_IV_SIZE) -> "EncryptedEnvelope":
        if iv_size not in SUPPORTED_IV_SIZES:
            raise EnvelopeFormatError(f"Unsupported IV length {iv_size}")
        if len(blob) < iv_size + TAG_SIZE:
            raise EnvelopeFormatError(
                f"Envelope too short: {len(blob)} bytes, need at least {iv_size + TAG_SIZE}"
            )
        return cls(
            iv=bytes(blob[:iv_size]),
            auth_tag=bytes(blob[iv_size : iv_size + TAG_SIZE]),
            ciphertext=bytes(blob[iv_size + TAG_SIZE :]),
        )

    @classmethod
    def from_base64(cls, text: str | bytes, *, iv_size: int = DEFAULT_IV_SIZE) -> "EncryptedEnvelope":
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EnvelopeFormatError(f"Envelope is not valid base64: {exc}") from exc
        return cls.from_bytes(raw, iv_size=iv_size)


def _check_key(key: bytes) -> AESGCM:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise ValueError(f"Session key must be exactly {KEY_SIZE} bytes")
    return AESGCM(bytes(key))


class AeadCodec:
    """Seal and open envelopes with a fresh random nonce per call."""

    def __init__(self, iv_size: int = DEFAULT_IV_SIZE) -> None:
        if iv_size not in SUPPORTED_IV_SIZES:
            raise ValueError(f"IV size must be one of {SUPPORTED_IV_SIZES}")
        self.iv_size = iv_size

    def seal(self, plaintext: bytes, key: bytes) -> EncryptedEnvelope:
        cipher = _check_key(key)
        iv = secrets.token_bytes(self.iv_size)
        sealed = cipher.encrypt(iv, bytes(plaintext), None)
        # AESGCM appends the tag; the wire format puts it in front of the ciphertext.
        return EncryptedEnvelope(iv=iv, auth_tag=sealed[-TAG_SIZE:], ciphertext=sealed[:-TAG_SIZE])

    def open(self, envelope: EncryptedEnvelope, key: bytes) -> bytes:
        cipher = _check_key(key)
        try:
            return cipher.decrypt(envelope.iv, envelope.ciphertext + envelope.auth_tag, None)
        except InvalidTag as exc:
            raise AuthenticationFailure("Envelope failed authentication: wrong key or tampered data") from exc

    def seal_text(self, text: str, key: bytes) -> EncryptedEnvelope:
        return self.seal(text.encode("utf-8"), key)

    def open_text(self, envelope: EncryptedEnvelope, key: bytes) -> str:
        return self.open(envelope, key).decode("utf-8")

    def parse(self, blob: bytes) -> EncryptedEnvelope:
        return EncryptedEnvelope.from_bytes(blob, iv_size=self.iv_size)


__all__ = ["AeadCodec", "EncryptedEnvelope", "KEY_SIZE", "TAG_SIZE", "DEFAULT_IV_SIZE"]
