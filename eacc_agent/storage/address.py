"""Conversion between 32-byte ledger digests and content locators (CIDv0)."""

from __future__ import annotations

from typing import Optional, Union

import base58

SHA2_256_CODE = 0x12
SHA2_256_LENGTH = 32
CIDV0_PREFIX = "Qm"
CIDV0_LENGTH = 46

DigestLike = Union[bytes, bytearray, str]


def is_locator(value: object) -> bool:
    """Return True for strings that already look like a CIDv0 locator."""

    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text.startswith(CIDV0_PREFIX) or len(text) != CIDV0_LENGTH:
        return False
    return locator_to_digest(text) is not None


def _digest_bytes(value: DigestLike) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = value.strip()
        if text.startswith(("0x", "0X")):
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError(f"Digest is neither a locator nor hex: {value!r}") from exc
    if len(raw) != SHA2_256_LENGTH:
        raise ValueError(f"Digest must be {SHA2_256_LENGTH} bytes, got {len(raw)}")
    return raw


def digest_to_locator(value: DigestLike) -> str:
    """Encode a digest as ``base58(0x12 0x20 || digest)``.

    Strings that are already locators are returned unchanged, so the function
    is idempotent on its own output.
    """

    if isinstance(value, str):
        text = value.strip()
        if text.startswith(("0x", "0X")):
            text = text[2:]
        if is_locator(text):
            return text
        value = text
    digest = _digest_bytes(value)
    multihash = bytes([SHA2_256_CODE, SHA2_256_LENGTH]) + digest
    return base58.b58encode(multihash).decode("ascii")


def locator_to_digest(locator: str) -> Optional[bytes]:
    """Best-effort inverse of :func:`digest_to_locator`.

    Only sha2-256 multihash locators can be inverted; anything else yields None.
    """

    try:
        raw = base58.b58decode(locator.strip())
    except ValueError:
        return None
    if len(raw) != 2 + SHA2_256_LENGTH:
        return None
    if raw[0] != SHA2_256_CODE or raw[1] != SHA2_256_LENGTH:
        return None
    return raw[2:]


def digest_hex(digest: bytes) -> str:
    return "0x" + bytes(digest).hex()


__all__ = [
    "digest_hex",
    "digest_to_locator",
    "is_locator",
    "locator_to_digest",
]
