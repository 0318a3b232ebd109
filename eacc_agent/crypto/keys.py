"""Signing identities and session-key agreement between two marketplace parties.

Both parties of a conversation must end up with the same 32-byte key without
having exchanged a secret beforehand. The convention used here is the only one
the agent speaks:

1. Each party signs :data:`ENCRYPTION_KEY_MESSAGE` with its wallet. Signing is
   deterministic (RFC 6979), so the first 64 bytes of the signature (``r||s``)
   hashed with SHA-256 always give the same secp256k1 scalar. That scalar is the
   party's encryption key and its compressed public point is what the party
   publishes in the job directory.
2. The shared secret is ECDH between one's own encryption scalar and the
   counterparty's published point, which is symmetric by construction.
3. The session key is HKDF-SHA256 over the shared secret, bound to the
   conversation id and to both public keys in byte order (never role order).
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, Protocol, Union, runtime_checkable

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from eth_account import Account
from eth_account.messages import encode_defunct

from ..errors import IdentityMismatchError, InvalidPublicKeyError, MissingKeyError
from .codec import KEY_SIZE

ENCRYPTION_KEY_MESSAGE = "Sign this message to derive your EACC encryption key. This does not cost any gas."
SESSION_INFO_PREFIX = b"eacc-session-v1|"

_SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

KeyLike = Union[bytes, bytearray, str]


@runtime_checkable
class Signer(Protocol):
    """Anything able to produce EIP-191 personal-message signatures."""

    @property
    def address(self) -> str: ...

    def sign_message(self, message: bytes) -> bytes: ...


class EthereumSigner:
    """Signer backed by a local ``eth_account`` private key."""

    def __init__(self, private_key: Union[str, bytes]) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def account(self):
        return self._account

    def sign_message(self, message: bytes) -> bytes:
        signed = self._account.sign_message(encode_defunct(primitive=bytes(message)))
        return bytes(signed.signature)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"EthereumSigner({self.address})"


@dataclass(frozen=True)
class EncryptionIdentity:
    """Encryption key pair derived from a signer."""

    address: str
    private_key: ec.EllipticCurvePrivateKey
    public_key: bytes

    @property
    def public_key_hex(self) -> str:
        return "0x" + self.public_key.hex()


def coerce_key_bytes(value: KeyLike | None) -> bytes:
    """Accept raw bytes or ``0x``-prefixed hex as returned by the ledger."""

    if value is None:
        return b""
    if isinstance(value, str):
        text = value.strip()
        if text.startswith(("0x", "0X")):
            text = text[2:]
        try:
            return bytes.fromhex(text)
        except ValueError as exc:
            raise InvalidPublicKeyError(f"Public key is not valid hex: {value!r}") from exc
    return bytes(value)


def load_public_key(value: KeyLike) -> ec.EllipticCurvePublicKey:
    raw = coerce_key_bytes(value)
    if not raw:
        raise InvalidPublicKeyError("Public key is empty")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
    except ValueError as exc:
        raise InvalidPublicKeyError(f"Not a secp256k1 point ({len(raw)} bytes)") from exc


def compress_public_key(value: KeyLike) -> bytes:
    """Normalise a compressed or uncompressed point to its 33-byte form."""

    return load_public_key(value).public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    )


def derive_identity(signer: Signer) -> EncryptionIdentity:
    signature = signer.sign_message(ENCRYPTION_KEY_MESSAGE.encode("utf-8"))
    if len(signature) < 64:
        raise ValueError("Signer returned a truncated signature")
    scalar = int.from_bytes(hashlib.sha256(signature[:64]).digest(), "big") % _SECP256K1_ORDER
    if scalar == 0:  # pragma: no cover - probability 2**-256
        raise ValueError("Derived encryption scalar is zero")
    private_key = ec.derive_private_key(scalar, ec.SECP256K1())
    public_key = private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    )
    return EncryptionIdentity(address=signer.address, private_key=private_key, public_key=public_key)


def session_info(conversation_id: int | str, key_a: bytes, key_b: bytes) -> bytes:
    """Canonical HKDF info string; identical for both parties."""

    low, high = sorted((key_a, key_b))
    return SESSION_INFO_PREFIX + str(conversation_id).encode("utf-8") + b"|" + low + high


class SessionKeyDeriver:
    """Derive per-conversation session keys from a signer and a counterparty key."""

    def __init__(self) -> None:
        self._identities: Dict[str, EncryptionIdentity] = {}

    def identity(self, signer: Signer) -> EncryptionIdentity:
        cached = self._identities.get(signer.address)
        if cached is None:
            cached = derive_identity(signer)
            self._identities[signer.address] = cached
        return cached

    def public_key(self, signer: Signer) -> bytes:
        return self.identity(signer).public_key

    def derive(
        self,
        signer: Signer,
        counterparty_key: KeyLike | None,
        conversation_id: int | str,
    ) -> bytes:
        raw = coerce_key_bytes(counterparty_key)
        if not raw:
            raise MissingKeyError("counterparty")
        peer = load_public_key(raw)
        peer_compressed = peer.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        )
        own = self.identity(signer)
        shared = own.private_key.exchange(ec.ECDH(), peer)
        return HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=session_info(conversation_id, own.public_key, peer_compressed),
        ).derive(shared)

    def verify_identity(self, signer: Signer, published_key: KeyLike | None) -> EncryptionIdentity:
        """Check that the published key is the one this signer derives."""

        own = self.identity(signer)
        raw = coerce_key_bytes(published_key)
        if not raw:
            raise MissingKeyError(signer.address)
        try:
            published = compress_public_key(raw)
        except InvalidPublicKeyError:
            raise IdentityMismatchError(signer.address, raw, own.public_key) from None
        if published != own.public_key:
            raise IdentityMismatchError(signer.address, raw, own.public_key)
        return own


__all__ = [
    "ENCRYPTION_KEY_MESSAGE",
    "EncryptionIdentity",
    "EthereumSigner",
    "SessionKeyDeriver",
    "Signer",
    "coerce_key_bytes",
    "compress_public_key",
    "derive_identity",
    "load_public_key",
    "session_info",
]
