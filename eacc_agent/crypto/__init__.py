"""Envelope encryption and session-key agreement."""

from __future__ import annotations

from .codec import AeadCodec, EncryptedEnvelope
from .keys import EncryptionIdentity, EthereumSigner, SessionKeyDeriver, Signer

__all__ = [
    "AeadCodec",
    "EncryptedEnvelope",
    "EncryptionIdentity",
    "EthereumSigner",
    "SessionKeyDeriver",
    "Signer",
]
