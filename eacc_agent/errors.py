"""Error taxonomy shared by the messaging subsystem and the job lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence


class AgentError(RuntimeError):
    """Base class for every error raised by the agent."""


class ConfigurationError(AgentError):
    """Raised when required settings are missing or invalid."""

    def __init__(self, message: str, *, problems: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.problems: List[str] = list(problems)


class TransportError(AgentError):
    """Raised when an RPC or HTTP call fails."""


@dataclass(frozen=True)
class GatewayAttempt:
    """Outcome of a single gateway request."""

    gateway: str
    url: str
    error: str
    status: Optional[int] = None


class AllGatewaysFailed(TransportError):
    """Raised when every gateway in the list failed to return the content."""

    def __init__(
        self,
        locator: str,
        attempts: Sequence[GatewayAttempt],
        last_error: Optional[BaseException] = None,
    ) -> None:
        detail = attempts[-1].error if attempts else "no gateways attempted"
        super().__init__(f"Failed to retrieve {locator} from all gateways: {detail}")
        self.locator = locator
        self.attempts = list(attempts)
        self.last_error = last_error


class PinningError(TransportError):
    """Raised when content could not be published to the content store."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status
        self.retryable = retryable


class AuthenticationFailure(AgentError):
    """Raised when an envelope does not authenticate: wrong key or tampered data."""


class EnvelopeFormatError(AgentError, ValueError):
    """Raised when stored bytes cannot be parsed as an envelope."""


class ContentDecodeError(AgentError, ValueError):
    """Raised when retrieved plaintext is not valid UTF-8 text."""


class MissingKeyError(AgentError):
    """Raised when a counterparty has no published verification key."""

    def __init__(self, address: str, *, job_id: Optional[int] = None) -> None:
        where = f" for job {job_id}" if job_id is not None else ""
        super().__init__(f"No published public key for {address}{where}")
        self.address = address
        self.job_id = job_id


class InvalidPublicKeyError(AgentError, ValueError):
    """Raised when published key bytes are not a valid secp256k1 point."""


class IdentityMismatchError(AgentError):
    """Raised when the published key differs from the one derived from the signer."""

    def __init__(self, address: str, published: bytes, derived: bytes) -> None:
        super().__init__(
            f"Published key for {address} (0x{published.hex()[:12]}...) does not match "
            f"the key derived from the signer (0x{derived.hex()[:12]}...)"
        )
        self.address = address
        self.published = published
        self.derived = derived


class StateConflictError(AgentError):
    """Raised when the ledger rejects an action because the job moved on."""

    def __init__(self, message: str, *, job_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class LedgerDecodeError(AgentError, ValueError):
    """Raised when a ledger record cannot be decoded into a typed job."""


__all__ = [
    "AgentError",
    "AllGatewaysFailed",
    "AuthenticationFailure",
    "ConfigurationError",
    "ContentDecodeError",
    "EnvelopeFormatError",
    "GatewayAttempt",
    "IdentityMismatchError",
    "InvalidPublicKeyError",
    "LedgerDecodeError",
    "MissingKeyError",
    "PinningError",
    "StateConflictError",
    "TransportError",
]
