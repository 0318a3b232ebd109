"""Job Directory collaborator backed by the marketplace contracts."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Protocol, Union

from eth_abi import encode as abi_encode
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..crypto.keys import EthereumSigner
from ..errors import StateConflictError, TransportError
from .models import Job, decode_job

try:
    from web3.middleware import ExtraDataToPOAMiddleware as _poa_middleware
except ImportError:  # web3 < 7
    from web3.middleware import geth_poa_middleware as _poa_middleware

_LOGGER = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT = 180.0


class JobDirectory(Protocol):
    """Read/write contract of the ledger as seen by the lifecycle manager."""

    @property
    def local_address(self) -> str: ...

    async def job_count(self) -> int: ...

    async def get_job(self, job_id: int) -> Job: ...

    async def event_count(self, job_id: int) -> int: ...

    async def apply_to_job(self, job_id: int, recipient: str, content_digest: bytes) -> None: ...

    async def assign_job(self, job_id: int, signature: bytes) -> None: ...

    async def deliver_result(self, job_id: int, result_digest: bytes) -> None: ...

    async def is_registered(self, address: str) -> bool: ...

    async def public_key_of(self, address: str) -> bytes: ...

    async def register_identity(self, public_key: bytes, name: str, bio: str, avatar: str) -> None: ...


def take_job_digest(revision: int, job_id: int) -> bytes:
    """Message signed by a worker taking a job, bound to the event-log length."""

    return bytes(Web3.keccak(abi_encode(["uint256", "uint256"], [int(revision), int(job_id)])))


_JOB_ROLES_COMPONENTS = [
    {"internalType": "address", "name": "creator", "type": "address"},
    {"internalType": "address", "name": "arbitrator", "type": "address"},
    {"internalType": "address", "name": "worker", "type": "address"},
]

_JOB_COMPONENTS = [
    {"internalType": "uint8", "name": "state", "type": "uint8"},
    {"internalType": "bool", "name": "whitelistWorkers", "type": "bool"},
    {
        "components": _JOB_ROLES_COMPONENTS,
        "internalType": "struct JobRoles",
        "name": "roles",
        "type": "tuple",
    },
    {"internalType": "string", "name": "title", "type": "string"},
    {"internalType": "string[]", "name": "tags", "type": "string[]"},
    {"internalType": "bytes32", "name": "contentHash", "type": "bytes32"},
    {"internalType": "bool", "name": "multipleApplicants", "type": "bool"},
    {"internalType": "uint256", "name": "amount", "type": "uint256"},
    {"internalType": "address", "name": "token", "type": "address"},
    {"internalType": "uint32", "name": "timestamp", "type": "uint32"},
    {"internalType": "uint32", "name": "maxTime", "type": "uint32"},
    {"internalType": "string", "name": "deliveryMethod", "type": "string"},
    {"internalType": "uint256", "name": "collateralOwed", "type": "uint256"},
    {"internalType": "uint256", "name": "escrowId", "type": "uint256"},
    {"internalType": "bytes32", "name": "resultHash", "type": "bytes32"},
    {"internalType": "uint8", "name": "rating", "type": "uint8"},
    {"internalType": "bool", "name": "disputed", "type": "bool"},
]

MARKETPLACE_ABI = [
    {
        "inputs": [],
        "name": "jobsLength",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "jobId_", "type": "uint256"}],
        "name": "getJob",
        "outputs": [
            {
                "components": _JOB_COMPONENTS,
                "internalType": "struct JobPost",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "jobId_", "type": "uint256"},
            {"internalType": "bytes32", "name": "contentHash_", "type": "bytes32"},
            {"internalType": "address", "name": "recipient", "type": "address"},
        ],
        "name": "postThreadMessage",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "jobId_", "type": "uint256"},
            {"internalType": "bytes", "name": "signature_", "type": "bytes"},
        ],
        "name": "takeJob",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "jobId_", "type": "uint256"},
            {"internalType": "bytes32", "name": "resultHash_", "type": "bytes32"},
        ],
        "name": "deliverResult",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

MARKETPLACE_DATA_ABI = [
    {
        "inputs": [
            {"internalType": "bytes", "name": "pubkey_", "type": "bytes"},
            {"internalType": "string", "name": "name_", "type": "string"},
            {"internalType": "string", "name": "bio_", "type": "string"},
            {"internalType": "string", "name": "avatar_", "type": "string"},
        ],
        "name": "registerUser",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "userAddress_", "type": "address"}],
        "name": "userRegistered",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "publicKeys",
        "outputs": [{"internalType": "bytes", "name": "", "type": "bytes"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "jobId_", "type": "uint256"}],
        "name": "eventsLength",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def connect(rpc_url: str, *, timeout: float = 30.0) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    try:
        w3.middleware_onion.inject(_poa_middleware, layer=0)
    except ValueError:
        pass
    return w3


def _raw_transaction(signed: Any) -> bytes:
    raw = getattr(signed, "raw_transaction", None)
    if raw is None:
        raw = signed.rawTransaction
    return raw


class Web3JobDirectory:
    """Marketplace contracts accessed through web3.py.

    Reads run in a worker thread; writes are signed locally with the agent's
    key, broadcast, and awaited until the receipt is available. Writes are
    serialised so nonces never race between the two polling timers.
    """

    def __init__(
        self,
        w3: Web3,
        signer: EthereumSigner,
        marketplace_address: str,
        marketplace_data_address: str,
        *,
        chain_id: Optional[int] = None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
    ) -> None:
        self._w3 = w3
        self._signer = signer
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout
        self._marketplace = w3.eth.contract(
            address=Web3.to_checksum_address(marketplace_address), abi=MARKETPLACE_ABI
        )
        self._data = w3.eth.contract(
            address=Web3.to_checksum_address(marketplace_data_address), abi=MARKETPLACE_DATA_ABI
        )
        self._send_lock = threading.Lock()

    @classmethod
    def from_url(
        cls,
        rpc_url: str,
        signer: EthereumSigner,
        marketplace_address: str,
        marketplace_data_address: str,
        **kwargs: Any,
    ) -> "Web3JobDirectory":
        return cls(connect(rpc_url), signer, marketplace_address, marketplace_data_address, **kwargs)

    @property
    def local_address(self) -> str:
        return self._signer.address

    # Reads -------------------------------------------------------------------
    async def _call(self, func: Any, what: str) -> Any:
        try:
            return await asyncio.to_thread(func.call)
        except ContractLogicError as exc:
            raise StateConflictError(f"{what} reverted: {exc}") from exc
        except (Web3Exception, OSError, ValueError) as exc:
            raise TransportError(f"{what} failed: {exc}") from exc

    async def job_count(self) -> int:
        return int(await self._call(self._marketplace.functions.jobsLength(), "jobsLength"))

    async def get_job(self, job_id: int) -> Job:
        raw = await self._call(self._marketplace.functions.getJob(int(job_id)), f"getJob({job_id})")
        return decode_job(job_id, raw)

    async def event_count(self, job_id: int) -> int:
        return int(await self._call(self._data.functions.eventsLength(int(job_id)), f"eventsLength({job_id})"))

    async def is_registered(self, address: str) -> bool:
        checksum = Web3.to_checksum_address(address)
        return bool(await self._call(self._data.functions.userRegistered(checksum), "userRegistered"))

    async def public_key_of(self, address: str) -> bytes:
        checksum = Web3.to_checksum_address(address)
        return bytes(await self._call(self._data.functions.publicKeys(checksum), "publicKeys"))

    # Writes ------------------------------------------------------------------
    def _build_tx(self, func: Any) -> Dict[str, Any]:
        sender = self._signer.address
        tx = func.build_transaction({"from": sender, "nonce": self._w3.eth.get_transaction_count(sender)})
        if self._chain_id:
            tx["chainId"] = self._chain_id
        return tx

    def _send_blocking(self, func: Any, what: str) -> str:
        with self._send_lock:
            tx = self._build_tx(func)
            signed = self._signer.account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(_raw_transaction(signed))
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        hex_hash = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
        if receipt.get("status", 1) != 1:
            raise StateConflictError(f"{what} reverted in transaction {hex_hash}")
        _LOGGER.info("%s confirmed in block %s", what, receipt.get("blockNumber"), extra={"tx_hash": hex_hash})
        return hex_hash

    async def _transact(self, func: Any, what: str, *, job_id: Optional[int] = None) -> str:
        try:
            return await asyncio.to_thread(self._send_blocking, func, what)
        except ContractLogicError as exc:
            raise StateConflictError(f"{what} rejected: {exc}", job_id=job_id) from exc
        except TimeExhausted as exc:
            raise TransportError(f"{what} not confirmed within {self._receipt_timeout}s") from exc
        except StateConflictError as exc:
            exc.job_id = job_id
            raise
        except (Web3Exception, OSError, ValueError) as exc:
            raise TransportError(f"{what} failed: {exc}") from exc

    async def apply_to_job(self, job_id: int, recipient: str, content_digest: bytes) -> None:
        func = self._marketplace.functions.postThreadMessage(
            int(job_id), bytes(content_digest), Web3.to_checksum_address(recipient)
        )
        await self._transact(func, f"postThreadMessage({job_id})", job_id=job_id)

    async def assign_job(self, job_id: int, signature: bytes) -> None:
        func = self._marketplace.functions.takeJob(int(job_id), bytes(signature))
        await self._transact(func, f"takeJob({job_id})", job_id=job_id)

    async def deliver_result(self, job_id: int, result_digest: bytes) -> None:
        func = self._marketplace.functions.deliverResult(int(job_id), bytes(result_digest))
        await self._transact(func, f"deliverResult({job_id})", job_id=job_id)

    async def register_identity(self, public_key: Union[bytes, bytearray], name: str, bio: str, avatar: str) -> None:
        func = self._data.functions.registerUser(bytes(public_key), name, bio, avatar)
        await self._transact(func, "registerUser")


__all__ = [
    "DEFAULT_RECEIPT_TIMEOUT",
    "JobDirectory",
    "MARKETPLACE_ABI",
    "MARKETPLACE_DATA_ABI",
    "Web3JobDirectory",
    "connect",
    "take_job_digest",
]
