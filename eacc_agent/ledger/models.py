"""Typed view of marketplace jobs decoded at the ledger boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Mapping, Sequence, Tuple

from ..errors import LedgerDecodeError

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_HASH = bytes(32)


class JobState(IntEnum):
    OPEN = 0
    TAKEN = 1
    CLOSED = 2


@dataclass(frozen=True)
class Job:
    """Read-only snapshot of a job as recorded on the ledger."""

    id: int
    state: JobState
    creator: str
    title: str = ""
    tags: Tuple[str, ...] = ()
    content_digest: bytes = ZERO_HASH
    multiple_applicants: bool = False
    worker: str = ZERO_ADDRESS
    arbitrator: str = ZERO_ADDRESS
    whitelist_workers: bool = False
    amount: int = 0
    token: str = ZERO_ADDRESS
    timestamp: int = 0
    max_time: int = 0
    delivery_method: str = ""
    result_digest: bytes = ZERO_HASH
    disputed: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state is JobState.OPEN

    @property
    def is_actionable(self) -> bool:
        return self.state <= JobState.TAKEN and not self.disputed

    @property
    def has_content(self) -> bool:
        return any(self.content_digest)

    @property
    def has_result(self) -> bool:
        return any(self.result_digest)

    def is_worker(self, address: str) -> bool:
        return self.worker.lower() == address.lower()

    def summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.name,
            "creator": self.creator,
            "worker": self.worker,
            "tags": list(self.tags),
            "multipleApplicants": self.multiple_applicants,
            "contentDigest": "0x" + self.content_digest.hex(),
            "resultDigest": "0x" + self.result_digest.hex(),
            "disputed": self.disputed,
        }


# Field order of the ``getJob`` tuple returned by the marketplace contract.
JOB_FIELDS: Tuple[str, ...] = (
    "state",
    "whitelistWorkers",
    "roles",
    "title",
    "tags",
    "contentHash",
    "multipleApplicants",
    "amount",
    "token",
    "timestamp",
    "maxTime",
    "deliveryMethod",
    "collateralOwed",
    "escrowId",
    "resultHash",
    "rating",
    "disputed",
)
ROLE_FIELDS: Tuple[str, ...] = ("creator", "arbitrator", "worker")


def _as_mapping(raw: Any, names: Sequence[str], what: str) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, (list, tuple)):
        if len(raw) < len(names):
            raise LedgerDecodeError(f"{what} has {len(raw)} fields, expected {len(names)}")
        return dict(zip(names, raw))
    raise LedgerDecodeError(f"Cannot decode {what} from {type(raw).__name__}")


def _bytes32(value: Any, name: str) -> bytes:
    if value is None:
        return ZERO_HASH
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            value = bytes.fromhex(text)
        except ValueError as exc:
            raise LedgerDecodeError(f"{name} is not hex: {value!r}") from exc
    raw = bytes(value)
    if len(raw) != 32:
        raise LedgerDecodeError(f"{name} must be 32 bytes, got {len(raw)}")
    return raw


def decode_job(job_id: int, raw: Any) -> Job:
    """Decode a ``getJob`` result (tuple or mapping) into a :class:`Job`."""

    fields = _as_mapping(raw, JOB_FIELDS, f"job {job_id}")
    roles = _as_mapping(fields.get("roles") or {}, ROLE_FIELDS, f"job {job_id} roles")
    try:
        state = JobState(int(fields.get("state", 0)))
    except (TypeError, ValueError) as exc:
        raise LedgerDecodeError(f"job {job_id} has unknown state {fields.get('state')!r}") from exc
    creator = roles.get("creator") or ""
    if not creator:
        raise LedgerDecodeError(f"job {job_id} has no creator")
    known = set(JOB_FIELDS)
    return Job(
        id=int(job_id),
        state=state,
        creator=str(creator),
        arbitrator=str(roles.get("arbitrator") or ZERO_ADDRESS),
        worker=str(roles.get("worker") or ZERO_ADDRESS),
        title=str(fields.get("title") or ""),
        tags=tuple(str(tag) for tag in (fields.get("tags") or ())),
        content_digest=_bytes32(fields.get("contentHash"), "contentHash"),
        multiple_applicants=bool(fields.get("multipleApplicants")),
        whitelist_workers=bool(fields.get("whitelistWorkers")),
        amount=int(fields.get("amount") or 0),
        token=str(fields.get("token") or ZERO_ADDRESS),
        timestamp=int(fields.get("timestamp") or 0),
        max_time=int(fields.get("maxTime") or 0),
        delivery_method=str(fields.get("deliveryMethod") or ""),
        result_digest=_bytes32(fields.get("resultHash"), "resultHash"),
        disputed=bool(fields.get("disputed")),
        extra={key: value for key, value in fields.items() if key not in known},
    )


__all__ = ["JOB_FIELDS", "Job", "JobState", "ZERO_ADDRESS", "ZERO_HASH", "decode_job"]
