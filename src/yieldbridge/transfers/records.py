"""Transfer records and their state graphs.

Deposit:
    pending_attestation -> attestation_received -> processing_deposit
    -> deposit_confirmed -> completed

Withdraw:
    checking_position -> position_found -> initiating_withdraw
    -> withdraw_initiated -> pending_attestation -> attestation_received
    -> processing_withdraw -> completed

Any non-terminal status may move to ``failed``. Both store variants apply
patches through ``apply_patch`` so they enforce identical rules.
"""

import re
import uuid
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from web3 import Web3

from yieldbridge.errors import InvalidTransitionError, ValidationError
from yieldbridge.onchain.base import Position

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class Direction(str, Enum):
    """Which way the funds move."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class TransferStatus(str, Enum):
    """Status of a transfer."""

    CHECKING_POSITION = "checking_position"
    POSITION_FOUND = "position_found"
    INITIATING_WITHDRAW = "initiating_withdraw"
    WITHDRAW_INITIATED = "withdraw_initiated"
    PENDING_ATTESTATION = "pending_attestation"
    ATTESTATION_RECEIVED = "attestation_received"
    PROCESSING_DEPOSIT = "processing_deposit"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    PROCESSING_WITHDRAW = "processing_withdraw"
    COMPLETED = "completed"
    FAILED = "failed"


class VaultProtocol(int, Enum):
    """Protocol a deposit lands in."""

    AAVE = 1
    MORPHO = 2
    FLUID = 3


FLOWS: dict[Direction, tuple[TransferStatus, ...]] = {
    Direction.DEPOSIT: (
        TransferStatus.PENDING_ATTESTATION,
        TransferStatus.ATTESTATION_RECEIVED,
        TransferStatus.PROCESSING_DEPOSIT,
        TransferStatus.DEPOSIT_CONFIRMED,
        TransferStatus.COMPLETED,
    ),
    Direction.WITHDRAW: (
        TransferStatus.CHECKING_POSITION,
        TransferStatus.POSITION_FOUND,
        TransferStatus.INITIATING_WITHDRAW,
        TransferStatus.WITHDRAW_INITIATED,
        TransferStatus.PENDING_ATTESTATION,
        TransferStatus.ATTESTATION_RECEIVED,
        TransferStatus.PROCESSING_WITHDRAW,
        TransferStatus.COMPLETED,
    ),
}

TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED})

# A later stage never erases an earlier stage's evidence.
WRITE_ONCE_FIELDS = ("source_tx_hash", "attestation_message", "attestation_proof", "dest_tx_hash")

PATCHABLE_FIELDS = frozenset(
    {
        "status",
        "source_chain",
        "position",
        "pending_tx_hash",
        "error_message",
        *WRITE_ONCE_FIELDS,
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_address(value: Optional[str]) -> bool:
    return bool(value) and bool(ADDRESS_RE.match(value))


def is_tx_hash(value: Optional[str]) -> bool:
    return bool(value) and bool(TX_HASH_RE.match(value))


def require_address(value: Optional[str], field_name: str = "address") -> str:
    """Validate an EVM address; returns its checksum form."""
    if not is_address(value):
        raise ValidationError(f"Invalid {field_name} format: {value!r}")
    return Web3.to_checksum_address(value)


def initial_status(direction: Direction) -> TransferStatus:
    return FLOWS[direction][0]


def next_status(direction: Direction, status: TransferStatus) -> Optional[TransferStatus]:
    """Immediate forward successor, None for terminal states."""
    flow = FLOWS[direction]
    if status not in flow:
        return None
    idx = flow.index(status)
    return flow[idx + 1] if idx + 1 < len(flow) else None


def check_transition(direction: Direction, current: TransferStatus, new: TransferStatus) -> None:
    """Raise unless ``current -> new`` is an edge of the direction's graph."""
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Transfer already {current.value}")
    if new == TransferStatus.FAILED:
        return
    if new not in FLOWS[direction]:
        raise InvalidTransitionError(f"{new.value} is not a {direction.value} status")
    if next_status(direction, current) != new:
        raise InvalidTransitionError(
            f"Illegal {direction.value} transition {current.value} -> {new.value}"
        )


@dataclass
class TransferRecord:
    """Orchestration state for one deposit or withdraw."""

    id: str
    direction: Direction
    user_address: str
    source_chain: Optional[str]
    dest_chain: str
    status: TransferStatus

    # Deposit payload
    amount: Optional[str] = None
    protocol: Optional[int] = None
    pool_address: Optional[str] = None

    # Withdraw payload, captured once at discovery
    position: Optional[Position] = None

    source_tx_hash: Optional[str] = None
    attestation_message: Optional[str] = None
    attestation_proof: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    pending_tx_hash: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = None
    updated_at: datetime = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def new(
        cls,
        direction: Direction,
        user_address: str,
        dest_chain: str,
        source_chain: Optional[str] = None,
        **values: Any,
    ) -> "TransferRecord":
        """Fresh record in the direction's initial status."""
        now = utcnow()
        return cls(
            id=uuid.uuid4().hex,
            direction=direction,
            user_address=user_address,
            source_chain=source_chain,
            dest_chain=dest_chain,
            status=values.pop("status", initial_status(direction)),
            created_at=now,
            updated_at=now,
            **values,
        )

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["direction"] = self.direction.value
        data["status"] = self.status.value
        data["position"] = self.position.to_dict() if self.position else None
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


def apply_patch(record: TransferRecord, patch: dict[str, Any]) -> TransferRecord:
    """Validate ``patch`` against ``record`` and return the patched copy.

    Raises:
        InvalidTransitionError: unknown field, illegal status move,
            write-once overwrite, or any change to a terminal record
    """
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise InvalidTransitionError(f"Fields not patchable: {', '.join(sorted(unknown))}")

    if record.is_terminal:
        raise InvalidTransitionError(f"Transfer {record.id} already {record.status.value}")

    new_status = TransferStatus(patch.get("status", record.status))
    if new_status != record.status:
        check_transition(record.direction, record.status, new_status)

    if patch.get("error_message") and new_status != TransferStatus.FAILED:
        raise InvalidTransitionError("error_message is only set when failing a transfer")

    for name in WRITE_ONCE_FIELDS:
        if name in patch:
            current = getattr(record, name)
            if current is not None and current != patch[name]:
                raise InvalidTransitionError(f"{name} already set on transfer {record.id}")

    if "position" in patch and record.position is not None and record.position != patch["position"]:
        raise InvalidTransitionError(f"Position snapshot already captured on transfer {record.id}")

    values = dict(patch)
    values["status"] = new_status
    if new_status == TransferStatus.FAILED and not values.get("error_message"):
        values["error_message"] = "Unknown error"

    return replace(record, updated_at=utcnow(), **values)


def position_from_dict(data: Optional[dict]) -> Optional[Position]:
    if not data:
        return None
    return Position(**data)


def position_columns(position: Optional[Position]) -> dict:
    """Flatten a snapshot into ``position_*`` column values."""
    if position is None:
        return {
            "pool_id": None,
            "position_id": None,
            "position_owner": None,
            "principal_amount": None,
            "shares": None,
            "vault_address": None,
        }
    data = asdict(position)
    return {
        "pool_id": data["pool_id"],
        "position_id": data["position_id"],
        "position_owner": data["owner"],
        "principal_amount": data["principal_amount"],
        "shares": data["shares"],
        "vault_address": data["vault"],
    }
