"""Response models shared by the API routes."""

from typing import Optional

from pydantic import BaseModel

from yieldbridge.transfers.records import TransferRecord


class PositionResponse(BaseModel):
    """Vault position snapshot."""

    pool_id: int
    position_id: str
    owner: str
    principal_amount: str
    shares: str
    vault: str


class TransferResponse(BaseModel):
    """A transfer record as exposed over HTTP."""

    id: str
    direction: str
    status: str
    user_address: str
    source_chain: Optional[str] = None
    dest_chain: str
    amount: Optional[str] = None
    protocol: Optional[int] = None
    pool_address: Optional[str] = None
    position: Optional[PositionResponse] = None
    source_tx_hash: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    pending_tx_hash: Optional[str] = None
    has_attestation: bool = False
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: TransferRecord) -> "TransferResponse":
        data = record.to_dict()
        data["has_attestation"] = bool(data.pop("attestation_proof"))
        data.pop("attestation_message")
        return cls(**data)


class TransferListResponse(BaseModel):
    """Transfers for one user."""

    user_address: str
    transfers: list[TransferResponse]
