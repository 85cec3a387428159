"""Deposit endpoints.

A deposit starts after the user has burned USDC through CCTP on the
source chain; we only need the burn transaction to take it from there.
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from yieldbridge.api.dependencies import get_services, http_error
from yieldbridge.api.schemas import TransferResponse
from yieldbridge.errors import TransferError
from yieldbridge.services import Services
from yieldbridge.transfers.orchestrator import DepositRequest, normalize_tx_hash
from yieldbridge.transfers.records import Direction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deposit", tags=["Deposits"])


class Opportunity(BaseModel):
    """Vault the deposit lands in."""

    model_config = ConfigDict(populate_by_name=True)

    chain_id: Optional[int] = Field(None, alias="chainId")
    protocol: int = Field(..., description="1=AAVE, 2=MORPHO, 3=FLUID")
    pool_address: str = Field(..., alias="poolAddress")


class InitializeDepositRequest(BaseModel):
    """Request to register a CCTP burn for settlement."""

    model_config = ConfigDict(populate_by_name=True)

    src_chain_id: int = Field(..., alias="srcChainId")
    dest_chain_id: int = Field(..., alias="destChainId")
    user_wallet: str = Field(..., alias="userWallet")
    amount: Union[int, str] = Field(..., description="USDC base units (6 decimals)")
    opportunity: Opportunity
    bridge_transaction_hash: str = Field(..., alias="bridgeTransactionHash")


class WaitConfirmationRequest(BaseModel):
    """Ask for a deposit to be driven to completion in the background."""

    model_config = ConfigDict(populate_by_name=True)

    bridge_transaction_hash: str = Field(..., alias="bridgeTransactionHash")


@router.post("/initialize", response_model=TransferResponse)
async def initialize_deposit(
    body: InitializeDepositRequest,
    services: Services = Depends(get_services),
) -> TransferResponse:
    """Register a deposit; repeating the same burn returns the same record."""
    request = DepositRequest(
        source_chain_id=body.src_chain_id,
        dest_chain_id=body.dest_chain_id,
        user_address=body.user_wallet,
        amount=body.amount,
        protocol=body.opportunity.protocol,
        pool_address=body.opportunity.pool_address,
        source_tx_hash=body.bridge_transaction_hash,
        opportunity_chain_id=body.opportunity.chain_id,
    )
    try:
        record = await services.orchestrator.initiate_deposit(request)
    except TransferError as e:
        raise http_error(e)
    return TransferResponse.from_record(record)


@router.post("/wait-confirmation", response_model=TransferResponse, status_code=202)
async def wait_confirmation(
    body: WaitConfirmationRequest,
    services: Services = Depends(get_services),
) -> TransferResponse:
    """Schedule attestation and settlement; returns immediately."""
    try:
        tx_hash = normalize_tx_hash(body.bridge_transaction_hash)
    except TransferError as e:
        raise http_error(e)

    record = await services.store.get_by_source_tx(Direction.DEPOSIT, tx_hash)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No deposit for transaction {tx_hash}")

    if not record.is_terminal:
        services.orchestrator.spawn_resume(record.id)
        logger.info(f"Deposit {record.id}: background confirmation scheduled")

    return TransferResponse.from_record(record)


@router.get("/status/tx/{tx_hash}", response_model=TransferResponse)
async def deposit_status_by_tx(
    tx_hash: str,
    services: Services = Depends(get_services),
) -> TransferResponse:
    """Deposit status by burn transaction hash."""
    try:
        tx_hash = normalize_tx_hash(tx_hash)
    except TransferError as e:
        raise http_error(e)

    record = await services.store.get_by_source_tx(Direction.DEPOSIT, tx_hash)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No deposit for transaction {tx_hash}")
    return TransferResponse.from_record(record)


@router.get("/status/{transfer_id}", response_model=TransferResponse)
async def deposit_status(
    transfer_id: str,
    services: Services = Depends(get_services),
) -> TransferResponse:
    """Deposit status by id."""
    record = await services.store.get(transfer_id)
    if record is None or record.direction != Direction.DEPOSIT:
        raise HTTPException(status_code=404, detail=f"Deposit {transfer_id} not found")
    return TransferResponse.from_record(record)
