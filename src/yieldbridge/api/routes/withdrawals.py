"""Withdraw endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from yieldbridge.api.dependencies import get_services, http_error
from yieldbridge.api.schemas import PositionResponse, TransferListResponse, TransferResponse
from yieldbridge.errors import TransferError
from yieldbridge.services import Services
from yieldbridge.transfers.records import Direction, require_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/withdraw", tags=["Withdrawals"])


class CheckPositionResponse(BaseModel):
    """Where (if anywhere) a user's position lives."""

    user_address: str
    has_position: bool
    chain: Optional[str] = None
    cctp_domain: Optional[int] = None
    position: Optional[PositionResponse] = None
    checked_chains: list[str]
    unreachable_chains: list[str]
    complete: bool


@router.post("/initialize/{user_address}", response_model=TransferResponse)
async def initialize_withdraw(
    user_address: str,
    services: Services = Depends(get_services),
) -> TransferResponse:
    """Start a withdraw of the user's open position.

    Returns once initWithdraw is on chain; attestation and settlement on
    the settlement chain finish in the background.
    """
    try:
        record = await services.orchestrator.initiate_withdraw(user_address)
    except TransferError as e:
        raise http_error(e)

    if not record.is_terminal:
        services.orchestrator.spawn_resume(record.id)

    return TransferResponse.from_record(record)


@router.get("/status/{transfer_id}", response_model=TransferResponse)
async def withdraw_status(
    transfer_id: str,
    services: Services = Depends(get_services),
) -> TransferResponse:
    """Withdraw status by id."""
    record = await services.store.get(transfer_id)
    if record is None or record.direction != Direction.WITHDRAW:
        raise HTTPException(status_code=404, detail=f"Withdraw {transfer_id} not found")
    return TransferResponse.from_record(record)


@router.get("/user/{user_address}", response_model=TransferListResponse)
async def user_withdrawals(
    user_address: str,
    services: Services = Depends(get_services),
) -> TransferListResponse:
    """All withdraws of a user, newest first."""
    try:
        user_address = require_address(user_address, "user address")
    except TransferError as e:
        raise http_error(e)

    records = await services.store.list_for_user(user_address, Direction.WITHDRAW)
    return TransferListResponse(
        user_address=user_address,
        transfers=[TransferResponse.from_record(r) for r in records],
    )


@router.get("/check-position/{user_address}", response_model=CheckPositionResponse)
async def check_position(
    user_address: str,
    services: Services = Depends(get_services),
) -> CheckPositionResponse:
    """Scan the position chains without starting anything."""
    try:
        user_address = require_address(user_address, "user address")
    except TransferError as e:
        raise http_error(e)

    scan = await services.locator.scan(user_address)
    found = scan.found
    return CheckPositionResponse(
        user_address=user_address,
        has_position=found is not None,
        chain=found.chain if found else None,
        cctp_domain=found.cctp_domain if found else None,
        position=found.position.to_dict() if found else None,
        checked_chains=scan.checked,
        unreachable_chains=scan.unreachable,
        complete=scan.complete,
    )
