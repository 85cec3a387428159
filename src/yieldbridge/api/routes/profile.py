"""User profile endpoint: open position plus transfer history."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from yieldbridge.api.dependencies import get_services, http_error
from yieldbridge.api.schemas import PositionResponse, TransferResponse
from yieldbridge.errors import TransferError
from yieldbridge.services import Services
from yieldbridge.transfers.records import (
    TERMINAL_STATUSES,
    Direction,
    TransferRecord,
    TransferStatus,
    VaultProtocol,
    require_address,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/profile", tags=["Profile"])

USDC_UNIT = Decimal(10) ** 6


class ActivePosition(BaseModel):
    """Open position found by the locator, if any."""

    has_position: bool
    chain: Optional[str] = None
    cctp_domain: Optional[int] = None
    protocol: Optional[str] = None
    position: Optional[PositionResponse] = None
    complete: bool
    unreachable_chains: list[str]


class ProfileSummary(BaseModel):
    """Totals over completed transfers, in USDC."""

    total_deposited: str
    total_withdrawn: str
    net_amount: str
    total_deposits: int
    total_withdraws: int
    completed_deposits: int
    completed_withdraws: int
    pending_deposits: int
    pending_withdraws: int


class ProfileResponse(BaseModel):
    user_address: str
    active_position: ActivePosition
    deposits: list[TransferResponse]
    withdraws: list[TransferResponse]
    summary: ProfileSummary


def protocol_name(pool_id: int) -> str:
    try:
        return VaultProtocol(pool_id).name
    except ValueError:
        return f"UNKNOWN({pool_id})"


def to_usdc(base_units: int) -> str:
    return f"{Decimal(base_units) / USDC_UNIT:.6f}"


def transferred_amount(record: TransferRecord) -> int:
    """Base units moved: the deposit amount, or the withdrawn principal."""
    if record.direction == Direction.DEPOSIT:
        return int(record.amount or 0)
    return int(record.position.principal_amount) if record.position else 0


def summarize(deposits: list[TransferRecord], withdraws: list[TransferRecord]) -> ProfileSummary:
    done_deposits = [r for r in deposits if r.status == TransferStatus.COMPLETED]
    done_withdraws = [r for r in withdraws if r.status == TransferStatus.COMPLETED]
    deposited = sum(transferred_amount(r) for r in done_deposits)
    withdrawn = sum(transferred_amount(r) for r in done_withdraws)

    return ProfileSummary(
        total_deposited=to_usdc(deposited),
        total_withdrawn=to_usdc(withdrawn),
        net_amount=to_usdc(deposited - withdrawn),
        total_deposits=len(deposits),
        total_withdraws=len(withdraws),
        completed_deposits=len(done_deposits),
        completed_withdraws=len(done_withdraws),
        pending_deposits=sum(1 for r in deposits if r.status not in TERMINAL_STATUSES),
        pending_withdraws=sum(1 for r in withdraws if r.status not in TERMINAL_STATUSES),
    )


@router.get("/{user_address}", response_model=ProfileResponse)
async def get_profile(
    user_address: str,
    services: Services = Depends(get_services),
) -> ProfileResponse:
    """Open position, deposit and withdraw history, and net completed amount.

    Unreachable chains do not fail the request; they are listed under
    ``active_position.unreachable_chains``.
    """
    try:
        user_address = require_address(user_address, "user address")
    except TransferError as e:
        raise http_error(e)

    scan = await services.locator.scan(user_address)
    found = scan.found
    deposits = await services.store.list_for_user(user_address, Direction.DEPOSIT)
    withdraws = await services.store.list_for_user(user_address, Direction.WITHDRAW)

    return ProfileResponse(
        user_address=user_address,
        active_position=ActivePosition(
            has_position=found is not None,
            chain=found.chain if found else None,
            cctp_domain=found.cctp_domain if found else None,
            protocol=protocol_name(found.position.pool_id) if found else None,
            position=found.position.to_dict() if found else None,
            complete=scan.complete,
            unreachable_chains=scan.unreachable,
        ),
        deposits=[TransferResponse.from_record(r) for r in deposits],
        withdraws=[TransferResponse.from_record(r) for r in withdraws],
        summary=summarize(deposits, withdraws),
    )
