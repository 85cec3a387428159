"""Admin API endpoints (token-protected)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from yieldbridge.api.dependencies import get_services, require_admin_token
from yieldbridge.api.schemas import TransferResponse
from yieldbridge.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class SweepResponse(BaseModel):
    """Outcome of a manual resumption sweep."""

    skipped: bool
    examined: int = 0
    completed: int = 0
    deferred: int = 0
    failed: int = 0
    unchanged: int = 0


class ResumeResponse(BaseModel):
    """A resume scheduled for one record."""

    scheduled: bool
    transfer: TransferResponse
    message: Optional[str] = None


@router.post("/resume-sweep", response_model=SweepResponse)
async def resume_sweep(
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> SweepResponse:
    """Run one resumption sweep now."""
    result = await services.scheduler.run_once()
    if result is None:
        return SweepResponse(skipped=True)
    return SweepResponse(skipped=False, **result.to_dict())


@router.post("/transfers/{transfer_id}/resume", response_model=ResumeResponse, status_code=202)
async def resume_transfer(
    transfer_id: str,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> ResumeResponse:
    """Schedule a background resume for a single record."""
    record = await services.store.get(transfer_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Transfer {transfer_id} not found")

    if record.is_terminal:
        return ResumeResponse(
            scheduled=False,
            transfer=TransferResponse.from_record(record),
            message=f"Transfer already {record.status.value}",
        )

    services.orchestrator.spawn_resume(record.id)
    logger.info(f"Admin scheduled resume of {record.id} ({record.status.value})")
    return ResumeResponse(scheduled=True, transfer=TransferResponse.from_record(record))
