"""FastAPI dependencies and error mapping."""

import logging

from fastapi import Depends, Header, HTTPException, Request

from yieldbridge.errors import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceUnavailable,
    StaleTransitionError,
    TerminalExternalError,
    TransferError,
    TransientExternalError,
    ValidationError,
)
from yieldbridge.services import Services
from yieldbridge.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    """Services built by the app lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


async def require_admin_token(
    x_admin_token: str = Header(None),
    services: Services = Depends(get_services),
) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access (dev mode).
    """
    admin_token = services.settings.admin_token
    if not admin_token:
        return True
    if x_admin_token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return True


def http_error(e: TransferError) -> HTTPException:
    """Map a transfer error onto an HTTP status."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidTransitionError, StaleTransitionError, LockTimeoutError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (TransientExternalError, PersistenceUnavailable)):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, TerminalExternalError):
        return HTTPException(status_code=502, detail=str(e))

    logger.error(f"Unmapped transfer error: {e}")
    return HTTPException(status_code=500, detail=str(e))
