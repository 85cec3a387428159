"""Attestation lookup endpoints.

Thin wrappers over the attestation client: one poll per request, nothing
is recorded.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from yieldbridge.api.dependencies import get_services, http_error
from yieldbridge.chains import ChainConfig, ChainRegistry
from yieldbridge.errors import TransferError
from yieldbridge.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/retrieve", tags=["Attestations"])

DEFAULT_SOURCE = "ethereum"


class DomainsResponse(BaseModel):
    """CCTP domain id per chain name."""

    domains: dict[str, int]


class AttestationResponse(BaseModel):
    """A completed attestation, hex encoded."""

    transaction_hash: str
    source_chain: str
    cctp_domain: int
    status: str
    message: str
    attestation: str
    event_nonce: Optional[str] = None


def resolve_source(registry: ChainRegistry, domain: str) -> ChainConfig:
    """Chain for a CCTP domain id ("3") or a chain name ("arbitrum").

    Raises:
        ValidationError: unknown domain or chain
    """
    if domain.isdigit():
        return registry.by_domain(int(domain))
    return registry.get(domain)


@router.get("/domains", response_model=DomainsResponse)
async def supported_domains(services: Services = Depends(get_services)) -> DomainsResponse:
    """Supported CCTP domain mappings."""
    return DomainsResponse(
        domains={chain.name: chain.cctp_domain for chain in services.registry.all()}
    )


@router.get("/attestation/{tx_hash}", response_model=AttestationResponse)
async def get_attestation(
    tx_hash: str,
    domain: str = Query(DEFAULT_SOURCE, description="Source CCTP domain id or chain name"),
    services: Services = Depends(get_services),
) -> AttestationResponse:
    """Look up the attestation for a burn once.

    404 while the attestation is not available yet.
    """
    try:
        source = resolve_source(services.registry, domain)
        result = await services.attestation.poll(tx_hash, source.name)
    except TransferError as e:
        raise http_error(e)

    if not result.ready:
        raise HTTPException(
            status_code=404,
            detail=f"Attestation not found or not ready yet (status: {result.status})",
        )

    return AttestationResponse(
        transaction_hash=tx_hash,
        source_chain=source.name,
        cctp_domain=source.cctp_domain,
        status="complete",
        message="0x" + result.message.hex(),
        attestation="0x" + result.proof.hex(),
        event_nonce=result.event_nonce,
    )
