"""Chain registry endpoint."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from yieldbridge.api.dependencies import get_services
from yieldbridge.services import Services

router = APIRouter(prefix="/api", tags=["Chains"])


class ChainResponse(BaseModel):
    """One configured chain."""

    name: str
    display_name: str
    chain_id: int
    cctp_domain: int
    vault_manager_configured: bool
    settlement: bool
    position_chain: bool


class ChainListResponse(BaseModel):
    chains: list[ChainResponse]
    settlement_chain: str


@router.get("/chains", response_model=ChainListResponse)
async def list_chains(services: Services = Depends(get_services)) -> ChainListResponse:
    """Supported chains in position scan order."""
    registry = services.registry
    settlement = registry.settlement_chain.name
    position_chains = {chain.name for chain in registry.position_chains()}

    return ChainListResponse(
        chains=[
            ChainResponse(
                name=chain.name,
                display_name=chain.display_name,
                chain_id=chain.chain_id,
                cctp_domain=chain.cctp_domain,
                vault_manager_configured=chain.has_vault_manager,
                settlement=chain.name == settlement,
                position_chain=chain.name in position_chains,
            )
            for chain in registry.all()
        ],
        settlement_chain=settlement,
    )
