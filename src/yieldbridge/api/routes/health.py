"""Health check endpoints."""

from fastapi import APIRouter, Depends

from yieldbridge import __version__
from yieldbridge.api.dependencies import get_services
from yieldbridge.services import Services

router = APIRouter()


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Basic health check endpoint."""
    return {
        "status": "healthy" if services.store.durable else "degraded",
        "service": "yieldbridge",
        "store": services.store.mode,
    }


@router.get("/health/detailed")
async def detailed_health(services: Services = Depends(get_services)):
    """Detailed health check with configuration info."""
    registry = services.registry
    scheduler = services.scheduler
    return {
        "status": "healthy" if services.store.durable else "degraded",
        "service": "yieldbridge",
        "version": __version__,
        "store": {
            "mode": services.store.mode,
            "durable": services.store.durable,
            "transfers": await services.store.count_by_status(),
        },
        "chains": [
            {
                "name": chain.name,
                "chain_id": chain.chain_id,
                "cctp_domain": chain.cctp_domain,
                "vault_manager_configured": chain.has_vault_manager,
                "settlement": chain.name == registry.settlement_chain.name,
            }
            for chain in registry.all()
        ],
        "scheduler": {
            "enabled": services.settings.scheduler_enabled,
            "running_sweep": scheduler.running,
            "last_sweep": scheduler.last_result.to_dict() if scheduler.last_result else None,
            "background_resumes": services.orchestrator.in_flight,
        },
        "config": services.settings.get_safe_dict(),
    }
