"""Health check endpoints."""

from fastapi import APIRouter, Depends

from poolwallet import __version__
from poolwallet.api.deps import Services, get_services

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "poolwallet"}


@router.get("/health/detailed")
async def detailed_health(services: Services = Depends(get_services)):
    """Detailed health check with configuration info and pool key state."""
    pools = services.vault.pool_addresses
    return {
        "status": "healthy" if pools else "degraded",
        "service": "poolwallet",
        "version": __version__,
        "pool_initialized": {asset.value: bool(address) for asset, address in pools.items()},
        "config": services.settings.get_safe_dict(),
    }
