"""FastAPI application factory."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from poolwallet import __version__
from poolwallet.api.deps import Services
from poolwallet.errors import (
    ChainAPIUnavailable,
    ConfigurationError,
    DepositNotFound,
    InsufficientBalance,
    InsufficientPoolLiquidity,
    InvalidStateTransition,
    KeyIntegrityMismatch,
    KeyNotFound,
    NotInitialized,
    PoolWalletError,
    WithdrawalNotFound,
)
from poolwallet.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)

# Checked in order; first match wins. Anything else derived from
# PoolWalletError is a validation error (400).
ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (DepositNotFound, 404),
    (WithdrawalNotFound, 404),
    (InvalidStateTransition, 409),
    (InsufficientPoolLiquidity, 409),
    (InsufficientBalance, 400),
    (KeyIntegrityMismatch, 503),
    (KeyNotFound, 503),
    (NotInitialized, 503),
    (ConfigurationError, 503),
    (ChainAPIUnavailable, 503),
    (LockTimeoutError, 503),
]


def status_for(exc: Exception) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(services: Services) -> FastAPI:
    """Create and configure the FastAPI application.

    The caller owns the services' lifecycle (database, vault, clients);
    the app only routes requests into them.
    """
    settings = services.settings

    app = FastAPI(
        title="Poolwallet API",
        description="Custodial pool wallet: balances, deposits and withdrawals",
        version=__version__,
        debug=settings.debug,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PoolWalletError, handle_domain_error)
    app.add_exception_handler(LockTimeoutError, handle_domain_error)

    # Register routes
    from poolwallet.api.routers import admin, wallet
    from poolwallet.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(wallet.router, prefix="/api/v1", tags=["Wallet"])
    app.include_router(admin.router, tags=["Admin"])

    return app
