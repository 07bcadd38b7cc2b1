"""Shared API dependencies: service access and caller identity."""

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from poolwallet.config import Settings
from poolwallet.hdwallet.allocator import AddressAllocator
from poolwallet.ledger.service import SettlementLedger
from poolwallet.services.pool_balances import ReconciliationReporter
from poolwallet.signing.vault import KeyVault
from poolwallet.withdrawal.engine import WithdrawalEngine


@dataclass
class Services:
    """Core components the HTTP layer calls into."""

    settings: Settings
    vault: KeyVault
    allocator: AddressAllocator
    ledger: SettlementLedger
    reporter: ReconciliationReporter
    withdrawals: WithdrawalEngine


def get_services(request: Request) -> Services:
    return request.app.state.services


async def require_user(x_user_id: str = Header(None)) -> str:
    """User identity asserted by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


async def require_admin_token(
    request: Request,
    x_admin_token: str = Header(None),
    x_operator: str = Header(None),
) -> str:
    """Verify admin token from header and return the operator name.

    If ADMIN_TOKEN is not set, allows access outside production (dev mode).
    """
    settings = get_services(request).settings

    if not settings.admin_token:
        if settings.is_production:
            raise HTTPException(status_code=503, detail="Admin API disabled: ADMIN_TOKEN not set")
    elif x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return x_operator or "admin"
