"""Admin API endpoints (token-protected).

Operators review pool deposits, attribute them to users, and approve or
reject queued withdrawals. The operator name recorded on each action comes
from the ``X-Operator`` header.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from poolwallet.api.deps import Services, get_services, require_admin_token
from poolwallet.api.routers.wallet import WithdrawalResponse
from poolwallet.ledger.models import Deposit, WithdrawalStatus

router = APIRouter(prefix="/admin", tags=["admin"])


class DepositResponse(BaseModel):
    id: int
    asset: str
    amount: str
    pool_address: str
    tx_hash: str
    from_address: Optional[str] = None
    block_height: Optional[int] = None
    status: str
    user_id: Optional[str] = None
    claimed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, d: Deposit) -> "DepositResponse":
        return cls(
            id=d.id,
            asset=d.asset,
            amount=str(d.amount),
            pool_address=d.pool_address,
            tx_hash=d.tx_hash,
            from_address=d.from_address,
            block_height=d.block_height,
            status=d.status,
            user_id=d.user_id,
            claimed_by=d.claimed_by,
            notes=d.notes,
            created_at=d.created_at,
            claimed_at=d.claimed_at,
        )


class ClaimRequest(BaseModel):
    user_id: str


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/pool/addresses")
async def get_pool_addresses(
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> dict[str, str]:
    return {asset.value: address for asset, address in services.vault.pool_addresses.items()}


@router.get("/pool/balances")
async def get_pool_balances(
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> dict[str, dict]:
    """On-chain pool balances. Unreadable chains are reported as degraded."""
    balances = await services.reporter.get_pool_balances()
    return {asset.value: reading.to_dict() for asset, reading in balances.items()}


@router.get("/deposits/pending", response_model=list[DepositResponse])
async def list_pending_deposits(
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> list[DepositResponse]:
    deposits = await services.ledger.list_pending_deposits()
    return [DepositResponse.from_record(d) for d in deposits]


@router.post("/deposits/{deposit_id}/claim", response_model=DepositResponse)
async def claim_deposit(
    deposit_id: int,
    request: ClaimRequest,
    operator: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> DepositResponse:
    """Attribute a pending deposit to a user and credit their balance."""
    deposit = await services.ledger.claim_deposit(deposit_id, request.user_id, operator)
    return DepositResponse.from_record(deposit)


@router.post("/deposits/{deposit_id}/cancel", response_model=DepositResponse)
async def cancel_deposit(
    deposit_id: int,
    request: ReasonRequest,
    operator: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> DepositResponse:
    deposit = await services.ledger.cancel_deposit(deposit_id, operator, request.reason)
    return DepositResponse.from_record(deposit)


@router.get("/withdrawals/pending", response_model=list[WithdrawalResponse])
async def list_pending_withdrawals(
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> list[WithdrawalResponse]:
    withdrawals = await services.withdrawals.list_pending()
    return [WithdrawalResponse.from_record(w) for w in withdrawals]


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    status: Optional[WithdrawalStatus] = None,
    limit: int = 100,
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> list[WithdrawalResponse]:
    withdrawals = await services.withdrawals.list_withdrawals(status, limit)
    return [WithdrawalResponse.from_record(w) for w in withdrawals]


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(
    withdrawal_id: int,
    operator: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> WithdrawalResponse:
    """Approve, sign and broadcast. A failed send returns the refunded request."""
    withdrawal = await services.withdrawals.approve_withdrawal(withdrawal_id, operator)
    return WithdrawalResponse.from_record(withdrawal)


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalResponse)
async def reject_withdrawal(
    withdrawal_id: int,
    request: ReasonRequest,
    operator: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> WithdrawalResponse:
    withdrawal = await services.withdrawals.reject_withdrawal(
        withdrawal_id, operator, request.reason
    )
    return WithdrawalResponse.from_record(withdrawal)


@router.post("/withdrawals/check-confirmations", response_model=list[WithdrawalResponse])
async def check_late_confirmations(
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> list[WithdrawalResponse]:
    """Settle interrupted approvals and re-check refunded failures.

    Returns the approvals that were settled or flagged, then the failures that
    confirmed after being refunded.
    """
    settled = await services.withdrawals.recover_stalled_withdrawals()
    flagged = await services.withdrawals.check_late_confirmations()
    return [WithdrawalResponse.from_record(w) for w in settled + flagged]


@router.get("/stats")
async def get_stats(
    _: str = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> dict:
    """Pending deposits, pending withdrawals and last-24h completed withdrawals by asset."""
    stats = await services.ledger.get_stats()
    return {
        section: {
            asset: {"count": row["count"], "total_amount": str(row["total_amount"])}
            for asset, row in rows.items()
        }
        for section, rows in stats.items()
    }
