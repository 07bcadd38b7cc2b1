"""User wallet endpoints: display addresses, balances, withdrawals, deposit intents.

The caller's identity is the ``X-User-Id`` header set by the upstream auth layer.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from poolwallet.api.deps import Services, get_services, require_user
from poolwallet.assets import Asset
from poolwallet.ledger.models import Withdrawal

router = APIRouter()


class AddressResponse(BaseModel):
    asset: str
    address: str
    derivation_path: str


class WithdrawalCreate(BaseModel):
    """Withdrawal request."""
    asset: str
    amount: str  # Decimal as string
    destination: str


class WithdrawalResponse(BaseModel):
    id: int
    asset: str
    amount: str
    fee_amount: str
    net_amount: str
    destination_address: str
    status: str
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, w: Withdrawal) -> "WithdrawalResponse":
        return cls(
            id=w.id,
            asset=w.asset,
            amount=str(w.amount),
            fee_amount=str(w.fee_amount),
            net_amount=str(w.net_amount),
            destination_address=w.destination_address,
            status=w.status,
            tx_hash=w.tx_hash,
            reason=w.reason,
            created_at=w.created_at,
            completed_at=w.completed_at,
        )


class IntentCreate(BaseModel):
    asset: str
    amount: str


class IntentResponse(BaseModel):
    id: int
    asset: str
    amount: str
    status: str
    pay_to: str
    expires_at: datetime


@router.get("/wallet/{asset}/address", response_model=AddressResponse)
async def get_display_address(
    asset: str,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
) -> AddressResponse:
    """Per-user display address for an asset."""
    info = services.allocator.get_user_display_info(user_id, Asset.parse(asset))
    return AddressResponse(
        asset=info.asset.value, address=info.address, derivation_path=info.derivation_path
    )


@router.get("/balances")
async def get_balances(
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
) -> dict[str, str]:
    balances = await services.ledger.get_balances(user_id)
    return {asset.value: str(amount) for asset, amount in balances.items()}


@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=201)
async def create_withdrawal(
    request: WithdrawalCreate,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
) -> WithdrawalResponse:
    """Reserve the amount and queue a withdrawal for operator approval."""
    withdrawal = await services.withdrawals.create_withdrawal_request(
        user_id, request.asset, request.amount, request.destination
    )
    return WithdrawalResponse.from_record(withdrawal)


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
) -> list[WithdrawalResponse]:
    withdrawals = await services.withdrawals.list_user_withdrawals(user_id)
    return [WithdrawalResponse.from_record(w) for w in withdrawals]


@router.post("/deposits/intents", response_model=IntentResponse, status_code=201)
async def register_deposit_intent(
    request: IntentCreate,
    user_id: str = Depends(require_user),
    services: Services = Depends(get_services),
) -> IntentResponse:
    """Announce an expected deposit so it can be matched automatically.

    The returned ``pay_to`` is the pool address the funds must be sent to.
    """
    asset = Asset.parse(request.asset)
    intent = await services.ledger.register_deposit_intent(user_id, asset, request.amount)
    return IntentResponse(
        id=intent.id,
        asset=intent.asset,
        amount=str(intent.amount),
        status=intent.status,
        pay_to=services.allocator.get_pool_address(asset),
        expires_at=intent.expires_at,
    )
