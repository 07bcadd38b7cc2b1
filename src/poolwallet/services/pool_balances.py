"""Reconciliation reporter: on-chain holdings of the pool addresses.

Read-only. Chain failures never raise out of ``get_pool_balances``; the
affected asset is reported with ``degraded=True`` and a zero balance. Code that
needs a real liquidity guarantee must go through ``require_liquidity``, which
treats a degraded reading as unknown and refuses.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from poolwallet.assets import Asset
from poolwallet.chains import EsploraClient, JsonRpcClient
from poolwallet.errors import ChainAPIUnavailable, InsufficientPoolLiquidity, NotInitialized

logger = logging.getLogger(__name__)


@dataclass
class PoolBalance:
    """On-chain balance of one pool address."""

    asset: Asset
    address: Optional[str]
    balance: Decimal
    pending: Decimal = Decimal("0")
    degraded: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balance": str(self.balance),
            "pending": str(self.pending),
            "degraded": self.degraded,
            "error": self.error,
        }


class ReconciliationReporter:
    """Reads pool balances from the chains. Never touches the ledger."""

    def __init__(
        self,
        vault,
        eth_client: JsonRpcClient,
        btc_client: EsploraClient,
        usdt_contract: str,
    ):
        self.vault = vault
        self.eth = eth_client
        self.btc = btc_client
        self.usdt_contract = usdt_contract

    async def get_pool_balances(self) -> dict[Asset, PoolBalance]:
        """Balances for every asset: ``{asset: PoolBalance(address, balance, pending, ...)}``."""
        results = await asyncio.gather(*(self.get_pool_balance(asset) for asset in Asset))
        return {result.asset: result for result in results}

    async def get_pool_balance(self, asset: Asset) -> PoolBalance:
        asset = Asset.parse(asset)
        try:
            address = self.vault.get_pool_address(asset)
        except NotInitialized:
            return PoolBalance(asset, None, Decimal("0"), degraded=True, error="not initialized")

        try:
            if asset is Asset.BTC:
                balance, pending = await self._btc_balance(address)
            elif asset is Asset.ETH:
                balance, pending = await self._eth_balance(address)
            else:
                balance, pending = await self._token_balance(asset, address)
        except (ChainAPIUnavailable, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Pool balance for {asset.value} unavailable: {e}")
            return PoolBalance(asset, address, Decimal("0"), degraded=True, error=str(e))

        return PoolBalance(asset, address, balance, pending)

    async def _eth_balance(self, address: str) -> tuple[Decimal, Decimal]:
        latest = await self.eth.get_balance(address, "latest")
        pending = await self.eth.get_balance(address, "pending")
        return Asset.ETH.from_base_units(latest), Asset.ETH.from_base_units(pending - latest)

    async def _token_balance(self, asset: Asset, address: str) -> tuple[Decimal, Decimal]:
        raw = await self.eth.get_token_balance(self.usdt_contract, address)
        return asset.from_base_units(raw), Decimal("0")

    async def _btc_balance(self, address: str) -> tuple[Decimal, Decimal]:
        stats = await self.btc.get_address_stats(address)
        chain = stats["chain_stats"]
        mempool = stats.get("mempool_stats") or {}
        confirmed = chain["funded_txo_sum"] - chain["spent_txo_sum"]
        pending = mempool.get("funded_txo_sum", 0) - mempool.get("spent_txo_sum", 0)
        return Asset.BTC.from_base_units(confirmed), Asset.BTC.from_base_units(pending)

    async def require_liquidity(self, asset: Asset, amount: Decimal) -> PoolBalance:
        """Check the pool can cover ``amount``.

        Raises:
            InsufficientPoolLiquidity: If the balance is below ``amount`` or
                could not be read
        """
        reading = await self.get_pool_balance(asset)
        if reading.degraded:
            raise InsufficientPoolLiquidity(
                f"{reading.asset.value} pool balance unknown ({reading.error}); refusing to send"
            )
        if reading.balance < amount:
            raise InsufficientPoolLiquidity(
                f"{reading.asset.value} pool holds {reading.balance}, need {amount}"
            )
        return reading
