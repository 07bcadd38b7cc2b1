"""Factory for withdrawal broadcasters, one per asset."""

from typing import Optional

from poolwallet.assets import Asset
from poolwallet.chains import EsploraClient, JsonRpcClient
from poolwallet.config import Settings
from poolwallet.hdwallet.factory import WalletSet
from poolwallet.withdrawal.base import ChainBroadcaster
from poolwallet.withdrawal.btc import BTCBroadcaster, TransactionBuilder
from poolwallet.withdrawal.eth import EVMBroadcaster


def create_broadcasters(
    settings: Settings,
    wallets: WalletSet,
    eth_client: JsonRpcClient,
    btc_client: EsploraClient,
    btc_builder: Optional[TransactionBuilder] = None,
) -> dict[Asset, ChainBroadcaster]:
    """Build the broadcaster for every supported asset.

    Args:
        btc_builder: BTC transaction builder; BTC sends fail without one
    """
    return {
        Asset.BTC: BTCBroadcaster(btc_client, wallets.for_asset(Asset.BTC), btc_builder),
        Asset.ETH: EVMBroadcaster(Asset.ETH, eth_client, gas_margin=settings.gas_safety_margin),
        Asset.USDT: EVMBroadcaster(
            Asset.USDT,
            eth_client,
            token_contract=settings.usdt_contract_address,
            gas_margin=settings.gas_safety_margin,
        ),
    }
