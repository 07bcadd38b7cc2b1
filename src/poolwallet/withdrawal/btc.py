"""BTC withdrawals.

Broadcast and status checks go through the Blockstream/Esplora API.
Building a transaction (UTXO selection, fee rate, change) is delegated to a
``TransactionBuilder``; without one every BTC send fails with
``BroadcastFailure`` and the engine refunds the request.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from poolwallet.assets import Asset
from poolwallet.chains import EsploraClient
from poolwallet.errors import BroadcastFailure, ChainAPIUnavailable
from poolwallet.hdwallet.btc import BTCHDWallet
from poolwallet.withdrawal.base import ChainBroadcaster, SignedTransaction, TxStatus

logger = logging.getLogger(__name__)


class TransactionBuilder(ABC):
    """Builds and signs a raw BTC transaction spending pool UTXOs."""

    @abstractmethod
    async def build(
        self,
        private_key: str,
        pool_address: str,
        destination: str,
        amount_sats: int,
        utxos: list[dict],
    ) -> SignedTransaction:
        """Return the signed transaction (txid and raw hex).

        Raises:
            BroadcastFailure: If the UTXOs cannot cover amount plus fee
        """
        pass


class BTCBroadcaster(ChainBroadcaster):
    """Bitcoin withdrawal broadcaster."""

    def __init__(
        self,
        client: EsploraClient,
        wallet: BTCHDWallet,
        builder: Optional[TransactionBuilder] = None,
    ):
        super().__init__(Asset.BTC)
        self.client = client
        self.wallet = wallet
        self.builder = builder

    def normalize_address(self, address: str) -> str:
        return self.wallet.normalize_address(address)

    async def build_and_sign(
        self,
        private_key: str,
        pool_address: str,
        destination: str,
        amount: Decimal,
    ) -> SignedTransaction:
        destination = self.normalize_address(destination)
        if self.builder is None:
            raise BroadcastFailure("No BTC transaction builder configured")

        try:
            utxos = await self.client.get_address_utxos(pool_address)
        except ChainAPIUnavailable as e:
            raise BroadcastFailure(f"Could not fetch pool UTXOs: {e}") from e

        return await self.builder.build(
            private_key, pool_address, destination, Asset.BTC.to_base_units(amount), utxos
        )

    async def broadcast(self, signed: SignedTransaction) -> str:
        try:
            txid = await self.client.broadcast(signed.raw)
        except ChainAPIUnavailable as e:
            raise BroadcastFailure(str(e), tx_hash=signed.tx_hash) from e

        logger.info(f"BTC transaction broadcast: {txid}")
        return txid or signed.tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        status = await self.client.get_transaction_status(tx_hash)
        if status.get("confirmed"):
            return TxStatus.CONFIRMED
        return TxStatus.PENDING
