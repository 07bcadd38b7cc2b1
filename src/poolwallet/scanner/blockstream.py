"""Blockstream/Esplora scanner for BTC.

Free API for Bitcoin blockchain queries.
Docs: https://github.com/Blockstream/esplora/blob/master/API.md
"""

import logging
from typing import Optional

from poolwallet.assets import Asset
from poolwallet.chains import EsploraClient
from poolwallet.scanner.base import DepositScanner, KnownCheck, TransactionInfo

logger = logging.getLogger(__name__)


class BlockstreamScanner(DepositScanner):
    """Bitcoin deposit scanner over the pool address' unspent outputs.

    Rate limits on the public API are roughly 10 requests/second; the UTXO
    listing is one call and only unknown transactions are fetched in full.
    """

    name = "btc"
    assets = (Asset.BTC,)

    def __init__(
        self,
        client: EsploraClient,
        min_confirmations: Optional[dict[Asset, int]] = None,
    ):
        super().__init__(min_confirmations)
        self.client = client

    async def scan(
        self,
        pool_addresses: dict[Asset, str],
        is_known: KnownCheck,
    ) -> list[TransactionInfo]:
        address = pool_addresses.get(Asset.BTC)
        if not address:
            return []

        utxos = await self.client.get_address_utxos(address)
        txids = list(dict.fromkeys(u["txid"] for u in utxos if u.get("txid")))

        tip: Optional[int] = None
        transactions = []
        for txid in txids:
            if await is_known(Asset.BTC, txid):
                continue
            if tip is None:
                tip = await self.client.get_tip_height()

            tx = await self.client.get_transaction(txid)
            info = self._parse_transaction(tx, address, tip)
            if not info:
                continue
            if not self.is_confirmed(info):
                # Not recorded, so it is looked at again next cycle
                logger.debug(
                    f"Waiting on {txid[:16]}...: {info.confirmations}/"
                    f"{self.required_confirmations(Asset.BTC)} confirmations"
                )
                continue
            transactions.append(info)

        return transactions

    def _parse_transaction(
        self, tx: dict, address: str, current_height: int
    ) -> Optional[TransactionInfo]:
        """Parse an Esplora transaction into a deposit to ``address``.

        Returns:
            TransactionInfo, or None if nothing in it pays the address
        """
        txid = tx.get("txid")
        if not txid:
            return None

        block_height = tx.get("status", {}).get("block_height")
        if block_height:
            confirmations = current_height - block_height + 1
        else:
            confirmations = 0

        # Sum outputs to our address (values are satoshis)
        satoshis = sum(
            vout.get("value", 0)
            for vout in tx.get("vout", [])
            if vout.get("scriptpubkey_address") == address
        )
        if satoshis <= 0:
            return None

        # Sender is the first input's address, when it has one
        from_address = None
        vin = tx.get("vin", [])
        if vin and vin[0].get("prevout"):
            from_address = vin[0]["prevout"].get("scriptpubkey_address")

        return TransactionInfo(
            txid=txid,
            asset=Asset.BTC,
            to_address=address,
            amount=Asset.BTC.from_base_units(satoshis),
            confirmations=confirmations,
            block_height=block_height,
            from_address=from_address,
        )
