"""JSON-RPC scanner for Ethereum and ERC20 (USDT) deposits.

Each cycle covers blocks ``[start, end]``. ``end`` is the newest block deep
enough for every asset's confirmation requirement; ``start`` is the block after
the stored cursor, or the last window of blocks on a first run. A cursor far
behind is caught up one window per cycle:

- native ETH: full blocks via ``eth_getBlockByNumber``, transactions whose
  ``to`` is the pool address and whose receipt did not revert
- USDT: ``Transfer`` logs of the token contract with the pool address as the
  indexed recipient (topic 2)
"""

import logging
from typing import Optional

from poolwallet.assets import Asset
from poolwallet.chains import (
    TRANSFER_EVENT_TOPIC,
    JsonRpcClient,
    hex_to_int,
    pad_address,
    topic_to_address,
)
from poolwallet.scanner.base import DepositScanner, KnownCheck, TransactionInfo

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_BLOCKS = 1000


class EVMScanner(DepositScanner):
    """Ethereum deposit scanner over a JSON-RPC node."""

    name = "evm"
    assets = (Asset.ETH, Asset.USDT)
    uses_cursor = True

    def __init__(
        self,
        client: JsonRpcClient,
        token_contract: str,
        window_blocks: int = DEFAULT_WINDOW_BLOCKS,
        min_confirmations: Optional[dict[Asset, int]] = None,
    ):
        super().__init__(min_confirmations)
        self.client = client
        self.token_contract = token_contract
        self.window_blocks = window_blocks

    def scan_range(self, head: int) -> tuple[int, int]:
        depth = max(self.required_confirmations(asset) for asset in self.assets)
        end = head - depth + 1
        if self.cursor is None:
            start = end - self.window_blocks + 1
        else:
            start = self.cursor + 1
            end = min(end, start + self.window_blocks - 1)
        return max(start, 0), end

    async def scan(
        self,
        pool_addresses: dict[Asset, str],
        is_known: KnownCheck,
    ) -> list[TransactionInfo]:
        self.next_cursor = None
        head = await self.client.block_number()
        start, end = self.scan_range(head)
        if start > end:
            return []

        transactions: list[TransactionInfo] = []
        if Asset.ETH in pool_addresses:
            transactions += await self._scan_native(
                pool_addresses[Asset.ETH], start, end, head, is_known
            )
        if Asset.USDT in pool_addresses:
            transactions += await self._scan_token(pool_addresses[Asset.USDT], start, end, head)

        # Committed by the monitor after the transfers are recorded
        self.next_cursor = end
        logger.debug(f"Scanned blocks {start}-{end}: {len(transactions)} transfers")
        return transactions

    async def _scan_native(
        self, address: str, start: int, end: int, head: int, is_known: KnownCheck
    ) -> list[TransactionInfo]:
        pool = address.lower()
        transactions = []

        for number in range(start, end + 1):
            block = await self.client.get_block(number, True)
            if not block:
                continue

            for tx in block.get("transactions", []):
                if not isinstance(tx, dict) or (tx.get("to") or "").lower() != pool:
                    continue
                value = hex_to_int(tx.get("value"))
                if value <= 0:
                    continue

                tx_hash = tx["hash"]
                if await is_known(Asset.ETH, tx_hash):
                    continue

                receipt = await self.client.get_transaction_receipt(tx_hash)
                if receipt and hex_to_int(receipt.get("status")) == 0:
                    logger.info(f"Skipping reverted ETH transfer {tx_hash}")
                    continue

                transactions.append(
                    TransactionInfo(
                        txid=tx_hash,
                        asset=Asset.ETH,
                        to_address=address,
                        amount=Asset.ETH.from_base_units(value),
                        confirmations=head - number + 1,
                        block_height=number,
                        from_address=tx.get("from"),
                    )
                )

        return transactions

    async def _scan_token(
        self, address: str, start: int, end: int, head: int
    ) -> list[TransactionInfo]:
        logs = await self.client.get_logs(
            {
                "fromBlock": hex(start),
                "toBlock": hex(end),
                "address": self.token_contract,
                "topics": [TRANSFER_EVENT_TOPIC, None, "0x" + pad_address(address)],
            }
        )

        # One deposit per transaction; sum multiple transfers in the same tx
        by_tx: dict[str, TransactionInfo] = {}
        for log in logs:
            topics = log.get("topics") or []
            if log.get("removed") or len(topics) < 3:
                continue

            tx_hash = log["transactionHash"]
            amount = Asset.USDT.from_base_units(hex_to_int(log.get("data")))
            if amount <= 0:
                continue

            if tx_hash in by_tx:
                by_tx[tx_hash].amount += amount
                continue

            block_height = hex_to_int(log.get("blockNumber"))
            by_tx[tx_hash] = TransactionInfo(
                txid=tx_hash,
                asset=Asset.USDT,
                to_address=address,
                amount=amount,
                confirmations=head - block_height + 1,
                block_height=block_height,
                from_address=topic_to_address(topics[1]),
            )

        return list(by_tx.values())
