"""Deposit monitor: runs the chain scanners and records what they find.

Every chain gets its own asyncio task with its own interval, so a slow or
failing API on one chain never holds up another. Found transfers go to the
settlement ledger as pending deposits; deduplication is the ledger's unique
(asset, tx_hash) constraint, checked again here before each insert.

Block cursors are stored in the ledger and moved forward only after a whole
cycle is recorded. A failed insert leaves the cursor where it was, so the same
blocks are scanned again.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from poolwallet.errors import ChainAPIUnavailable, NotInitialized
from poolwallet.ledger.service import SettlementLedger
from poolwallet.scanner.base import DepositScanner

logger = logging.getLogger(__name__)


@dataclass
class ScanTarget:
    """A scanner and how often to run it."""

    scanner: DepositScanner
    interval: float


class DepositMonitor:
    """Polls each chain for pool deposits and records them."""

    def __init__(self, ledger: SettlementLedger, vault, targets: list[ScanTarget]):
        """Initialize monitor.

        Args:
            ledger: Settlement ledger deposits are recorded in
            vault: Key vault; supplies the pool addresses to watch
            targets: One entry per chain
        """
        self.ledger = ledger
        self.vault = vault
        self.targets = {t.scanner.name: t for t in targets}
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def chains(self) -> list[str]:
        return list(self.targets)

    def _pool_addresses(self, scanner: DepositScanner) -> dict:
        addresses = {}
        for asset in scanner.assets:
            try:
                addresses[asset] = self.vault.get_pool_address(asset)
            except NotInitialized:
                logger.warning(f"No pool address for {asset.value}; not scanning it")
        return addresses

    async def scan_once(self, chain: str) -> int:
        """Run one scan cycle for a chain.

        Returns:
            Number of newly recorded deposits

        Raises:
            ValueError: If the chain has no scan target
        """
        target = self.targets.get(chain)
        if target is None:
            raise ValueError(f"Unknown chain: {chain}. Available: {', '.join(self.targets)}")

        scanner = target.scanner
        pool_addresses = self._pool_addresses(scanner)
        if not pool_addresses:
            return 0

        if scanner.uses_cursor and scanner.cursor is None:
            scanner.cursor = await self.ledger.get_scan_cursor(chain)

        try:
            transactions = await scanner.scan(pool_addresses, self.ledger.deposit_exists)
        except ChainAPIUnavailable as e:
            logger.warning(f"{chain} scan failed, retrying next cycle: {e}")
            return 0

        recorded = 0
        for tx in transactions:
            if await self.ledger.deposit_exists(tx.asset, tx.txid):
                logger.debug(f"Skipping already recorded tx: {tx.txid}")
                continue

            logger.info(
                f"Detected deposit: {tx.amount} {tx.asset.value} to {tx.to_address} "
                f"(txid: {tx.txid[:16]}...)"
            )
            deposit = await self.ledger.record_deposit(
                tx.asset,
                tx.amount,
                tx.to_address,
                tx.txid,
                from_address=tx.from_address,
                block_height=tx.block_height,
            )
            if deposit is not None:
                recorded += 1

        if scanner.uses_cursor and scanner.next_cursor is not None:
            await self.ledger.save_scan_cursor(chain, scanner.next_cursor)
            scanner.cursor = scanner.next_cursor

        if recorded:
            logger.info(f"Recorded {recorded} new {chain} deposits")
        return recorded

    async def scan_all(self) -> dict[str, int]:
        """One cycle of every chain, concurrently."""
        results = await asyncio.gather(*(self.scan_once(chain) for chain in self.targets))
        return dict(zip(self.targets, results))

    async def _run_chain(self, chain: str) -> None:
        target = self.targets[chain]
        logger.info(f"Starting {chain} deposit scanner (interval: {target.interval}s)")

        while self._running:
            try:
                await self.scan_once(chain)
            except Exception as e:
                logger.error(f"{chain} scanner error: {e}", exc_info=True)

            await asyncio.sleep(target.interval)

    def start(self) -> list[asyncio.Task]:
        """Start one background task per chain."""
        self._running = True
        for chain in self.targets:
            if chain not in self._tasks or self._tasks[chain].done():
                self._tasks[chain] = asyncio.create_task(
                    self._run_chain(chain), name=f"deposit-scanner-{chain}"
                )
        return list(self._tasks.values())

    async def run(self, chains: Optional[list[str]] = None) -> None:
        """Run scanners until cancelled or stopped."""
        if chains:
            self.targets = {c: self.targets[c] for c in chains}
        tasks = self.start()
        try:
            await asyncio.gather(*tasks)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Cancel scanner tasks."""
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Deposit scanners stopped")
