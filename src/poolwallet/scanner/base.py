"""Base interface for deposit scanners.

A scanner looks at one chain for inbound transfers to the pool addresses and
returns the ones with enough confirmations. It keeps no record of what was
already processed; the monitor asks the ledger, so a restart never re-credits
or forgets a deposit.

Scanners that page through blocks also keep a cursor, the last block whose
transfers are all recorded. ``scan`` only proposes the next value in
``next_cursor``; the monitor stores it once every returned transfer is in the
ledger.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from poolwallet.assets import Asset

logger = logging.getLogger(__name__)

# async (asset, tx_hash) -> True if the ledger already holds this deposit
KnownCheck = Callable[[Asset, str], Awaitable[bool]]


@dataclass
class TransactionInfo:
    """An inbound transfer to a pool address."""

    txid: str
    asset: Asset
    to_address: str
    amount: Decimal
    confirmations: int = 0
    block_height: Optional[int] = None
    from_address: Optional[str] = None


class DepositScanner(ABC):
    """Abstract base class for blockchain deposit scanners.

    Implementations cover every asset of one chain (``assets``) so a single
    task polls a single API.
    """

    name: str = "scanner"
    assets: tuple[Asset, ...] = ()
    uses_cursor: bool = False

    def __init__(self, min_confirmations: Optional[dict[Asset, int]] = None):
        """Initialize scanner.

        Args:
            min_confirmations: Required confirmations per asset; at least one
        """
        self.min_confirmations = dict(min_confirmations or {})
        self.cursor: Optional[int] = None
        self.next_cursor: Optional[int] = None

    def required_confirmations(self, asset: Asset) -> int:
        return max(1, self.min_confirmations.get(asset, 1))

    def is_confirmed(self, tx: TransactionInfo) -> bool:
        """Check if a transfer is deep enough to record."""
        return tx.confirmations >= self.required_confirmations(tx.asset)

    @abstractmethod
    async def scan(
        self,
        pool_addresses: dict[Asset, str],
        is_known: KnownCheck,
    ) -> list[TransactionInfo]:
        """Look for inbound transfers to the pool addresses.

        Args:
            pool_addresses: Pool address per asset this scanner handles
            is_known: Ledger lookup, used to skip fetching details of
                transfers that are already recorded

        Returns:
            Transfers found this cycle. May include known ones; callers
            deduplicate against the ledger.

        Raises:
            ChainAPIUnavailable: If the chain could not be queried
        """
        pass
