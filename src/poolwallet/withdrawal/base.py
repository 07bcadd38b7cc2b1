"""Base interfaces for sending withdrawals on-chain.

Withdrawal flow:
1. User requests withdrawal (amount, destination); the amount is reserved
2. Operator approves; the request is claimed atomically
3. Transaction is built and signed with the pool key
4. Transaction is broadcast
5. On failure the reservation is refunded
6. Failed requests with a tx hash are re-checked for late confirmation
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from poolwallet.assets import Asset

logger = logging.getLogger(__name__)


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class SignedTransaction:
    """A signed transaction ready to broadcast.

    The hash is known before broadcasting, so it can be stored on the
    request even when the broadcast itself times out.
    """

    asset: Asset
    tx_hash: str
    raw: str = ""


class ChainBroadcaster(ABC):
    """Builds, signs and broadcasts pool transactions for one asset.

    Each asset has its own implementation instance.
    """

    def __init__(self, asset: Asset):
        self.asset = asset

    @abstractmethod
    def normalize_address(self, address: str) -> str:
        """Validate a destination and return its canonical form.

        Raises:
            MalformedDestinationAddress: If the address is not valid
        """
        pass

    @abstractmethod
    async def build_and_sign(
        self,
        private_key: str,
        pool_address: str,
        destination: str,
        amount: Decimal,
    ) -> SignedTransaction:
        """Build and sign a transfer of ``amount`` from the pool.

        Raises:
            BroadcastFailure: If the transaction cannot be built
            MalformedDestinationAddress: If the destination is invalid
        """
        pass

    @abstractmethod
    async def broadcast(self, signed: SignedTransaction) -> str:
        """Broadcast a signed transaction, returning its hash.

        Raises:
            BroadcastFailure: If the network rejected or never accepted it
        """
        pass

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        """Check status of a transaction.

        Raises:
            ChainAPIUnavailable: If the chain could not be queried
        """
        pass
