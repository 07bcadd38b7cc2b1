"""Address allocation: pool settlement addresses and per-user display addresses.

Pool addresses live at account 0 (``m/44'/coin'/0'/0/0``) and are owned by the
key vault. Display addresses are derived from a hash of the user identifier:

    digest  = sha256(user_id)
    account = 1 + (digest[0:8] mod (2^31 - 1))     -> 1 .. 2^31-1, never 0
    index   = digest[8:12] & 0x7fffffff

giving a 62-bit index space per asset. Because the account is never 0, a
display address can never coincide with the pool address.
"""

import hashlib
import logging
from functools import lru_cache

from poolwallet.assets import Asset, ChainFamily
from poolwallet.hdwallet.base import AddressInfo
from poolwallet.hdwallet.factory import WalletSet

logger = logging.getLogger(__name__)

HARDENED_LIMIT = 2**31 - 1


def display_path_indexes(user_id: str) -> tuple[int, int]:
    """Map a stable user identifier to (account, index) for display derivation."""
    if not user_id:
        raise ValueError("user_id must be a non-empty string")
    digest = hashlib.sha256(str(user_id).encode("utf-8")).digest()
    account = 1 + int.from_bytes(digest[:8], "big") % HARDENED_LIMIT
    index = int.from_bytes(digest[8:12], "big") & 0x7FFFFFFF
    return account, index


class AddressAllocator:
    """Hands out pool and display addresses.

    Display addresses are a pure function of (seed, user_id, asset); nothing
    is read from or written to the database.
    """

    def __init__(self, wallets: WalletSet, vault):
        """Initialize the allocator.

        Args:
            wallets: HD wallet providers built from the master seed
            vault: KeyVault that owns the pool addresses
        """
        self.wallets = wallets
        self.vault = vault
        self._display_info = lru_cache(maxsize=4096)(self._derive_display_info)

    def get_pool_address(self, asset: Asset) -> str:
        """Pool settlement address for an asset.

        Raises:
            NotInitialized: If the vault has not derived or loaded pool keys
        """
        return self.vault.get_pool_address(asset)

    def get_user_display_address(self, user_id: str, asset: Asset) -> str:
        """Deterministic deposit address shown to a user. Never returns a private key."""
        return self.get_user_display_info(user_id, asset).address

    def get_user_display_info(self, user_id: str, asset: Asset) -> AddressInfo:
        asset = Asset.parse(asset)
        # USDT shares the ETH derivation
        return self._display_info(str(user_id), asset.family)

    def _derive_display_info(self, user_id: str, family: ChainFamily) -> AddressInfo:
        account, index = display_path_indexes(user_id)
        info = self.wallets.for_family(family).derive_address(account, index)
        logger.debug(f"Derived display address for user {user_id} at {info.derivation_path}")
        return info

    def is_pool_address(self, address: str) -> bool:
        """True if ``address`` is the active pool address of any asset."""
        for asset, pool_address in self.vault.pool_addresses.items():
            if self.wallets.for_asset(asset).addresses_equal(address, pool_address):
                return True
        return False
