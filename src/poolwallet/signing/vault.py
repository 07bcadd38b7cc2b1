"""Key vault for pool signing keys.

Pool keys are derived from the master seed at fixed paths:

    BTC   m/44'/0'/0'/0/0   (P2PKH, coin type 1' on testnet)
    ETH   m/44'/60'/0'/0/0
    USDT  same key and address as ETH

Private keys are stored only encrypted (see ``poolwallet.crypto``). On every
retrieval the decrypted key is mapped back to an address and compared with
the stored pool address; a mismatch raises ``KeyIntegrityMismatch``.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from cryptography.exceptions import InvalidTag

from poolwallet.assets import Asset
from poolwallet.crypto import KeyEncryptor
from poolwallet.errors import KeyIntegrityMismatch, KeyNotFound, NotInitialized
from poolwallet.hdwallet.factory import WalletSet
from poolwallet.ledger.database import Database
from poolwallet.ledger.repository import LedgerRepository
from poolwallet.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

POOL_ACCOUNT = 0
POOL_INDEX = 0

# Assets that own key material; USDT signs with the ETH key.
KEYED_ASSETS = (Asset.BTC, Asset.ETH)


@dataclass
class PoolKeyInfo:
    """Pool address state for one asset after provisioning."""

    asset: Asset
    address: str
    derivation_path: str
    created: bool  # False if loaded from storage


class KeyVault:
    """Holds pool keys encrypted at rest and hands them out for signing."""

    def __init__(
        self,
        db: Database,
        wallets: WalletSet,
        encryptor: KeyEncryptor,
        locks: Optional[KeyedLock] = None,
    ):
        self.db = db
        self.wallets = wallets
        self.encryptor = encryptor
        self.locks = locks or KeyedLock()
        self.pool_addresses: dict[Asset, str] = {}

    @staticmethod
    def _aad(asset: Asset) -> bytes:
        return asset.value.encode("ascii")

    async def derive_and_store_pool_keys(self) -> dict[Asset, PoolKeyInfo]:
        """Provision pool keys, loading existing ones instead of regenerating.

        Idempotent: when both the pool address and the encrypted key already
        exist for an asset, nothing is derived or written.
        """
        results: dict[Asset, PoolKeyInfo] = {}

        async with self.db.session() as session:
            repo = LedgerRepository(session)

            for asset in KEYED_ASSETS:
                wallet = self.wallets.for_asset(asset)
                pool = await repo.get_pool_address(asset)
                encrypted = await repo.get_encrypted_key(asset)

                if pool and encrypted:
                    results[asset] = PoolKeyInfo(asset, pool.address, pool.derivation_path, False)
                    continue

                derived = wallet.derive_key(POOL_ACCOUNT, POOL_INDEX)
                path = derived.info.derivation_path

                if encrypted is None:
                    iv, ciphertext = self.encryptor.encrypt(derived.private_key, self._aad(asset))
                    await repo.save_encrypted_key(asset, iv, ciphertext)
                    logger.info(f"Stored encrypted pool key for {asset.value} ({path})")

                if pool is None:
                    pool = await repo.save_pool_address(
                        asset, derived.info.address, path, verified=encrypted is None
                    )
                    logger.info(f"Created {asset.value} pool address {pool.address}")

                results[asset] = PoolKeyInfo(asset, pool.address, pool.derivation_path, True)
                del derived

            # Token assets share the address of the asset that signs for them
            for asset in Asset:
                if asset in results:
                    continue
                parent = results[asset.signing_asset]
                pool = await repo.get_pool_address(asset)
                if pool is None:
                    pool = await repo.save_pool_address(
                        asset, parent.address, parent.derivation_path, verified=False
                    )
                    results[asset] = PoolKeyInfo(asset, pool.address, pool.derivation_path, True)
                else:
                    results[asset] = PoolKeyInfo(asset, pool.address, pool.derivation_path, False)

        self.pool_addresses = {asset: info.address for asset, info in results.items()}
        return results

    async def load_pool_addresses(self) -> dict[Asset, str]:
        """Load stored pool addresses without deriving anything."""
        async with self.db.session() as session:
            pools = await LedgerRepository(session).get_pool_addresses()
        self.pool_addresses = {Asset(p.asset): p.address for p in pools}
        return dict(self.pool_addresses)

    def get_pool_address(self, asset: Asset) -> str:
        """Active pool address for an asset.

        Raises:
            NotInitialized: If pool keys have not been derived or loaded
        """
        asset = Asset.parse(asset)
        address = self.pool_addresses.get(asset)
        if address is None:
            raise NotInitialized(f"Pool address for {asset.value} is not initialized")
        return address

    async def get_private_key_for_signing(self, asset: Asset) -> str:
        """Decrypt the pool key for an asset after checking it against the pool address.

        Callers must drop the returned key as soon as signing is done; prefer
        ``signing_key()`` which also serializes access per asset.

        Raises:
            NotInitialized: No pool address stored for the asset
            KeyNotFound: No encrypted key stored for the asset
            KeyIntegrityMismatch: Key does not derive to the pool address
        """
        asset = Asset.parse(asset)
        key_asset = asset.signing_asset

        async with self.db.session() as session:
            repo = LedgerRepository(session)
            pool = await repo.get_pool_address(asset)
            encrypted = await repo.get_encrypted_key(key_asset)

        if pool is None:
            raise NotInitialized(f"Pool address for {asset.value} is not initialized")
        if encrypted is None:
            raise KeyNotFound(f"No encrypted key material for {key_asset.value}")

        try:
            private_key = self.encryptor.decrypt(
                encrypted.iv, encrypted.ciphertext, self._aad(key_asset)
            )
        except InvalidTag:
            logger.critical(f"Pool key for {key_asset.value} failed to decrypt")
            raise KeyIntegrityMismatch(asset.value, pool.address, "<undecryptable>") from None

        wallet = self.wallets.for_asset(asset)
        derived = wallet.address_from_private_key(private_key)
        if not wallet.addresses_equal(derived, pool.address):
            del private_key
            logger.critical(
                f"Pool key integrity mismatch for {asset.value}: "
                f"stored {pool.address}, key derives {derived}"
            )
            raise KeyIntegrityMismatch(asset.value, pool.address, derived)

        return private_key

    @asynccontextmanager
    async def signing_key(
        self, asset: Asset, operation: str = "sign", timeout: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Hold the per-asset signing lock and yield the decrypted pool key.

        ``timeout`` overrides the lock registry's default wait.

        Example:
            async with vault.signing_key(Asset.ETH, operation="withdrawal 7") as key:
                signed = Account.sign_transaction(tx, key)
        """
        asset = Asset.parse(asset)
        async with self.locks.hold(asset.signing_asset.value, timeout, operation):
            private_key = await self.get_private_key_for_signing(asset)
            try:
                yield private_key
            finally:
                del private_key

    async def verify_pool_keys(self) -> dict[Asset, bool]:
        """Run the integrity check for every asset and mark passing addresses verified."""
        results: dict[Asset, bool] = {}
        for asset in Asset:
            try:
                await self.get_private_key_for_signing(asset)
            except (NotInitialized, KeyNotFound, KeyIntegrityMismatch) as e:
                logger.error(f"Pool key check failed for {asset.value}: {e}")
                results[asset] = False
                continue
            results[asset] = True

        async with self.db.session() as session:
            repo = LedgerRepository(session)
            for asset, ok in results.items():
                if ok:
                    await repo.mark_pool_address_verified(asset)
        return results
