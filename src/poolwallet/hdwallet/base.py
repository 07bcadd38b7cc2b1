"""HD wallet base interface.

Each provider derives keys and addresses for one chain family from the BIP39
master seed along BIP44 paths ``m/44'/coin'/account'/0/index``. Providers also
know how to map a raw private key back to its address (used for integrity
checks) and how to validate destination addresses for their chain.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from bip_utils import Bip44, Bip44Changes, Bip44Coins

from poolwallet.assets import Asset


@dataclass
class AddressInfo:
    """Information about a derived address."""

    address: str
    asset: Asset
    derivation_path: str
    account: int
    index: int
    script_type: Optional[str] = None  # p2pkh, eth_address


@dataclass
class DerivedKey:
    """A derived address together with its private key (hex)."""

    info: AddressInfo
    private_key: str = field(repr=False)


class HDWalletProvider(ABC):
    """Abstract base class for seed-based HD wallet providers.

    Usage:
        wallet = ETHHDWallet(seed_bytes)
        info = wallet.derive_address(account=0, index=0)
    """

    purpose = 44

    def __init__(self, seed: bytes, testnet: bool = False):
        """Initialize with the BIP39 seed bytes.

        Args:
            seed: 64-byte seed from Bip39SeedGenerator
            testnet: Use testnet coin type and address versions
        """
        self._seed = seed
        self.testnet = testnet
        self._coin_ctx = None

    @property
    @abstractmethod
    def asset(self) -> Asset:
        """Asset whose keys this provider derives."""
        pass

    @property
    @abstractmethod
    def bip44_coin(self) -> Bip44Coins:
        """bip_utils coin enum used for derivation."""
        pass

    @property
    @abstractmethod
    def coin_type(self) -> int:
        """BIP44 coin type number."""
        pass

    @property
    def script_type(self) -> Optional[str]:
        return None

    def _coin(self):
        # Purpose/coin levels are hardened and identical for every account,
        # so derive them once and reuse the context.
        if self._coin_ctx is None:
            self._coin_ctx = Bip44.FromSeed(self._seed, self.bip44_coin).Purpose().Coin()
        return self._coin_ctx

    def _node(self, account: int, index: int):
        return self._coin().Account(account).Change(Bip44Changes.CHAIN_EXT).AddressIndex(index)

    def get_derivation_path(self, account: int, index: int) -> str:
        """Full derivation path: m/purpose'/coin_type'/account'/0/index."""
        return f"m/{self.purpose}'/{self.coin_type}'/{account}'/0/{index}"

    def derive_address(self, account: int, index: int) -> AddressInfo:
        """Derive only the public address at account/index."""
        node = self._node(account, index)
        return AddressInfo(
            address=node.PublicKey().ToAddress(),
            asset=self.asset,
            derivation_path=self.get_derivation_path(account, index),
            account=account,
            index=index,
            script_type=self.script_type,
        )

    def derive_key(self, account: int, index: int) -> DerivedKey:
        """Derive the address and private key at account/index."""
        node = self._node(account, index)
        info = AddressInfo(
            address=node.PublicKey().ToAddress(),
            asset=self.asset,
            derivation_path=self.get_derivation_path(account, index),
            account=account,
            index=index,
            script_type=self.script_type,
        )
        return DerivedKey(info=info, private_key=node.PrivateKey().Raw().ToHex())

    @abstractmethod
    def address_from_private_key(self, private_key: str) -> str:
        """Compute the address controlled by a raw private key (hex)."""
        pass

    @abstractmethod
    def normalize_address(self, address: str) -> str:
        """Validate a destination address and return its canonical form.

        Raises:
            MalformedDestinationAddress: If the address is not valid for this chain
        """
        pass

    def addresses_equal(self, a: str, b: str) -> bool:
        return a == b
