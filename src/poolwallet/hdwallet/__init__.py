"""HD wallet module for deterministic key and address derivation."""

from poolwallet.hdwallet.allocator import AddressAllocator
from poolwallet.hdwallet.base import AddressInfo, DerivedKey, HDWalletProvider
from poolwallet.hdwallet.factory import WalletSet, seed_from_mnemonic

__all__ = [
    "AddressAllocator",
    "AddressInfo",
    "DerivedKey",
    "HDWalletProvider",
    "WalletSet",
    "seed_from_mnemonic",
]
