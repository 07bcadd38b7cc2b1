"""ETH HD wallet using BIP44.

Derivation path: m/44'/60'/account'/0/index
Address format: 0x... (EIP-55 checksum)

USDT is an ERC-20 token on Ethereum and shares these keys and addresses.
"""

from bip_utils import Bip44Coins
from eth_account import Account
from eth_utils import is_address, is_checksum_address, to_checksum_address

from poolwallet.assets import Asset
from poolwallet.errors import MalformedDestinationAddress
from poolwallet.hdwallet.base import HDWalletProvider


def normalize_evm_address(address: str) -> str:
    """Checksum-normalize an EVM address.

    A valid checksum address is returned unchanged. Otherwise the lowercase
    form is re-validated, which tolerates case-mangled input without
    accepting anything that is not 20 bytes of hex.

    Raises:
        MalformedDestinationAddress: If the address cannot be normalized
    """
    address = (address or "").strip()
    if is_checksum_address(address):
        return address

    lowered = address.lower()
    if is_address(lowered):
        return to_checksum_address(lowered)

    raise MalformedDestinationAddress(f"Invalid EVM address: {address!r}")


class ETHHDWallet(HDWalletProvider):
    """Ethereum HD wallet."""

    @property
    def asset(self) -> Asset:
        return Asset.ETH

    @property
    def bip44_coin(self) -> Bip44Coins:
        return Bip44Coins.ETHEREUM

    @property
    def coin_type(self) -> int:
        return 60  # same on testnets

    @property
    def script_type(self) -> str:
        return "eth_address"

    def address_from_private_key(self, private_key: str) -> str:
        return Account.from_key(bytes.fromhex(private_key.removeprefix("0x"))).address

    def normalize_address(self, address: str) -> str:
        return normalize_evm_address(address)

    def addresses_equal(self, a: str, b: str) -> bool:
        return a.lower() == b.lower()
