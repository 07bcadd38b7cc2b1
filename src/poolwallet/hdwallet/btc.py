"""BTC HD wallet using BIP44 legacy (P2PKH) addresses.

Derivation path: m/44'/0'/account'/0/index (coin type 1' on testnet)
Address format: 1... (mainnet), m.../n... (testnet)
"""

from bip_utils import (
    Bip44Coins,
    P2PKHAddrDecoder,
    P2PKHAddrEncoder,
    P2SHAddrDecoder,
    P2WPKHAddrDecoder,
    Secp256k1PrivateKey,
)

from poolwallet.assets import Asset
from poolwallet.errors import MalformedDestinationAddress
from poolwallet.hdwallet.base import HDWalletProvider


class BTCHDWallet(HDWalletProvider):
    """Bitcoin HD wallet (P2PKH)."""

    MAINNET_VERSION = b"\x00"
    TESTNET_VERSION = b"\x6f"
    MAINNET_P2SH_VERSION = b"\x05"
    TESTNET_P2SH_VERSION = b"\xc4"

    @property
    def asset(self) -> Asset:
        return Asset.BTC

    @property
    def bip44_coin(self) -> Bip44Coins:
        return Bip44Coins.BITCOIN_TESTNET if self.testnet else Bip44Coins.BITCOIN

    @property
    def coin_type(self) -> int:
        return 1 if self.testnet else 0

    @property
    def script_type(self) -> str:
        return "p2pkh"

    @property
    def hrp(self) -> str:
        return "tb" if self.testnet else "bc"

    def address_from_private_key(self, private_key: str) -> str:
        """P2PKH address of the compressed public key for ``private_key``."""
        pubkey = Secp256k1PrivateKey.FromBytes(bytes.fromhex(private_key)).PublicKey()
        net_ver = self.TESTNET_VERSION if self.testnet else self.MAINNET_VERSION
        return P2PKHAddrEncoder.EncodeKey(pubkey.RawCompressed().ToBytes(), net_ver=net_ver)

    def normalize_address(self, address: str) -> str:
        """Accept P2PKH, P2SH and native segwit (P2WPKH) destinations."""
        address = (address or "").strip()
        p2pkh_ver = self.TESTNET_VERSION if self.testnet else self.MAINNET_VERSION
        p2sh_ver = self.TESTNET_P2SH_VERSION if self.testnet else self.MAINNET_P2SH_VERSION

        checks = (
            lambda: P2PKHAddrDecoder.DecodeAddr(address, net_ver=p2pkh_ver),
            lambda: P2SHAddrDecoder.DecodeAddr(address, net_ver=p2sh_ver),
            lambda: P2WPKHAddrDecoder.DecodeAddr(address.lower(), hrp=self.hrp),
        )
        for check in checks:
            try:
                check()
            except ValueError:
                continue
            if address.lower().startswith(f"{self.hrp}1"):
                return address.lower()
            return address

        raise MalformedDestinationAddress(f"Invalid BTC address: {address!r}")
