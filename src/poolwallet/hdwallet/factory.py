"""HD wallet factory."""

from bip_utils import Bip39SeedGenerator

from poolwallet.assets import Asset, ChainFamily
from poolwallet.errors import ConfigurationError
from poolwallet.hdwallet.base import HDWalletProvider
from poolwallet.hdwallet.btc import BTCHDWallet
from poolwallet.hdwallet.eth import ETHHDWallet

WALLET_CLASSES: dict[ChainFamily, type[HDWalletProvider]] = {
    ChainFamily.UTXO: BTCHDWallet,
    ChainFamily.EVM: ETHHDWallet,
}


def seed_from_mnemonic(mnemonic: str, passphrase: str = "") -> bytes:
    """Generate the BIP39 seed for a mnemonic.

    Raises:
        ConfigurationError: If the mnemonic is missing or fails its checksum
    """
    if not mnemonic or len(mnemonic.split()) < 12:
        raise ConfigurationError("WALLET_SEED_PHRASE must be a 12-24 word BIP39 mnemonic")
    try:
        return Bip39SeedGenerator(mnemonic.strip()).Generate(passphrase)
    except Exception as e:
        raise ConfigurationError(f"Invalid WALLET_SEED_PHRASE: {e}") from e


class WalletSet:
    """One HD wallet provider per chain family, sharing a seed.

    USDT resolves to the ETH provider since it lives on the same chain.
    """

    def __init__(self, seed: bytes, testnet: bool = False):
        self.testnet = testnet
        self._wallets = {family: cls(seed, testnet) for family, cls in WALLET_CLASSES.items()}

    @classmethod
    def from_mnemonic(cls, mnemonic: str, testnet: bool = False) -> "WalletSet":
        return cls(seed_from_mnemonic(mnemonic), testnet)

    def for_asset(self, asset: Asset) -> HDWalletProvider:
        return self._wallets[Asset.parse(asset).family]

    def for_family(self, family: ChainFamily) -> HDWalletProvider:
        return self._wallets[family]
