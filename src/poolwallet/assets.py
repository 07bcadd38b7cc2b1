"""Supported assets and their chain properties."""

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum

from poolwallet.errors import InvalidAmount, UnsupportedAsset


class ChainFamily(str, Enum):
    """How an asset settles on-chain."""

    UTXO = "utxo"
    EVM = "evm"


class Asset(str, Enum):
    """Assets held in the pool."""

    BTC = "BTC"
    ETH = "ETH"
    USDT = "USDT"

    @classmethod
    def parse(cls, value: "str | Asset") -> "Asset":
        """Parse a user-supplied symbol, raising UnsupportedAsset for unknown ones."""
        if isinstance(value, Asset):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise UnsupportedAsset(f"Unsupported asset: {value}") from None

    @property
    def family(self) -> ChainFamily:
        return ChainFamily.UTXO if self is Asset.BTC else ChainFamily.EVM

    @property
    def decimals(self) -> int:
        """Number of decimal places used on-chain."""
        return _DECIMALS[self]

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit as a Decimal (e.g. 1e-8 for BTC)."""
        return Decimal(1).scaleb(-self.decimals)

    @property
    def signing_asset(self) -> "Asset":
        """Asset whose pool key signs transfers of this asset.

        USDT is an ERC-20 token on Ethereum, so it is sent from the ETH pool key.
        """
        return Asset.ETH if self is Asset.USDT else self

    @property
    def is_token(self) -> bool:
        return self is Asset.USDT

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a decimal amount to integer base units (satoshi, wei, ...)."""
        return int((amount * (Decimal(10) ** self.decimals)).to_integral_value())

    def from_base_units(self, value: int) -> Decimal:
        """Convert integer base units back to a decimal amount."""
        return Decimal(value) / (Decimal(10) ** self.decimals)


_DECIMALS = {
    Asset.BTC: 8,
    Asset.ETH: 18,
    Asset.USDT: 6,
}


def parse_amount(asset: Asset, amount) -> Decimal:
    """Validate a user-supplied amount against the asset's precision.

    Raises:
        InvalidAmount: Not a positive finite number, or too many decimals
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Invalid amount: {amount!r}") from e

    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    try:
        exact = value == value.quantize(asset.quantum, rounding=ROUND_DOWN)
    except InvalidOperation as e:
        raise InvalidAmount(f"Amount out of range: {amount}") from e
    if not exact:
        raise InvalidAmount(f"{asset.value} supports at most {asset.decimals} decimal places")
    return value
