"""Exception hierarchy for pool wallet operations.

Key vault faults (``NotInitialized``, ``KeyNotFound``, ``KeyIntegrityMismatch``)
block withdrawals for the affected asset until an operator intervenes.
``BroadcastFailure`` triggers a refund. ``ChainAPIUnavailable`` is retried on
the next polling cycle.
"""


class PoolWalletError(Exception):
    """Base class for all pool wallet errors."""

    pass


class ConfigurationError(PoolWalletError):
    """Required configuration is missing or malformed."""

    pass


# Key vault


class NotInitialized(PoolWalletError):
    """Pool keys have not been derived or loaded yet."""

    pass


class KeyNotFound(PoolWalletError):
    """No encrypted key material exists for the asset."""

    pass


class KeyIntegrityMismatch(PoolWalletError):
    """Decrypted key does not derive to the stored pool address."""

    def __init__(self, asset: str, expected: str, derived: str):
        self.asset = asset
        self.expected = expected
        self.derived = derived
        super().__init__(
            f"Pool key for {asset} derives {derived}, stored pool address is {expected}"
        )


# Ledger and withdrawals


class InsufficientBalance(PoolWalletError, ValueError):
    """User balance would go negative."""

    pass


class InsufficientPoolLiquidity(PoolWalletError):
    """Pool on-chain balance is too low or could not be read."""

    pass


class AmountTooSmall(PoolWalletError, ValueError):
    """Net amount after fees is not positive."""

    pass


class InvalidAmount(PoolWalletError, ValueError):
    """Amount is not positive or has more precision than the asset allows."""

    pass


class UnsupportedAsset(PoolWalletError, ValueError):
    """Asset symbol is not one the pool holds."""

    pass


class InvalidStateTransition(PoolWalletError):
    """Record is not in the state the requested action needs."""

    pass


class AlreadyProcessed(InvalidStateTransition):
    """Withdrawal request has already left the pending state."""

    pass


class AlreadyClaimed(InvalidStateTransition):
    """Deposit record has already been claimed or cancelled."""

    pass


class DepositNotFound(PoolWalletError):
    pass


class WithdrawalNotFound(PoolWalletError):
    pass


class MalformedDestinationAddress(PoolWalletError, ValueError):
    """Destination address failed validation."""

    pass


# Chain I/O


class BroadcastFailure(PoolWalletError):
    """Transaction could not be built, signed, or broadcast."""

    def __init__(self, message: str, tx_hash: str | None = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class ChainAPIUnavailable(PoolWalletError):
    """Chain RPC or explorer API request failed."""

    pass
