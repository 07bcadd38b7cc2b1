"""Services for blockchain interaction."""

from poolwallet.services.pool_balances import PoolBalance, ReconciliationReporter

__all__ = ["PoolBalance", "ReconciliationReporter"]
