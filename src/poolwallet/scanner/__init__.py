"""Deposit monitor and chain scanners."""

from poolwallet.scanner.base import DepositScanner, TransactionInfo
from poolwallet.scanner.blockstream import BlockstreamScanner
from poolwallet.scanner.evm import EVMScanner
from poolwallet.scanner.factory import create_scan_targets
from poolwallet.scanner.monitor import DepositMonitor, ScanTarget

__all__ = [
    "BlockstreamScanner",
    "DepositMonitor",
    "DepositScanner",
    "EVMScanner",
    "ScanTarget",
    "TransactionInfo",
    "create_scan_targets",
]
