"""Withdrawal engine and chain broadcasters.

This module handles reserving, approving, signing and broadcasting
withdrawal transactions from the pool addresses.
"""

from poolwallet.withdrawal.base import ChainBroadcaster, SignedTransaction, TxStatus
from poolwallet.withdrawal.btc import BTCBroadcaster, TransactionBuilder
from poolwallet.withdrawal.engine import WithdrawalEngine
from poolwallet.withdrawal.eth import EVMBroadcaster
from poolwallet.withdrawal.factory import create_broadcasters

__all__ = [
    "BTCBroadcaster",
    "ChainBroadcaster",
    "EVMBroadcaster",
    "SignedTransaction",
    "TransactionBuilder",
    "TxStatus",
    "WithdrawalEngine",
    "create_broadcasters",
]
