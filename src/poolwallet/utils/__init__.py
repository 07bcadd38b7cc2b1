"""Utility modules for poolwallet."""

from poolwallet.utils.locks import KeyedLock, LockTimeoutError

__all__ = ["KeyedLock", "LockTimeoutError"]
