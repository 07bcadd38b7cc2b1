"""Key vault for pool signing keys.

Keys are derived from the master seed, stored encrypted, and decrypted only
inside ``KeyVault.signing_key()`` after an integrity check against the stored
pool address.
"""

from poolwallet.signing.vault import KeyVault, PoolKeyInfo

__all__ = ["KeyVault", "PoolKeyInfo"]
