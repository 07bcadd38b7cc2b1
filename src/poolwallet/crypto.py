"""Cryptographic utilities for pool key storage.

Pool private keys are encrypted with AES-256-GCM. Every encryption draws a
fresh random 96-bit IV which is stored next to the ciphertext; decryption
needs both. The asset symbol is bound in as associated data so ciphertexts
cannot be swapped between assets.
"""

import logging
import os
import secrets
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from poolwallet.config import ENCRYPTION_KEY_BYTES, Settings, get_settings
from poolwallet.errors import ConfigurationError

logger = logging.getLogger(__name__)

IV_BYTES = 12


def generate_encryption_key() -> str:
    """Generate a new 32-byte encryption key.

    Returns:
        64 hex characters, suitable for WALLET_ENCRYPTION_KEY
    """
    return secrets.token_hex(ENCRYPTION_KEY_BYTES)


class KeyEncryptor:
    """Encrypts and decrypts key material.

    Usage:
        encryptor = KeyEncryptor(key_bytes)
        iv, ciphertext = encryptor.encrypt(private_key_hex, associated_data=b"ETH")
        private_key_hex = encryptor.decrypt(iv, ciphertext, associated_data=b"ETH")
    """

    def __init__(self, key: bytes):
        """Initialize with a raw 32-byte key.

        Raises:
            ConfigurationError: If the key is not exactly 32 bytes
        """
        if len(key) != ENCRYPTION_KEY_BYTES:
            raise ConfigurationError(
                f"Encryption key must be exactly {ENCRYPTION_KEY_BYTES} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str, associated_data: Optional[bytes] = None) -> tuple[str, str]:
        """Encrypt a secret string.

        Returns:
            Tuple of (iv hex, ciphertext hex)
        """
        iv = os.urandom(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), associated_data)
        return iv.hex(), ciphertext.hex()

    def decrypt(self, iv: str, ciphertext: str, associated_data: Optional[bytes] = None) -> str:
        """Decrypt a secret string.

        Raises:
            cryptography.exceptions.InvalidTag: Wrong key, wrong associated data,
                or tampered ciphertext
        """
        plaintext = self._aead.decrypt(bytes.fromhex(iv), bytes.fromhex(ciphertext), associated_data)
        return plaintext.decode("utf-8")

    def rotate(
        self,
        new_key: bytes,
        iv: str,
        ciphertext: str,
        associated_data: Optional[bytes] = None,
    ) -> tuple[str, str]:
        """Re-encrypt material under a new key.

        Returns:
            Tuple of (new iv hex, new ciphertext hex)
        """
        plaintext = self.decrypt(iv, ciphertext, associated_data)
        return KeyEncryptor(new_key).encrypt(plaintext, associated_data)


def get_encryptor(settings: Optional[Settings] = None) -> KeyEncryptor:
    """Build an encryptor from WALLET_ENCRYPTION_KEY.

    Raises:
        ConfigurationError: If the key is not configured
    """
    settings = settings or get_settings()
    key = settings.encryption_key_bytes
    if key is None:
        raise ConfigurationError("WALLET_ENCRYPTION_KEY is not set")
    return KeyEncryptor(key)
