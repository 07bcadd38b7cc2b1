#!/usr/bin/env python3
"""Generate a fresh wallet encryption key and master seed phrase.

Usage:
    python scripts/generate_keys.py

Prints values for WALLET_ENCRYPTION_KEY and WALLET_SEED_PHRASE. Store them
in a secret manager; anyone holding both controls the pool funds.
"""

from bip_utils import Bip39MnemonicGenerator, Bip39WordsNum

from poolwallet.crypto import generate_encryption_key


def main():
    mnemonic = Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_24)

    print("# Add to .env (never commit these)")
    print(f"WALLET_ENCRYPTION_KEY={generate_encryption_key()}")
    print(f'WALLET_SEED_PHRASE="{mnemonic.ToStr()}"')


if __name__ == "__main__":
    main()
