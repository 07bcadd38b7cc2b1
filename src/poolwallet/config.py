"""Application configuration using pydantic-settings.

All secrets (seed phrase, encryption key) come from the environment or a
``.env`` file. The encryption key is validated at load time so a wrong-length
key stops the process instead of being padded into something unintended.
"""

import string
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from poolwallet.assets import Asset

ENCRYPTION_KEY_BYTES = 32

DEFAULT_USDT_CONTRACT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


def parse_encryption_key(value: str) -> bytes:
    """Turn a configured encryption key into exactly 32 raw bytes.

    Accepts either 64 hex characters or a 32-character string.

    Raises:
        ValueError: If the key has any other length
    """
    if len(value) == ENCRYPTION_KEY_BYTES * 2 and all(c in string.hexdigits for c in value):
        return bytes.fromhex(value)

    raw = value.encode("utf-8")
    if len(raw) == ENCRYPTION_KEY_BYTES:
        return raw

    raise ValueError(
        f"WALLET_ENCRYPTION_KEY must be {ENCRYPTION_KEY_BYTES} bytes "
        f"(64 hex chars or a {ENCRYPTION_KEY_BYTES}-char string), got {len(raw)} bytes"
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/poolwallet.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    testnet: bool = Field(default=False, description="Derive testnet keys and addresses")

    # ======================
    # Custody
    # ======================
    wallet_seed_phrase: Optional[str] = Field(
        default=None, description="BIP39 mnemonic used as the master seed"
    )
    wallet_encryption_key: Optional[str] = Field(
        default=None, description="32-byte key for encrypting pool keys at rest"
    )

    # ======================
    # Chain endpoints
    # ======================
    eth_rpc_url: str = Field(
        default="https://eth.llamarpc.com", description="Ethereum JSON-RPC URL"
    )
    btc_api_url: str = Field(
        default="https://blockstream.info/api", description="Esplora-compatible BTC API"
    )
    usdt_contract_address: str = Field(
        default=DEFAULT_USDT_CONTRACT, description="ERC-20 USDT contract address"
    )
    http_timeout: float = Field(default=30.0, description="Chain API request timeout (seconds)")

    # ======================
    # Deposit monitor
    # ======================
    eth_poll_interval: int = Field(default=60, description="EVM scan interval (seconds)")
    btc_poll_interval: int = Field(default=120, description="BTC scan interval (seconds)")
    eth_scan_window_blocks: int = Field(
        default=1000, description="Trailing block window scanned on the EVM chain"
    )
    btc_min_confirmations: int = Field(
        default=2, description="Confirmations before a BTC deposit is recorded"
    )
    eth_min_confirmations: int = Field(
        default=12, description="Confirmations before an ETH deposit is recorded"
    )
    usdt_min_confirmations: int = Field(
        default=12, description="Confirmations before a USDT deposit is recorded"
    )
    deposit_intent_ttl_hours: float = Field(
        default=24.0, description="How long a deposit intent can auto-claim a deposit"
    )

    # ======================
    # Withdrawals
    # ======================
    fee_rate_btc: Decimal = Field(default=Decimal("0.0005"), description="BTC withdrawal fee rate")
    fee_rate_eth: Decimal = Field(default=Decimal("0.005"), description="ETH withdrawal fee rate")
    fee_rate_usdt: Decimal = Field(default=Decimal("0.01"), description="USDT withdrawal fee rate")
    gas_safety_margin: Decimal = Field(
        default=Decimal("0.20"), description="Multiplier added on top of EVM gas estimates"
    )
    broadcast_timeout: float = Field(
        default=60.0, description="Seconds before an unanswered broadcast is treated as failed"
    )
    withdrawal_stall_seconds: float = Field(
        default=300.0, description="Age at which an approved, unsettled withdrawal is recovered"
    )
    withdrawal_check_interval: int = Field(
        default=300, description="Interval of the stalled and late-confirmation withdrawal checks"
    )

    # ======================
    # API / Admin
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Notifications
    # ======================
    telegram_bot_token: str = Field(default="", description="Telegram bot token for admin alerts")
    admin_chat_ids: str = Field(
        default="", description="Comma-separated Telegram chat IDs that receive admin alerts"
    )

    @field_validator("wallet_encryption_key")
    @classmethod
    def check_encryption_key_length(cls, value: Optional[str]) -> Optional[str]:
        if value:
            parse_encryption_key(value)
        return value

    @property
    def encryption_key_bytes(self) -> Optional[bytes]:
        """Raw 32-byte encryption key, or None if not configured."""
        if not self.wallet_encryption_key:
            return None
        return parse_encryption_key(self.wallet_encryption_key)

    @property
    def admin_chat_id_list(self) -> list[int]:
        """Parse admin chat IDs into a list of integers."""
        if not self.admin_chat_ids:
            return []
        return [int(cid.strip()) for cid in self.admin_chat_ids.split(",") if cid.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_wallet(self) -> bool:
        """Check if wallet seed phrase is configured."""
        return bool(self.wallet_seed_phrase and len(self.wallet_seed_phrase.split()) >= 12)

    def fee_rate(self, asset: Asset) -> Decimal:
        """Withdrawal fee rate for an asset."""
        rates = {
            Asset.BTC: self.fee_rate_btc,
            Asset.ETH: self.fee_rate_eth,
            Asset.USDT: self.fee_rate_usdt,
        }
        return rates[asset]

    def min_confirmations(self, asset: Asset) -> int:
        """Confirmations a deposit of ``asset`` needs before it is recorded."""
        required = {
            Asset.BTC: self.btc_min_confirmations,
            Asset.ETH: self.eth_min_confirmations,
            Asset.USDT: self.usdt_min_confirmations,
        }
        return required[asset]

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "testnet": self.testnet,
            "database_url": self._redact_url(self.database_url),
            "wallet_configured": self.has_wallet,
            "encryption_key": "***" if self.wallet_encryption_key else "(not set)",
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "chains": {
                "ETH": {
                    "rpc": self._redact_url(self.eth_rpc_url),
                    "poll": self.eth_poll_interval,
                    "confirmations": self.eth_min_confirmations,
                },
                "BTC": {
                    "api": self.btc_api_url,
                    "poll": self.btc_poll_interval,
                    "confirmations": self.btc_min_confirmations,
                },
                "USDT": {"contract": self.usdt_contract_address},
            },
            "fees": {asset.value: str(self.fee_rate(asset)) for asset in Asset},
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
