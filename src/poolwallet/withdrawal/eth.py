"""Ethereum withdrawals: native ETH and ERC20 tokens (USDT).

Transactions are legacy (``gasPrice``) transactions signed locally with
eth_account and sent via ``eth_sendRawTransaction``:

- nonce: ``eth_getTransactionCount(pool, "pending")``
- gas: ``eth_estimateGas`` plus a safety margin
- ERC20: ``transfer(address,uint256)`` call data to the token contract

Nonces are only safe because the caller holds the per-asset signing lock
for the whole build-and-broadcast sequence.
"""

import logging
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_utils import to_checksum_address

from poolwallet.assets import Asset
from poolwallet.chains import TRANSFER_SIGNATURE, JsonRpcClient, hex_to_int, pad_address
from poolwallet.errors import BroadcastFailure, ChainAPIUnavailable
from poolwallet.hdwallet.eth import normalize_evm_address
from poolwallet.withdrawal.base import ChainBroadcaster, SignedTransaction, TxStatus

logger = logging.getLogger(__name__)

DEFAULT_GAS_MARGIN = Decimal("0.20")


def encode_transfer(destination: str, amount: int) -> str:
    """ERC20 ``transfer(destination, amount)`` call data."""
    return f"{TRANSFER_SIGNATURE}{pad_address(destination)}{amount:064x}"


class EVMBroadcaster(ChainBroadcaster):
    """Withdrawal broadcaster for ETH, or an ERC20 token when ``token_contract`` is set."""

    def __init__(
        self,
        asset: Asset,
        client: JsonRpcClient,
        token_contract: Optional[str] = None,
        gas_margin: Decimal = DEFAULT_GAS_MARGIN,
    ):
        super().__init__(asset)
        if asset.is_token and not token_contract:
            raise ValueError(f"{asset.value} needs a token contract address")
        self.client = client
        self.token_contract = token_contract
        self.gas_margin = Decimal(str(gas_margin))

    def normalize_address(self, address: str) -> str:
        return normalize_evm_address(address)

    def _transfer_fields(self, destination: str, amount: Decimal) -> tuple[str, int, str]:
        """(to, value in wei, data) for the transfer."""
        base_units = self.asset.to_base_units(amount)
        if self.token_contract:
            return to_checksum_address(self.token_contract), 0, encode_transfer(destination, base_units)
        return destination, base_units, "0x"

    def apply_margin(self, estimate: int) -> int:
        return int(Decimal(estimate) * (1 + self.gas_margin))

    async def build_and_sign(
        self,
        private_key: str,
        pool_address: str,
        destination: str,
        amount: Decimal,
    ) -> SignedTransaction:
        destination = self.normalize_address(destination)
        to, value, data = self._transfer_fields(destination, amount)

        try:
            nonce = await self.client.get_nonce(pool_address)
            gas_price = await self.client.gas_price()
            chain_id = await self.client.chain_id()
            estimate = await self.client.estimate_gas(
                {"from": pool_address, "to": to, "value": hex(value), "data": data}
            )
            pool_wei = await self.client.get_balance(pool_address, "pending")
        except ChainAPIUnavailable as e:
            raise BroadcastFailure(f"Could not prepare {self.asset.value} transaction: {e}") from e

        gas = self.apply_margin(estimate)
        required = value + gas * gas_price
        if pool_wei < required:
            raise BroadcastFailure(
                f"insufficient pool gas: have {Asset.ETH.from_base_units(pool_wei)} ETH, "
                f"need {Asset.ETH.from_base_units(required)} ETH"
            )

        tx = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": gas,
            "to": to,
            "value": value,
            "data": data,
            "chainId": chain_id,
        }
        signed = Account.sign_transaction(tx, private_key)

        tx_hash = "0x" + bytes(signed.hash).hex()
        logger.info(
            f"Signed {self.asset.value} transfer of {amount} to {destination} "
            f"(nonce {nonce}, gas {gas} @ {gas_price} wei): {tx_hash}"
        )
        return SignedTransaction(self.asset, tx_hash, "0x" + bytes(signed.raw_transaction).hex())

    async def broadcast(self, signed: SignedTransaction) -> str:
        try:
            result = await self.client.send_raw_transaction(signed.raw)
        except ChainAPIUnavailable as e:
            raise BroadcastFailure(str(e), tx_hash=signed.tx_hash) from e

        tx_hash = result or signed.tx_hash
        logger.info(f"{self.asset.value} withdrawal broadcast: {tx_hash}")
        return tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        receipt = await self.client.get_transaction_receipt(tx_hash)
        if not receipt:
            return TxStatus.PENDING
        if hex_to_int(receipt.get("status")) == 1:
            return TxStatus.CONFIRMED
        return TxStatus.FAILED
