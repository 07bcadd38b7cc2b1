"""HTTP clients for chain access.

- ``JsonRpcClient``: Ethereum JSON-RPC (balances, blocks, logs, gas, broadcast)
- ``EsploraClient``: Blockstream/Esplora REST API for Bitcoin

Both raise ``ChainAPIUnavailable`` for transport errors, non-2xx responses and
JSON-RPC error objects, so callers can tell "no data" from "could not ask".
"""

import logging
from typing import Any, Optional

import httpx

from poolwallet.errors import ChainAPIUnavailable

logger = logging.getLogger(__name__)

# ERC20 balanceOf(address) method signature
BALANCE_OF_SIGNATURE = "0x70a08231"

# ERC20 transfer(address,uint256) method signature
TRANSFER_SIGNATURE = "0xa9059cbb"

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def pad_address(address: str) -> str:
    """Left-pad a 20-byte address to a 32-byte hex word (no 0x)."""
    return address.lower().replace("0x", "").zfill(64)


def topic_to_address(topic: str) -> str:
    """Extract the address from a 32-byte indexed log topic."""
    return "0x" + topic[-40:].lower()


def hex_to_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


class JsonRpcClient:
    """Minimal async Ethereum JSON-RPC client."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client = client
        self._request_id = 0
        self._chain_id: Optional[int] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def call(self, method: str, params: list) -> Any:
        """Perform a JSON-RPC call and return its ``result``.

        Raises:
            ChainAPIUnavailable: On transport failure or an RPC error object
        """
        client = await self._get_client()
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": self._request_id}

        try:
            response = await client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainAPIUnavailable(f"RPC {method} failed: {e}") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise ChainAPIUnavailable(f"RPC {method} error: {message}")

        return data.get("result")

    async def block_number(self) -> int:
        return hex_to_int(await self.call("eth_blockNumber", []))

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = hex_to_int(await self.call("eth_chainId", []))
        return self._chain_id

    async def get_block(self, number: int, full_transactions: bool = True) -> Optional[dict]:
        return await self.call("eth_getBlockByNumber", [hex(number), full_transactions])

    async def get_logs(self, filter_params: dict) -> list[dict]:
        return await self.call("eth_getLogs", [filter_params]) or []

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_balance(self, address: str, block: str = "latest") -> int:
        """Native balance in wei."""
        return hex_to_int(await self.call("eth_getBalance", [address, block]))

    async def get_token_balance(self, contract: str, address: str, block: str = "latest") -> int:
        """ERC20 balance in token base units."""
        data = f"{BALANCE_OF_SIGNATURE}{pad_address(address)}"
        return hex_to_int(await self.call("eth_call", [{"to": contract, "data": data}, block]))

    async def gas_price(self) -> int:
        return hex_to_int(await self.call("eth_gasPrice", []))

    async def get_nonce(self, address: str) -> int:
        return hex_to_int(await self.call("eth_getTransactionCount", [address, "pending"]))

    async def estimate_gas(self, tx: dict) -> int:
        return hex_to_int(await self.call("eth_estimateGas", [tx]))

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self.call("eth_sendRawTransaction", [raw_tx])

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


class EsploraClient:
    """Bitcoin client for the Blockstream/Esplora REST API.

    Docs: https://github.com/Blockstream/esplora/blob/master/API.md
    """

    MAINNET_URL = "https://blockstream.info/api"
    TESTNET_URL = "https://blockstream.info/testnet/api"

    def __init__(
        self,
        base_url: str = MAINNET_URL,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _get(self, path: str) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChainAPIUnavailable(f"GET {path} failed: {e}") from e
        return response

    async def get_json(self, path: str) -> Any:
        response = await self._get(path)
        try:
            return response.json()
        except ValueError as e:
            raise ChainAPIUnavailable(f"GET {path} returned invalid JSON") from e

    async def get_address_utxos(self, address: str) -> list[dict]:
        return await self.get_json(f"/address/{address}/utxo")

    async def get_transaction(self, txid: str) -> dict:
        return await self.get_json(f"/tx/{txid}")

    async def get_transaction_status(self, txid: str) -> dict:
        return await self.get_json(f"/tx/{txid}/status")

    async def get_address_stats(self, address: str) -> dict:
        return await self.get_json(f"/address/{address}")

    async def get_tip_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        return int(response.text)

    async def broadcast(self, raw_tx_hex: str) -> str:
        """Broadcast a raw transaction, returning its txid."""
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}/tx", content=raw_tx_hex)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChainAPIUnavailable(f"Broadcast failed: {e}") from e
        return response.text.strip()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
