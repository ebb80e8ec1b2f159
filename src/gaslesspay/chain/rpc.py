"""Minimal async JSON-RPC client for EVM nodes and ERC-4337 bundlers."""

import itertools
import logging
from typing import Any, Optional

import httpx

from gaslesspay.errors import GaslessPayError

logger = logging.getLogger(__name__)


class RpcError(GaslessPayError):
    """Transport failure or error object returned by a JSON-RPC endpoint."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed: {message}")


class JsonRpcClient:
    """JSON-RPC 2.0 over HTTP.

    Pass ``client`` to share a connection pool (or a mock transport in tests);
    otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._ids = itertools.count(1)

    async def _post(self, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Invoke a method and return its ``result``.

        Raises:
            RpcError: On HTTP failure or a JSON-RPC error object
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            raise RpcError(method, f"transport error: {e}")

        if response.status_code != 200:
            raise RpcError(method, f"HTTP {response.status_code}: {response.text[:200]}")

        data = response.json()
        if "error" in data and data["error"]:
            error = data["error"]
            raise RpcError(method, error.get("message", str(error)), error.get("code"))

        return data.get("result")

    async def eth_call(self, to: str, data: str) -> str:
        """Execute a read-only contract call at the latest block."""
        return await self.call("eth_call", [{"to": to, "data": data}, "latest"])

    async def chain_id(self) -> int:
        return int(await self.call("eth_chainId"), 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Get a mined transaction's receipt, or None if not yet included."""
        return await self.call("eth_getTransactionReceipt", [tx_hash])
