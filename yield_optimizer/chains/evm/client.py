"""EVM JSON-RPC client — balances over ``eth_getBalance`` / ``eth_call``."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig
from . import abi

logger = logging.getLogger(__name__)


class EvmClient:
    """ChainReader for one EVM chain.

    Endpoints are tried in order starting from the last one that answered;
    a JSON-RPC ``error`` member counts as a failed endpoint.
    """

    def __init__(self, config: ChainConfig) -> None:
        self.chain = config.key
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0
        self._request_id = 0

    def _endpoint_order(self) -> list[int]:
        n = len(self.endpoints)
        return [(self.current_rpc_index + step) % n for step in range(n)]

    async def _post(
        self, session: aiohttp.ClientSession, url: str, payload: dict[str, Any]
    ) -> Any:
        async with session.post(
            url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as response:
            body = await response.json()
        if "error" in body:
            raise RuntimeError(f"RPC Error: {body['error']}")
        return body.get("result")

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Call ``method`` on the first endpoint that answers."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        last_error: Exception | None = None
        async with aiohttp.ClientSession(connector=connector) as session:
            for rpc_index in self._endpoint_order():
                url = self.endpoints[rpc_index]
                try:
                    result = await self._post(session, url, payload)
                except Exception as e:
                    last_error = e
                    logger.warning("[%s] %s failed on %s: %s", self.chain, method, url, e)
                    continue
                if rpc_index != self.current_rpc_index:
                    logger.info("[%s] Switched to RPC endpoint: %s", self.chain, url)
                    self.current_rpc_index = rpc_index
                return result

        raise RuntimeError(f"All RPC endpoints failed. Last error: {last_error}")

    async def get_native_balance(self, address: str) -> int:
        """Raw native balance in the chain's smallest unit (wei)."""
        result = await self.rpc_call("eth_getBalance", [address, "latest"])
        return abi.decode_uint(result)

    async def get_token_balance(self, token_address: str, address: str) -> int:
        """Raw ERC-20 balance via ``balanceOf``."""
        result = await self.rpc_call(
            "eth_call",
            [{"to": token_address, "data": abi.encode_balance_of(address)}, "latest"],
        )
        return abi.decode_uint(result)
