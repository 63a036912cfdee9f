import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

import aiohttp

from .errors import RPCError

logger = logging.getLogger(__name__)

BlockTag = Union[int, str]


def block_param(block: BlockTag) -> str:
    if isinstance(block, int):
        return hex(block)
    return block


class RPCClient:
    """Minimal async JSON-RPC client for an EVM node.

    Transport failures are retried with exponential backoff; node-side
    errors (a JSON ``error`` member, e.g. an execution revert) are raised
    immediately. Concurrent calls are capped by ``max_in_flight``.
    """

    def __init__(
        self,
        url: str,
        max_retries: int = 3,
        timeout_sec: int = 12,
        max_in_flight: int = 3,
    ):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._semaphore = asyncio.Semaphore(max(1, max_in_flight))
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._semaphore:
                    async with self._session.post(self.url, json=payload) as resp:
                        data = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                if attempt >= self.max_retries:
                    raise RPCError(f"{method} failed: {type(e).__name__}: {e}") from e
                logger.debug("%s attempt %d failed: %s", method, attempt, e)
                await asyncio.sleep(backoff)
                backoff *= 2
                continue
            if not isinstance(data, dict):
                raise RPCError(f"{method} returned malformed response")
            if "error" in data:
                raise RPCError(f"{method} error: {data['error']}")
            return data.get("result")
        raise RPCError(f"{method} failed")

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_by_number(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def eth_call(self, to: str, data: str, block: BlockTag = "latest") -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, block_param(block)])
        return result
