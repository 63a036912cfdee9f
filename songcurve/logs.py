import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import LogFetchError, RPCError
from .rpc import RPCClient
from .utils import (
    TRANSFER_TOPIC0,
    decode_topic_address,
    normalize_address,
    parse_hex_int,
    topic_address,
)

logger = logging.getLogger(__name__)

BLOCK_TS_CACHE_MAX = 5000
BLOCK_TS_CACHE_EVICT = 1000


@dataclass(frozen=True)
class TransferEvent:
    contract: str
    from_addr: str
    to_addr: str
    amount: int
    tx_hash: str
    block_number: int
    log_index: int = 0


def parse_transfer_log(lg: Dict) -> Optional[TransferEvent]:
    topics = lg.get("topics") or []
    if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC0:
        return None
    try:
        return TransferEvent(
            contract=normalize_address(lg["address"]),
            from_addr=decode_topic_address(topics[1]),
            to_addr=decode_topic_address(topics[2]),
            amount=parse_hex_int(lg.get("data")),
            tx_hash=str(lg["transactionHash"]).lower(),
            block_number=parse_hex_int(lg.get("blockNumber")),
            log_index=parse_hex_int(lg.get("logIndex")),
        )
    except (KeyError, ValueError, TypeError):
        return None


class LogFetcher:
    """Range-bounded Transfer log queries plus de-duplicated block timestamps.

    Never retries on its own: any RPC failure surfaces as LogFetchError and
    the caller decides whether to degrade.
    """

    def __init__(self, rpc: RPCClient, chunk_blocks: int = 10000, blocks_per_hour: int = 1800):
        self.rpc = rpc
        self.chunk_blocks = max(1, chunk_blocks)
        self.blocks_per_hour = blocks_per_hour
        self.block_ts_cache: Dict[int, int] = {}

    async def latest_block(self) -> int:
        try:
            return await self.rpc.get_latest_block_number()
        except RPCError as e:
            raise LogFetchError(f"latest block unavailable: {e}") from e

    def window_start_block(self, latest: int, window_hours: float) -> int:
        return max(0, latest - int(self.blocks_per_hour * window_hours))

    def _chunks(self, from_block: int, to_block: int) -> Iterable[Tuple[int, int]]:
        start = from_block
        while start <= to_block:
            end = min(start + self.chunk_blocks - 1, to_block)
            yield start, end
            start = end + 1

    async def fetch_transfers(
        self,
        contract: str,
        from_block: int,
        to_block: int,
        counterparty: Optional[str] = None,
    ) -> List[TransferEvent]:
        contract = normalize_address(contract)
        if counterparty:
            party = topic_address(counterparty)
            topic_sets = [[TRANSFER_TOPIC0, party], [TRANSFER_TOPIC0, None, party]]
        else:
            topic_sets = [[TRANSFER_TOPIC0]]

        seen: Dict[Tuple[str, int], TransferEvent] = {}
        for start, end in self._chunks(from_block, to_block):
            for topics in topic_sets:
                try:
                    logs = await self.rpc.get_logs(
                        from_block=start, to_block=end, address=contract, topics=topics
                    )
                except RPCError as e:
                    raise LogFetchError(
                        f"getLogs {contract} [{start},{end}] failed: {e}"
                    ) from e
                for lg in logs:
                    if lg.get("removed"):
                        continue
                    ev = parse_transfer_log(lg)
                    if ev is None or ev.contract != contract:
                        continue
                    seen.setdefault((ev.tx_hash, ev.log_index), ev)

        return sorted(seen.values(), key=lambda e: (e.block_number, e.log_index))

    async def block_timestamp(self, block_number: int) -> int:
        cached = self.block_ts_cache.get(block_number)
        if cached is not None:
            return cached
        try:
            block = await self.rpc.get_block_by_number(block_number)
        except RPCError as e:
            raise LogFetchError(f"block {block_number} unavailable: {e}") from e
        if not block:
            raise LogFetchError(f"block {block_number} not found")
        ts = parse_hex_int(block["timestamp"])
        self.block_ts_cache[block_number] = ts
        if len(self.block_ts_cache) > BLOCK_TS_CACHE_MAX:
            oldest = sorted(self.block_ts_cache.keys())[:BLOCK_TS_CACHE_EVICT]
            for b in oldest:
                self.block_ts_cache.pop(b, None)
        return ts

    async def block_timestamps(self, block_numbers: Iterable[int]) -> Dict[int, int]:
        unique = sorted(set(block_numbers))
        # in-flight requests are capped by the RPC client's semaphore
        results = await asyncio.gather(*(self.block_timestamp(b) for b in unique))
        return dict(zip(unique, results))
