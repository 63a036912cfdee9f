from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest
from eth_abi import encode

from songcurve.config import config_from_dict
from songcurve.errors import RPCError
from songcurve.indexer import BOUGHT_TOPIC0, SOLD_TOPIC0
from songcurve.utils import (
    DECIMALS_SELECTOR,
    GET_RESERVES_SELECTOR,
    TOKEN0_SELECTOR,
    TOKEN1_SELECTOR,
    TRANSFER_TOPIC0,
    function_selector,
    topic_address,
)

CURVE = "0x" + "c" * 40
PAYMENT = "0x" + "a" * 40
FEE = "0x" + "f" * 40
TOKEN = "0x" + "1" * 40
OTHER_TOKEN = "0x" + "3" * 40
TRADER = "0x" + "2" * 40
TRADER_B = "0x" + "4" * 40
PAIR = "0x" + "5" * 40
USDC = "0x" + "6" * 40

E18 = 10 ** 18

LATEST_BLOCK = 100000


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def transfer_log(
    contract: str,
    from_addr: str,
    to_addr: str,
    amount: int,
    tx_hash: str,
    block: int,
    log_index: int = 0,
) -> Dict[str, Any]:
    return {
        "address": contract,
        "topics": [TRANSFER_TOPIC0, topic_address(from_addr), topic_address(to_addr)],
        "data": "0x" + f"{amount:064x}",
        "transactionHash": tx_hash,
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "removed": False,
    }


def trade_log(
    kind: str,
    trader: str,
    token: str,
    first: int,
    second: int,
    log_index: int = 0,
    indexed: bool = True,
    emitter: str = CURVE,
    topic0: Optional[str] = None,
) -> Dict[str, Any]:
    if topic0 is None:
        topic0 = BOUGHT_TOPIC0 if kind == "buy" else SOLD_TOPIC0
    if indexed:
        topics = [topic0, topic_address(trader), topic_address(token)]
        data = encode(["uint256", "uint256"], [first, second])
    else:
        topics = [topic0]
        data = encode(["address", "address", "uint256", "uint256"], [trader, token, first, second])
    return {
        "address": emitter,
        "topics": topics,
        "data": "0x" + data.hex(),
        "logIndex": hex(log_index),
    }


def receipt(tx_hash: str, block: int, logs: List[Dict[str, Any]], status: int = 1) -> Dict[str, Any]:
    return {
        "transactionHash": tx_hash,
        "blockNumber": hex(block),
        "status": hex(status),
        "logs": logs,
    }


class FakeRPC:
    """In-memory stand-in for RPCClient."""

    def __init__(self, cfg):
        self.cfg = cfg
        self.latest = LATEST_BLOCK
        self.logs: List[Dict[str, Any]] = []
        self.blocks: Dict[int, int] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[Any, int] = {}
        self.supply: Optional[int] = None
        self.fail_logs = False
        self.historical_supported = True
        self.calls: Dict[str, int] = defaultdict(int)
        self.call_results: Dict[Tuple[str, str], str] = {}
        self.price_selector = function_selector(cfg.price_method)
        self.supply_selector = function_selector(cfg.supply_method)

    async def get_latest_block_number(self) -> int:
        self.calls["eth_blockNumber"] += 1
        return self.latest

    async def get_logs(self, from_block, to_block, address=None, topics=None):
        self.calls["eth_getLogs"] += 1
        if self.fail_logs:
            raise RPCError("eth_getLogs error: {'code': -32005, 'message': 'rate limited'}")
        return [lg for lg in self.logs if self._match(lg, from_block, to_block, address, topics)]

    @staticmethod
    def _match(lg, from_block, to_block, address, topics) -> bool:
        bn = int(lg["blockNumber"], 16)
        if bn < from_block or bn > to_block:
            return False
        if address and lg["address"].lower() != address.lower():
            return False
        for i, want in enumerate(topics or []):
            if want is None:
                continue
            have = lg["topics"][i].lower() if i < len(lg["topics"]) else None
            allowed = [w.lower() for w in want] if isinstance(want, list) else [want.lower()]
            if have not in allowed:
                return False
        return True

    async def get_block_by_number(self, block_number: int):
        self.calls["eth_getBlockByNumber"] += 1
        ts = self.blocks.get(block_number)
        if ts is None:
            return None
        return {"number": hex(block_number), "timestamp": hex(ts)}

    async def get_receipt(self, tx_hash: str):
        self.calls["eth_getTransactionReceipt"] += 1
        return self.receipts.get(tx_hash)

    async def eth_call(self, to: str, data: str, block="latest") -> str:
        self.calls["eth_call"] += 1
        fixed = self.call_results.get((to.lower(), data))
        if fixed is not None:
            return fixed
        selector = data[:10]
        if selector == self.price_selector:
            if block != "latest" and not self.historical_supported:
                raise RPCError("eth_call error: {'message': 'missing trie node'}")
            value = self.prices.get(block)
            if value is None:
                raise RPCError("eth_call error: {'message': 'execution reverted'}")
            return "0x" + f"{value:064x}"
        if selector == self.supply_selector:
            if self.supply is None:
                raise RPCError("eth_call error: {'message': 'execution reverted'}")
            return "0x" + f"{self.supply:064x}"
        raise RPCError(f"unexpected eth_call {selector}")


def abi_result(types, values) -> str:
    return "0x" + encode(types, values).hex()


def seed_usd_pair(
    rpc: FakeRPC,
    payment_reserve: int,
    quote_reserve: int,
    payment_is_token0: bool = True,
    quote_decimals: int = 6,
) -> None:
    """Answer token0/token1/decimals/getReserves for a payment/USDC pair."""
    token0, token1 = (PAYMENT, USDC) if payment_is_token0 else (USDC, PAYMENT)
    if payment_is_token0:
        reserves = (payment_reserve, quote_reserve)
    else:
        reserves = (quote_reserve, payment_reserve)
    rpc.call_results.update(
        {
            (PAIR, TOKEN0_SELECTOR): abi_result(["address"], [token0]),
            (PAIR, TOKEN1_SELECTOR): abi_result(["address"], [token1]),
            (USDC, DECIMALS_SELECTOR): abi_result(["uint8"], [quote_decimals]),
            (PAIR, GET_RESERVES_SELECTOR): abi_result(
                ["uint112", "uint112", "uint32"], [reserves[0], reserves[1], 1]
            ),
        }
    )


def make_config(**overrides):
    raw = {
        "HTTP_RPC_URL": "http://127.0.0.1:8545",
        "BONDING_CURVE_ADDR": CURVE,
        "PAYMENT_TOKEN_ADDR": PAYMENT,
        "FEE_ADDR": FEE,
        "SQLITE_PATH": ":memory:",
    }
    raw.update(overrides)
    return config_from_dict(raw)


@pytest.fixture
def cfg():
    return make_config()


@pytest.fixture
def rpc(cfg):
    return FakeRPC(cfg)
