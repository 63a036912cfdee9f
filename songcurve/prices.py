import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, List, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from .config import AppConfig
from .errors import RPCError
from .rpc import BlockTag, RPCClient
from .utils import (
    DECIMALS_SELECTOR,
    GET_RESERVES_SELECTOR,
    TOKEN0_SELECTOR,
    TOKEN1_SELECTOR,
    encode_address_arg,
    function_selector,
    hex_to_bytes,
    raw_to_decimal,
)

logger = logging.getLogger(__name__)

PRICE_STALE_AFTER_SEC = 120


def decode_call(types: List[str], out: Optional[str]) -> Tuple[Any, ...]:
    if not out or out == "0x":
        raise RPCError("empty eth_call result")
    try:
        return decode(types, hex_to_bytes(out))
    except (DecodingError, ValueError) as e:
        raise RPCError(f"undecodable eth_call result {types}: {out[:20]}...") from e


def decode_uint256(out: Optional[str]) -> int:
    (value,) = decode_call(["uint256"], out[:66] if out else out)
    return value


class ContractPriceReader:
    """Reads per-token price and remaining supply from the bonding curve."""

    def __init__(self, cfg: AppConfig, rpc: RPCClient):
        self.cfg = cfg
        self.rpc = rpc
        self.price_selector = function_selector(cfg.price_method)
        self.supply_selector = function_selector(cfg.supply_method)

    async def read_price(self, token: str, block: BlockTag = "latest") -> Decimal:
        data = self.price_selector + encode_address_arg(token)
        out = await self.rpc.eth_call(self.cfg.bonding_curve_addr, data, block)
        return raw_to_decimal(decode_uint256(out), self.cfg.payment_decimals)

    async def read_curve_supply(self, token: str) -> Decimal:
        data = self.supply_selector + encode_address_arg(token)
        out = await self.rpc.eth_call(self.cfg.bonding_curve_addr, data)
        return raw_to_decimal(decode_uint256(out), self.cfg.token_decimals)


@dataclass(frozen=True)
class PairLayout:
    """Position of the payment token in the USD pair and the quote token's decimals."""

    payment_is_token0: bool
    quote_token: str
    quote_decimals: int

    def quote(self, reserve0: int, reserve1: int, payment_decimals: int) -> Optional[Decimal]:
        if self.payment_is_token0:
            payment_raw, quote_raw = reserve0, reserve1
        else:
            payment_raw, quote_raw = reserve1, reserve0
        if payment_raw == 0 or quote_raw == 0:
            return None
        payment = raw_to_decimal(payment_raw, payment_decimals)
        return raw_to_decimal(quote_raw, self.quote_decimals) / payment


class PaymentPriceService:
    """USD quote of the payment token from a V2-style pair's reserves.

    The pair layout is resolved on the first successful refresh and reused;
    reserves are re-read every ``refresh_sec``. A quote older than
    ``stale_after_sec`` is still served, flagged stale.
    """

    def __init__(
        self,
        cfg: AppConfig,
        rpc: RPCClient,
        refresh_sec: int = 30,
        stale_after_sec: float = PRICE_STALE_AFTER_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.rpc = rpc
        self.refresh_sec = refresh_sec
        self.stale_after_sec = stale_after_sec
        self.clock = clock
        self.layout: Optional[PairLayout] = None
        self._price: Optional[Decimal] = None
        self._quoted_at: float = 0.0
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.payment_usd_pair_addr)

    async def start(self) -> None:
        if not self.enabled:
            return
        try:
            await self.refresh_once()
        except RPCError as e:
            logger.warning("initial payment token quote failed: %s", e)
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(max(1, self.refresh_sec))
            try:
                await self.refresh_once()
            except RPCError as e:
                logger.warning("payment token quote refresh failed: %s", e)

    async def _read(self, to: str, selector: str, types: List[str]) -> Tuple[Any, ...]:
        return decode_call(types, await self.rpc.eth_call(to, selector))

    async def resolve_layout(self) -> Optional[PairLayout]:
        pair = self.cfg.payment_usd_pair_addr
        payment = self.cfg.payment_token_addr
        (token0,) = await self._read(pair, TOKEN0_SELECTOR, ["address"])
        (token1,) = await self._read(pair, TOKEN1_SELECTOR, ["address"])
        token0, token1 = token0.lower(), token1.lower()
        if payment not in (token0, token1):
            logger.warning("pair %s does not hold payment token %s", pair, payment)
            return None
        quote_token = token1 if token0 == payment else token0
        (quote_decimals,) = await self._read(quote_token, DECIMALS_SELECTOR, ["uint8"])
        return PairLayout(
            payment_is_token0=token0 == payment,
            quote_token=quote_token,
            quote_decimals=quote_decimals,
        )

    async def refresh_once(self) -> Optional[Decimal]:
        if not self.enabled:
            return None
        pair = self.cfg.payment_usd_pair_addr
        async with self._lock:
            if self.layout is None:
                self.layout = await self.resolve_layout()
                if self.layout is None:
                    return None
            reserve0, reserve1, _ = await self._read(
                pair, GET_RESERVES_SELECTOR, ["uint112", "uint112", "uint32"]
            )
            price = self.layout.quote(reserve0, reserve1, self.cfg.payment_decimals)
            if price is None:
                logger.info("pair %s has an empty reserve, keeping last quote", pair)
                return None
            self._price = price
            self._quoted_at = self.clock()
            return price

    async def get_price(self) -> Tuple[Optional[Decimal], bool]:
        async with self._lock:
            if self._price is None:
                return None, True
            return self._price, self.clock() - self._quoted_at > self.stale_after_sec
