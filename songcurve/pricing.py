import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from .config import AppConfig
from .errors import LogFetchError, NoTradesInWindow, RPCError
from .logs import LogFetcher
from .prices import ContractPriceReader, PaymentPriceService
from .trades import (
    PricePoint,
    PriceSeries,
    build_price_series,
    correlate_trades,
    curve_progression_series,
    flat_line_series,
)
from .utils import decimal_to_str, normalize_address

logger = logging.getLogger(__name__)

HISTORICAL_READ = "historical_read"
TRADE_RECONSTRUCTION = "trade_reconstruction"
FLAT_LINE = "flat_line"
EMPTY = "empty"
CURVE_PROGRESSION = "curve_progression"
UNAVAILABLE = "unavailable"


@dataclass
class PriceAnalytics:
    token: str
    window_hours: float
    state: str
    series: PriceSeries
    current_price: Optional[Decimal] = None
    volume_usd: Optional[Decimal] = None
    computed_at: int = 0

    @property
    def percent_change(self) -> Decimal:
        return self.series.percent_change

    @property
    def volume(self) -> Decimal:
        return self.series.volume

    def to_dict(self) -> Dict[str, object]:
        return {
            "token": self.token,
            "windowHours": self.window_hours,
            "state": self.state,
            "percentChange": float(self.percent_change),
            "volume": decimal_to_str(self.volume, 18),
            "volumeUsd": decimal_to_str(self.volume_usd, 6),
            "currentPrice": decimal_to_str(self.current_price, 18),
            "series": [p.to_dict() for p in self.series.points],
            "computedAt": self.computed_at,
        }


@dataclass
class CacheEntry:
    token_key: str
    payload: PriceAnalytics
    written_at: float


class ResultCache:
    """TTL cache of analytics results keyed by lower-cased token address.

    Each token may hold one entry per window length; ``invalidate`` drops
    every window of a token. Last write wins.
    """

    def __init__(self, ttl_sec: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self.clock = clock
        self._entries: Dict[Tuple[str, float], CacheEntry] = {}

    @staticmethod
    def key(token: str) -> str:
        return token.strip().lower()

    def get(self, token: str, window_hours: float = 24) -> Optional[PriceAnalytics]:
        k = (self.key(token), float(window_hours))
        entry = self._entries.get(k)
        if entry is None:
            return None
        if self.clock() - entry.written_at >= self.ttl_sec:
            self._entries.pop(k, None)
            return None
        return entry.payload

    def put(self, token: str, payload: PriceAnalytics, window_hours: float = 24) -> None:
        token_key = self.key(token)
        self._entries[(token_key, float(window_hours))] = CacheEntry(
            token_key=token_key, payload=payload, written_at=self.clock()
        )

    def invalidate(self, token: str) -> int:
        token_key = self.key(token)
        stale = [k for k in self._entries if k[0] == token_key]
        for k in stale:
            self._entries.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class PriceAnalyticsService:
    """Percent change, volume and display series for a song token.

    Each call walks the fallback chain once: a direct historical price read,
    then reconstruction from Transfer logs, then a flat line at the current
    price, and finally an empty series for tokens with neither. Log fetch
    failures end in ``unavailable`` rather than a made-up price.
    """

    def __init__(
        self,
        cfg: AppConfig,
        fetcher: LogFetcher,
        price_reader: ContractPriceReader,
        payment_prices: Optional[PaymentPriceService] = None,
        cache: Optional[ResultCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.fetcher = fetcher
        self.price_reader = price_reader
        self.payment_prices = payment_prices
        self.cache = cache if cache is not None else ResultCache(cfg.cache_ttl_sec)
        self.clock = clock
        self.stats: Dict[str, int] = {
            "requests": 0,
            "cache_hits": 0,
            HISTORICAL_READ: 0,
            TRADE_RECONSTRUCTION: 0,
            FLAT_LINE: 0,
            EMPTY: 0,
            CURVE_PROGRESSION: 0,
            UNAVAILABLE: 0,
        }

    async def get_price_analytics(
        self, token: str, window_hours: float = 24, bypass_cache: bool = False
    ) -> PriceAnalytics:
        token = normalize_address(token)
        if window_hours <= 0:
            raise ValueError("window_hours must be > 0")
        self.stats["requests"] += 1

        if not bypass_cache:
            cached = self.cache.get(token, window_hours)
            if cached is not None:
                self.stats["cache_hits"] += 1
                return cached

        result = await self.compute(token, window_hours)
        self.stats[result.state] += 1
        if not bypass_cache and result.state != UNAVAILABLE:
            self.cache.put(token, result, window_hours)
        return result

    def invalidate(self, token: str) -> int:
        return self.cache.invalidate(normalize_address(token))

    async def _usd_multiplier(self) -> Tuple[Decimal, bool]:
        if self.payment_prices is None or not self.payment_prices.enabled:
            return Decimal(1), False
        price, is_stale = await self.payment_prices.get_price()
        if price is None:
            return Decimal(1), False
        if is_stale:
            logger.info("payment token USD quote is stale")
        return price, True

    async def _current_price(self, token: str) -> Optional[Decimal]:
        try:
            return await self.price_reader.read_price(token)
        except RPCError as e:
            logger.info("current price unavailable for %s: %s", token, e)
            return None

    async def compute(self, token: str, window_hours: float) -> PriceAnalytics:
        now = int(self.clock())
        multiplier, has_usd = await self._usd_multiplier()

        def result(state: str, series: PriceSeries, current: Optional[Decimal]) -> PriceAnalytics:
            return PriceAnalytics(
                token=token,
                window_hours=window_hours,
                state=state,
                series=series,
                current_price=current,
                volume_usd=series.volume * multiplier if has_usd else None,
                computed_at=now,
            )

        if window_hours >= self.cfg.all_time_window_hours:
            series = await self._curve_progression(token, now, multiplier)
            if series is not None:
                return result(CURVE_PROGRESSION, series, None)

        current = await self._current_price(token)

        if self.cfg.historical_read_enabled and current is not None:
            series = await self._historical_read(token, window_hours, current, now, multiplier)
            if series is not None:
                return result(HISTORICAL_READ, series, current)

        try:
            series = await self._trade_reconstruction(token, window_hours, current, now, multiplier)
            return result(TRADE_RECONSTRUCTION, series, current)
        except NoTradesInWindow:
            pass
        except LogFetchError as e:
            logger.warning("trade history unavailable for %s: %s", token, e)
            return result(UNAVAILABLE, PriceSeries(), current)

        if current is not None and current > 0:
            logger.info("no trades for %s in %sh, using flat line", token, window_hours)
            series = flat_line_series(current * multiplier, now, self.cfg.max_series_points)
            return result(FLAT_LINE, series, current)
        return result(EMPTY, PriceSeries(), current)

    async def _historical_read(
        self,
        token: str,
        window_hours: float,
        current: Decimal,
        now: int,
        multiplier: Decimal,
    ) -> Optional[PriceSeries]:
        try:
            latest = await self.fetcher.latest_block()
            past_block = self.fetcher.window_start_block(latest, window_hours)
            past = await self.price_reader.read_price(token, past_block)
        except (RPCError, LogFetchError) as e:
            logger.info("historical price read failed for %s: %s", token, e)
            return None
        if past <= 0:
            return None
        points = [
            PricePoint(now - int(window_hours * 3600), past * multiplier),
            PricePoint(now, current * multiplier),
        ]
        # volume is not observable through a price read
        return PriceSeries(
            points=points,
            percent_change=(current - past) / past * 100,
            volume=Decimal(0),
        )

    async def _trade_reconstruction(
        self,
        token: str,
        window_hours: float,
        current: Optional[Decimal],
        now: int,
        multiplier: Decimal,
    ) -> PriceSeries:
        cfg = self.cfg
        latest = await self.fetcher.latest_block()
        from_block = self.fetcher.window_start_block(latest, window_hours)
        token_transfers = await self.fetcher.fetch_transfers(
            token, from_block, latest, counterparty=cfg.bonding_curve_addr
        )
        if not token_transfers:
            raise NoTradesInWindow(token)
        payment_transfers = await self.fetcher.fetch_transfers(
            cfg.payment_token_addr, from_block, latest, counterparty=cfg.bonding_curve_addr
        )
        timestamps = await self.fetcher.block_timestamps(e.block_number for e in token_transfers)
        trades = correlate_trades(
            token_transfers,
            payment_transfers,
            cfg.bonding_curve_addr,
            cfg.fee_addr,
            timestamps,
            token_decimals=cfg.token_decimals,
            payment_decimals=cfg.payment_decimals,
        )
        if not trades:
            raise NoTradesInWindow(token)
        current_point = PricePoint(now, current) if current is not None and current > 0 else None
        return build_price_series(
            trades, current_point, max_points=cfg.max_series_points, multiplier=multiplier
        )

    async def _curve_progression(
        self, token: str, now: int, multiplier: Decimal
    ) -> Optional[PriceSeries]:
        try:
            remaining = await self.price_reader.read_curve_supply(token)
        except RPCError as e:
            logger.info("curve supply unavailable for %s: %s", token, e)
            return None
        cfg = self.cfg
        return curve_progression_series(
            remaining,
            cfg.curve_total_supply,
            cfg.curve_initial_price,
            cfg.curve_price_increment,
            now,
            num_points=cfg.max_series_points,
            multiplier=multiplier,
        )
