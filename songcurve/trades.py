"""Trade correlation and price series construction.

Everything here is a pure function of its inputs: no RPC, no clock reads
beyond what callers pass in.
"""
import math
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .logs import TransferEvent
from .utils import decimal_to_str, normalize_address, raw_to_decimal

BUY = "buy"
SELL = "sell"
DEFAULT_MAX_POINTS = 20


@dataclass(frozen=True)
class CorrelatedTrade:
    tx_hash: str
    timestamp: int
    direction: str
    trader_address: str
    token_amount: Decimal
    payment_amount: Decimal
    price_per_token: Decimal


@dataclass(frozen=True)
class PricePoint:
    timestamp: int
    price: Decimal

    def to_dict(self) -> Dict[str, object]:
        return {"timestamp": self.timestamp, "priceUSD": decimal_to_str(self.price, 18)}


@dataclass
class PriceSeries:
    points: List[PricePoint] = field(default_factory=list)
    percent_change: Decimal = Decimal(0)
    volume: Decimal = Decimal(0)

    def __len__(self) -> int:
        return len(self.points)


@dataclass
class _PaymentFlow:
    buy: int = 0
    sell: int = 0


def aggregate_payments(
    payment_transfers: Sequence[TransferEvent], curve_addr: str, fee_addr: str
) -> Dict[str, _PaymentFlow]:
    curve = normalize_address(curve_addr)
    fee = normalize_address(fee_addr)
    flows: Dict[str, _PaymentFlow] = defaultdict(_PaymentFlow)
    for ev in payment_transfers:
        if ev.from_addr == fee or ev.to_addr == fee:
            continue
        if ev.to_addr == curve:
            flows[ev.tx_hash].buy += ev.amount
        elif ev.from_addr == curve:
            flows[ev.tx_hash].sell += ev.amount
    return flows


def correlate_trades(
    token_transfers: Sequence[TransferEvent],
    payment_transfers: Sequence[TransferEvent],
    curve_addr: str,
    fee_addr: str,
    block_timestamps: Dict[int, int],
    token_decimals: int = 18,
    payment_decimals: int = 18,
) -> List[CorrelatedTrade]:
    """Join payment-token flows to song-token transfers by tx hash.

    Song tokens leaving the curve are buys and pair with payment flowing
    into the curve; song tokens entering the curve are sells and pair with
    payment flowing out. Transfers touching the fee address never count.
    Trades whose price is not positive are dropped.
    """
    curve = normalize_address(curve_addr)
    flows = aggregate_payments(payment_transfers, curve, fee_addr)

    trades: List[CorrelatedTrade] = []
    for ev in token_transfers:
        if ev.from_addr == curve:
            direction, trader = BUY, ev.to_addr
        elif ev.to_addr == curve:
            direction, trader = SELL, ev.from_addr
        else:
            continue

        token_amount = raw_to_decimal(ev.amount, token_decimals)
        if token_amount <= 0:
            continue
        flow = flows.get(ev.tx_hash)
        raw_payment = 0
        if flow is not None:
            raw_payment = flow.buy if direction == BUY else flow.sell
        payment_amount = raw_to_decimal(raw_payment, payment_decimals)
        price = payment_amount / token_amount
        if price <= 0:
            continue

        trades.append(
            CorrelatedTrade(
                tx_hash=ev.tx_hash,
                timestamp=int(block_timestamps.get(ev.block_number, 0)),
                direction=direction,
                trader_address=trader,
                token_amount=token_amount,
                payment_amount=payment_amount,
                price_per_token=price,
            )
        )
    return trades


def percent_change(points: Sequence[PricePoint]) -> Decimal:
    if len(points) < 2:
        return Decimal(0)
    first = points[0].price
    last = points[-1].price
    if first <= 0:
        return Decimal(0)
    return (last - first) / first * 100


def downsample(items: Sequence, max_points: int = DEFAULT_MAX_POINTS) -> List:
    if len(items) <= max_points:
        return list(items)
    step = math.ceil(len(items) / max_points)
    return [x for i, x in enumerate(items) if i % step == 0]


def build_price_series(
    trades: Sequence[CorrelatedTrade],
    current_price: Optional[PricePoint] = None,
    max_points: int = DEFAULT_MAX_POINTS,
    multiplier: Decimal = Decimal(1),
) -> PriceSeries:
    ordered = sorted(trades, key=lambda t: t.timestamp)
    sampled = downsample(ordered, max_points)
    points = [PricePoint(t.timestamp, t.price_per_token * multiplier) for t in sampled]
    if current_price is not None:
        points.append(PricePoint(current_price.timestamp, current_price.price * multiplier))

    volume = sum((t.payment_amount for t in ordered), Decimal(0))
    # one trade has nothing to compare against; the current point is display only
    change = percent_change(points) if len(ordered) >= 2 else Decimal(0)
    return PriceSeries(points=points, percent_change=change, volume=volume)


def flat_line_series(
    price: Decimal, now: int, num_points: int = DEFAULT_MAX_POINTS
) -> PriceSeries:
    points = [PricePoint(now, price) for _ in range(num_points)]
    return PriceSeries(points=points, percent_change=Decimal(0), volume=Decimal(0))


def curve_progression_series(
    remaining_supply: Decimal,
    total_supply: Decimal,
    initial_price: Decimal,
    price_increment: Decimal,
    now: int,
    num_points: int = DEFAULT_MAX_POINTS,
    multiplier: Decimal = Decimal(1),
) -> PriceSeries:
    """Linear bonding-curve price from genesis up to the current sold supply."""
    sold = total_supply - remaining_supply if remaining_supply > 0 else Decimal(0)
    sold = max(sold, Decimal(0))
    points = []
    for i in range(num_points + 1):
        tokens = sold / num_points * i
        price = (initial_price + tokens * price_increment) * multiplier
        points.append(PricePoint(now, price))
    return PriceSeries(points=points, percent_change=percent_change(points), volume=Decimal(0))
