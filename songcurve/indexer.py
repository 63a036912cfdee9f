import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from .config import DEFAULT_BOUGHT_EVENT, DEFAULT_SOLD_EVENT, AppConfig
from .errors import DecodeError, EventNotFound, IndexConflict, ReceiptNotFound, RPCError
from .rpc import RPCClient
from .storage import DEPLOY, PersistedTradeRecord, TradeStore
from .utils import (
    decode_topic_address,
    event_topic,
    hex_to_bytes,
    normalize_address,
    normalize_tx_hash,
    parse_hex_int,
    raw_to_decimal,
)

logger = logging.getLogger(__name__)

BOUGHT = "buy"
SOLD = "sell"

BOUGHT_TOPIC0 = event_topic(DEFAULT_BOUGHT_EVENT)
SOLD_TOPIC0 = event_topic(DEFAULT_SOLD_EVENT)

EVENT_KINDS = {BOUGHT_TOPIC0: BOUGHT, SOLD_TOPIC0: SOLD}


def event_kinds(bought_event: str, sold_event: str) -> Dict[str, str]:
    return {event_topic(bought_event): BOUGHT, event_topic(sold_event): SOLD}


@dataclass(frozen=True)
class DecodedTradeEvent:
    kind: str
    trader: str
    token: str
    token_amount_raw: int
    payment_amount_raw: int
    log_index: int


def decode_trade_log(
    lg: Dict[str, Any], curve_addr: str, kinds: Optional[Dict[str, str]] = None
) -> DecodedTradeEvent:
    """Decode one receipt log as a buy or sell event.

    SongTokenBought(buyer, songToken, paymentSpent, tokensBought)
    SongTokenSold(seller, songToken, tokensSold, paymentReceived)

    ``kinds`` maps topic0 to buy or sell and defaults to the SongToken events.

    Trader and token may be indexed (topics) or packed into data.
    """
    topics = lg.get("topics") or []
    if not topics:
        raise DecodeError("log has no topics")
    address = str(lg.get("address", "")).lower()
    if address != curve_addr:
        raise DecodeError(f"log emitted by {address}, not the bonding curve")
    kind = (kinds or EVENT_KINDS).get(str(topics[0]).lower())
    if kind is None:
        raise DecodeError(f"unknown event topic {topics[0]}")

    try:
        data = hex_to_bytes(lg.get("data") or "0x")
        if len(topics) >= 3:
            trader = decode_topic_address(topics[1])
            token = decode_topic_address(topics[2])
            first, second = decode(["uint256", "uint256"], data)
        elif len(topics) == 1:
            trader, token, first, second = decode(
                ["address", "address", "uint256", "uint256"], data
            )
            trader = trader.lower()
            token = token.lower()
        else:
            raise DecodeError(f"unexpected topic count {len(topics)}")
    except (DecodingError, ValueError) as e:
        raise DecodeError(f"{kind} payload mismatch: {e}") from e

    if kind == BOUGHT:
        payment_raw, token_raw = first, second
    else:
        token_raw, payment_raw = first, second
    return DecodedTradeEvent(
        kind=kind,
        trader=trader,
        token=token,
        token_amount_raw=token_raw,
        payment_amount_raw=payment_raw,
        log_index=parse_hex_int(lg.get("logIndex")),
    )


def find_trade_event(
    logs: Iterable[Dict[str, Any]],
    curve_addr: str,
    token_address: str,
    kinds: Optional[Dict[str, str]] = None,
) -> Optional[DecodedTradeEvent]:
    for lg in logs:
        if str(lg.get("address", "")).lower() != curve_addr:
            continue
        try:
            ev = decode_trade_log(lg, curve_addr, kinds)
        except DecodeError as e:
            logger.debug("skipping curve log: %s", e)
            continue
        if ev.token == token_address:
            return ev
    return None


class TradeIndexer:
    """Persists the canonical Bought/Sold event of a transaction, once."""

    def __init__(self, cfg: AppConfig, rpc: RPCClient, store: TradeStore):
        self.cfg = cfg
        self.rpc = rpc
        self.store = store
        self.kinds = event_kinds(cfg.bought_event, cfg.sold_event)
        self.stats: Dict[str, int] = {"indexed": 0, "already_indexed": 0, "conflicts": 0}

    async def index(
        self, tx_hash: str, token_address: str, song_id: Optional[str] = None
    ) -> PersistedTradeRecord:
        tx_hash = normalize_tx_hash(tx_hash)
        token_address = normalize_address(token_address)

        existing = self.store.find_trade_by_tx_hash(tx_hash)
        if existing is not None:
            self.stats["already_indexed"] += 1
            return existing

        receipt = await self.rpc.get_receipt(tx_hash)
        if not receipt:
            raise ReceiptNotFound(tx_hash)
        if receipt.get("status") and parse_hex_int(receipt["status"]) == 0:
            raise EventNotFound(tx_hash, token_address, "transaction reverted")

        block_number = parse_hex_int(receipt["blockNumber"])
        block = await self.rpc.get_block_by_number(block_number)
        if not block:
            raise RPCError(f"block {block_number} not found")
        timestamp = parse_hex_int(block["timestamp"])

        ev = find_trade_event(
            receipt.get("logs") or [], self.cfg.bonding_curve_addr, token_address, self.kinds
        )
        if ev is None:
            raise EventNotFound(tx_hash, token_address)

        token_amount = raw_to_decimal(ev.token_amount_raw, self.cfg.token_decimals)
        payment_amount = raw_to_decimal(ev.payment_amount_raw, self.cfg.payment_decimals)
        price = payment_amount / token_amount if token_amount > 0 else Decimal(0)

        trade_type = ev.kind
        if ev.kind == SOLD and self.store.count_trades_for_token(token_address) == 0:
            # curve seeding shows up as the token's first Sold event
            trade_type = DEPLOY

        record = PersistedTradeRecord(
            id=str(uuid.uuid4()),
            token_address=token_address,
            tx_hash=tx_hash,
            block_number=block_number,
            timestamp=timestamp,
            trader_address=ev.trader,
            trade_type=trade_type,
            token_amount=token_amount,
            payment_amount=payment_amount,
            price_per_token=price,
            song_id=song_id,
        )
        try:
            stored = self.store.insert_trade(record)
        except IndexConflict:
            self.stats["conflicts"] += 1
            logger.info("trade %s indexed concurrently, returning stored record", tx_hash)
            stored = self.store.find_trade_by_tx_hash(tx_hash)
            if stored is None:
                raise
            return stored

        self.stats["indexed"] += 1
        logger.info(
            "indexed %s trade %s token=%s amount=%s price=%s",
            trade_type,
            tx_hash,
            token_address,
            token_amount,
            price,
        )
        return stored
