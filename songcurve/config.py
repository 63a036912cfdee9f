import json
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .utils import normalize_address

LOG_LEVELS = {"debug", "info", "warning", "error"}

DEFAULT_BOUGHT_EVENT = "SongTokenBought(address,address,uint256,uint256)"
DEFAULT_SOLD_EVENT = "SongTokenSold(address,address,uint256,uint256)"


@dataclass
class AppConfig:
    chain_id: int
    http_rpc_url: str
    bonding_curve_addr: str
    payment_token_addr: str
    fee_addr: str
    payment_usd_pair_addr: Optional[str]
    token_decimals: int
    payment_decimals: int
    blocks_per_hour: int
    log_chunk_blocks: int
    max_series_points: int
    cache_ttl_sec: float
    historical_read_enabled: bool
    price_method: str
    supply_method: str
    bought_event: str
    sold_event: str
    curve_total_supply: Decimal
    curve_initial_price: Decimal
    curve_price_increment: Decimal
    all_time_window_hours: int
    rpc_max_in_flight: int
    max_rpc_retries: int
    rpc_timeout_sec: int
    sqlite_path: str
    api_host: str
    api_port: int
    cors_allow_origins: List[str]
    log_level: str


def _parse_bool(value, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{key} must be a boolean, got: {value!r}")


def _parse_event_signature(value, key: str) -> str:
    sig = "".join(str(value).split())
    name, sep, rest = sig.partition("(")
    if not name or not sep or not rest.endswith(")"):
        raise ValueError(f"{key} must look like Name(type,...), got: {value!r}")
    return sig


def _parse_origins(raw) -> List[str]:
    if isinstance(raw, str):
        return [x.strip().rstrip("/") for x in raw.split(",") if x and x.strip()]
    if isinstance(raw, list):
        return [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    return []


def config_from_dict(raw: dict) -> AppConfig:
    for key in ("HTTP_RPC_URL", "BONDING_CURVE_ADDR", "PAYMENT_TOKEN_ADDR", "FEE_ADDR"):
        if not str(raw.get(key, "")).strip():
            raise ValueError(f"{key} is required")

    pair = raw.get("PAYMENT_USD_PAIR_ADDR")
    payment_usd_pair_addr = normalize_address(pair) if pair else None

    token_decimals = int(raw.get("TOKEN_DECIMALS", 18))
    payment_decimals = int(raw.get("PAYMENT_DECIMALS", 18))
    if not 0 <= token_decimals <= 36 or not 0 <= payment_decimals <= 36:
        raise ValueError("TOKEN_DECIMALS/PAYMENT_DECIMALS must be in [0,36]")

    blocks_per_hour = int(raw.get("BLOCKS_PER_HOUR", 1800))
    if blocks_per_hour <= 0:
        raise ValueError("BLOCKS_PER_HOUR must be >= 1")
    log_chunk_blocks = int(raw.get("LOG_CHUNK_BLOCKS", 10000))
    if log_chunk_blocks <= 0:
        raise ValueError("LOG_CHUNK_BLOCKS must be >= 1")
    max_series_points = int(raw.get("MAX_SERIES_POINTS", 20))
    if max_series_points < 2:
        raise ValueError("MAX_SERIES_POINTS must be >= 2")
    cache_ttl_sec = float(raw.get("CACHE_TTL_SEC", 30))
    if cache_ttl_sec < 0:
        raise ValueError("CACHE_TTL_SEC must be >= 0")

    rpc_max_in_flight = int(raw.get("RPC_MAX_IN_FLIGHT", 3))
    if rpc_max_in_flight <= 0:
        raise ValueError("RPC_MAX_IN_FLIGHT must be >= 1")
    max_rpc_retries = int(raw.get("MAX_RPC_RETRIES", 3))
    if max_rpc_retries <= 0:
        raise ValueError("MAX_RPC_RETRIES must be >= 1")

    curve_total_supply = Decimal(str(raw.get("CURVE_TOTAL_SUPPLY", "990000000")))
    curve_initial_price = Decimal(str(raw.get("CURVE_INITIAL_PRICE", "0.001")))
    curve_price_increment = Decimal(str(raw.get("CURVE_PRICE_INCREMENT", "0.000001")))
    if curve_total_supply <= 0 or curve_initial_price < 0 or curve_price_increment < 0:
        raise ValueError("bonding curve parameters must be non-negative")

    bought_event = _parse_event_signature(
        raw.get("BOUGHT_EVENT", DEFAULT_BOUGHT_EVENT), "BOUGHT_EVENT"
    )
    sold_event = _parse_event_signature(raw.get("SOLD_EVENT", DEFAULT_SOLD_EVENT), "SOLD_EVENT")
    if bought_event == sold_event:
        raise ValueError("BOUGHT_EVENT and SOLD_EVENT must differ")

    log_level = str(raw.get("LOG_LEVEL", "info")).lower()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}")

    return AppConfig(
        chain_id=int(raw.get("CHAIN_ID", 8453)),
        http_rpc_url=str(raw["HTTP_RPC_URL"]).strip(),
        bonding_curve_addr=normalize_address(raw["BONDING_CURVE_ADDR"]),
        payment_token_addr=normalize_address(raw["PAYMENT_TOKEN_ADDR"]),
        fee_addr=normalize_address(raw["FEE_ADDR"]),
        payment_usd_pair_addr=payment_usd_pair_addr,
        token_decimals=token_decimals,
        payment_decimals=payment_decimals,
        blocks_per_hour=blocks_per_hour,
        log_chunk_blocks=log_chunk_blocks,
        max_series_points=max_series_points,
        cache_ttl_sec=cache_ttl_sec,
        historical_read_enabled=_parse_bool(
            raw.get("HISTORICAL_READ_ENABLED", True), "HISTORICAL_READ_ENABLED"
        ),
        price_method=str(raw.get("PRICE_METHOD", "getCurrentPrice(address)")).strip(),
        supply_method=str(raw.get("SUPPLY_METHOD", "bondingCurveSupply(address)")).strip(),
        bought_event=bought_event,
        sold_event=sold_event,
        curve_total_supply=curve_total_supply,
        curve_initial_price=curve_initial_price,
        curve_price_increment=curve_price_increment,
        all_time_window_hours=int(raw.get("ALL_TIME_WINDOW_HOURS", 1000)),
        rpc_max_in_flight=rpc_max_in_flight,
        max_rpc_retries=max_rpc_retries,
        rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 12)),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/songcurve.db")),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=_parse_origins(raw.get("CORS_ALLOW_ORIGINS", [])),
        log_level=log_level,
    )


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config root must be a JSON object")
    return config_from_dict(raw)
