import argparse
import asyncio
import contextlib
import logging
import signal
import time
from decimal import InvalidOperation
from typing import Any, Dict, Optional

from aiohttp import web

from .config import AppConfig, load_config
from .errors import EventNotFound, ReceiptNotFound, RPCError
from .indexer import TradeIndexer
from .logs import LogFetcher
from .prices import ContractPriceReader, PaymentPriceService
from .pricing import PriceAnalyticsService, ResultCache
from .rpc import RPCClient
from .storage import TradeStore
from .utils import normalize_address

logger = logging.getLogger(__name__)

MAX_WINDOW_HOURS = 24 * 365 * 10


def _parse_hours(raw: Optional[str], default: float = 24) -> float:
    if raw is None or raw == "":
        return default
    hours = float(raw)
    if hours <= 0 or hours > MAX_WINDOW_HOURS:
        raise ValueError("hours out of range")
    return hours


def _parse_flag(raw: Optional[str]) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes"}


class SongCurveService:
    def __init__(
        self,
        cfg: AppConfig,
        rpc: Optional[RPCClient] = None,
        store: Optional[TradeStore] = None,
    ):
        self.cfg = cfg
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.rpc = rpc or RPCClient(
            cfg.http_rpc_url,
            max_retries=cfg.max_rpc_retries,
            timeout_sec=cfg.rpc_timeout_sec,
            max_in_flight=cfg.rpc_max_in_flight,
        )
        self.owns_rpc = rpc is None
        self.store = store or TradeStore(cfg.sqlite_path)
        self.fetcher = LogFetcher(
            self.rpc, chunk_blocks=cfg.log_chunk_blocks, blocks_per_hour=cfg.blocks_per_hour
        )
        self.payment_prices = PaymentPriceService(cfg, self.rpc)
        self.analytics = PriceAnalyticsService(
            cfg,
            self.fetcher,
            ContractPriceReader(cfg, self.rpc),
            payment_prices=self.payment_prices,
            cache=ResultCache(cfg.cache_ttl_sec),
        )
        self.indexer = TradeIndexer(cfg, self.rpc, self.store)
        self.stop_event = asyncio.Event()
        self.started_at = int(time.time())

    async def __aenter__(self) -> "SongCurveService":
        if self.owns_rpc:
            await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        if self.owns_rpc:
            await self.rpc.__aexit__(exc_type, exc, tb)
        self.store.close()

    async def get_price_analytics(
        self, token_address: str, window_hours: float = 24, bypass_cache: bool = False
    ) -> Dict[str, Any]:
        result = await self.analytics.get_price_analytics(
            token_address, window_hours, bypass_cache=bypass_cache
        )
        return result.to_dict()

    async def index_trade(
        self, tx_hash: str, token_address: str, song_id: Optional[str] = None
    ) -> Dict[str, Any]:
        record = await self.indexer.index(tx_hash, token_address, song_id)
        # the next analytics read for this token must see the new trade
        self.analytics.invalidate(record.token_address)
        return record.to_dict()

    async def health_handler(self, request: web.Request) -> web.Response:
        usd, stale = await self.payment_prices.get_price()
        return web.json_response(
            {
                "ok": True,
                "chainId": self.cfg.chain_id,
                "startedAt": self.started_at,
                "cachedResults": len(self.analytics.cache),
                "analytics": dict(self.analytics.stats),
                "indexer": dict(self.indexer.stats),
                "indexedTrades": self.store.count_trades(),
                "paymentUsd": str(usd) if usd is not None else None,
                "paymentUsdStale": stale,
            }
        )

    async def analytics_handler(self, request: web.Request) -> web.Response:
        try:
            token = normalize_address(request.match_info.get("token", ""))
            hours = _parse_hours(request.query.get("hours"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        bypass = _parse_flag(request.query.get("bypass"))
        payload = await self.get_price_analytics(token, hours, bypass_cache=bypass)
        return web.json_response(payload)

    async def invalidate_handler(self, request: web.Request) -> web.Response:
        try:
            token = normalize_address(request.match_info.get("token", ""))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        removed = self.analytics.invalidate(token)
        return web.json_response({"ok": True, "removed": removed})

    async def trades_handler(self, request: web.Request) -> web.Response:
        try:
            token = normalize_address(request.match_info.get("token", ""))
            hours = _parse_hours(request.query.get("hours"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        since = int(time.time() - hours * 3600)
        rows = self.store.list_trades(token, since_ts=since)
        return web.json_response({"token": token, "trades": [r.to_dict() for r in rows]})

    async def index_trade_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json body"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "invalid json body"}, status=400)

        tx_hash = payload.get("txHash") or payload.get("transactionHash")
        token = payload.get("tokenAddress")
        song_id = payload.get("songId")
        if not tx_hash or not token:
            return web.json_response({"error": "txHash and tokenAddress are required"}, status=400)

        try:
            record = await self.index_trade(str(tx_hash), str(token), song_id)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        except ReceiptNotFound as e:
            return web.json_response({"error": str(e)}, status=404)
        except EventNotFound as e:
            return web.json_response({"error": str(e)}, status=422)
        except RPCError as e:
            logger.warning("index-trade %s failed: %s", tx_hash, e)
            return web.json_response({"error": "chain rpc unavailable"}, status=502)
        return web.json_response({"ok": True, "trade": record})

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/tokens/{token}/analytics", self.analytics_handler)
        app.router.add_post("/tokens/{token}/invalidate", self.invalidate_handler)
        app.router.add_get("/tokens/{token}/trades", self.trades_handler)
        app.router.add_post("/index-trade", self.index_trade_handler)
        return app

    async def run(self) -> None:
        await self.payment_prices.start()

        app = await self.create_api_app()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info("songcurve API listening on %s:%s", self.cfg.api_host, self.cfg.api_port)

        try:
            await self.stop_event.wait()
        finally:
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        await self.payment_prices.stop()


async def main_async(config_path: str) -> None:
    cfg = load_config(config_path)
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with SongCurveService(cfg) as service:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(service.run())
        wait_task = asyncio.create_task(stop_event.wait())

        await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        await service.shutdown()
        wait_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await wait_task
        await run_task


def main() -> None:
    parser = argparse.ArgumentParser(
        description="songcurve: song token price analytics and trade indexer"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config))
    except KeyboardInterrupt:
        pass
    except InvalidOperation as e:
        raise SystemExit(f"Decimal calculation error: {e}") from e


if __name__ == "__main__":
    main()
