import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import IndexConflict, SongCurveError
from .utils import decimal_to_str

DEPLOY = "deploy"
TRADE_TYPES = {"deploy", "buy", "sell"}


@dataclass(frozen=True)
class PersistedTradeRecord:
    id: str
    token_address: str
    tx_hash: str
    block_number: int
    timestamp: int
    trader_address: str
    trade_type: str
    token_amount: Decimal
    payment_amount: Decimal
    price_per_token: Decimal
    song_id: Optional[str] = None
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tokenAddress": self.token_address,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "traderAddress": self.trader_address,
            "tradeType": self.trade_type,
            "tokenAmount": decimal_to_str(self.token_amount, 18),
            "paymentAmount": decimal_to_str(self.payment_amount, 18),
            "pricePerToken": decimal_to_str(self.price_per_token, 18),
            "songId": self.song_id,
        }


class TradeStore:
    """Append-only sqlite store of indexed trades, unique per tx hash."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS song_trades (
                id TEXT PRIMARY KEY,
                token_address TEXT NOT NULL,
                tx_hash TEXT NOT NULL UNIQUE,
                block_number INTEGER NOT NULL,
                trade_timestamp INTEGER NOT NULL,
                trader_address TEXT NOT NULL,
                trade_type TEXT NOT NULL CHECK (trade_type IN ('deploy', 'buy', 'sell')),
                token_amount TEXT NOT NULL,
                payment_amount TEXT NOT NULL,
                price_per_token TEXT NOT NULL,
                song_id TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_song_trades_token_time
                ON song_trades(token_address, trade_timestamp);
            """
        )
        self.conn.commit()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PersistedTradeRecord:
        return PersistedTradeRecord(
            id=row["id"],
            token_address=row["token_address"],
            tx_hash=row["tx_hash"],
            block_number=int(row["block_number"]),
            timestamp=int(row["trade_timestamp"]),
            trader_address=row["trader_address"],
            trade_type=row["trade_type"],
            token_amount=Decimal(row["token_amount"]),
            payment_amount=Decimal(row["payment_amount"]),
            price_per_token=Decimal(row["price_per_token"]),
            song_id=row["song_id"],
            created_at=int(row["created_at"]),
        )

    def find_trade_by_tx_hash(self, tx_hash: str) -> Optional[PersistedTradeRecord]:
        cur = self.conn.execute(
            "SELECT * FROM song_trades WHERE tx_hash = ?", (tx_hash.lower(),)
        )
        row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def count_trades_for_token(self, token_address: str) -> int:
        cur = self.conn.execute(
            "SELECT COUNT(*) AS n FROM song_trades WHERE token_address = ?",
            (token_address.lower(),),
        )
        return int(cur.fetchone()["n"])

    def insert_trade(self, record: PersistedTradeRecord) -> PersistedTradeRecord:
        if record.trade_type not in TRADE_TYPES:
            raise ValueError(f"invalid trade type: {record.trade_type}")
        created_at = record.created_at or int(time.time())
        try:
            self.conn.execute(
                """
                INSERT INTO song_trades(
                    id, token_address, tx_hash, block_number, trade_timestamp,
                    trader_address, trade_type, token_amount, payment_amount,
                    price_per_token, song_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.token_address.lower(),
                    record.tx_hash.lower(),
                    record.block_number,
                    record.timestamp,
                    record.trader_address.lower(),
                    record.trade_type,
                    decimal_to_str(record.token_amount, 18),
                    decimal_to_str(record.payment_amount, 18),
                    decimal_to_str(record.price_per_token, 18),
                    record.song_id,
                    created_at,
                ),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "tx_hash" in str(e):
                raise IndexConflict(record.tx_hash) from e
            raise
        stored = self.find_trade_by_tx_hash(record.tx_hash)
        if stored is None:
            raise SongCurveError(f"trade {record.tx_hash} missing after insert")
        return stored

    def list_trades(
        self, token_address: str, since_ts: int = 0, limit_n: int = 1000
    ) -> List[PersistedTradeRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM song_trades
            WHERE token_address = ? AND trade_timestamp >= ?
            ORDER BY trade_timestamp ASC, block_number ASC
            LIMIT ?
            """,
            (token_address.lower(), int(since_ts), int(limit_n)),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count_trades(self) -> int:
        cur = self.conn.execute("SELECT COUNT(*) AS n FROM song_trades")
        return int(cur.fetchone()["n"])
