from dataclasses import replace
from decimal import Decimal

import pytest

from songcurve.errors import IndexConflict, SongCurveError
from songcurve.storage import PersistedTradeRecord, TradeStore

from conftest import OTHER_TOKEN, TOKEN, TRADER, tx


def record(n, token=TOKEN, ts=1000, trade_type="buy", **kw):
    return PersistedTradeRecord(
        id=f"id-{n}",
        token_address=token,
        tx_hash=tx(n),
        block_number=n,
        timestamp=ts,
        trader_address=TRADER,
        trade_type=trade_type,
        token_amount=Decimal(10),
        payment_amount=Decimal("1.5"),
        price_per_token=Decimal("0.15"),
        **kw,
    )


@pytest.fixture
def store():
    s = TradeStore(":memory:")
    yield s
    s.close()


def test_insert_and_find(store):
    stored = store.insert_trade(record(1, song_id="abc"))

    assert stored.tx_hash == tx(1)
    assert stored.price_per_token == Decimal("0.15")
    assert stored.song_id == "abc"
    assert stored.created_at > 0
    assert store.find_trade_by_tx_hash(tx(1).upper().replace("0X", "0x")) == stored
    assert store.find_trade_by_tx_hash(tx(2)) is None


def test_duplicate_tx_hash_conflicts(store):
    store.insert_trade(record(1))
    dup = replace(record(1), id="other")
    with pytest.raises(IndexConflict):
        store.insert_trade(dup)
    assert store.count_trades() == 1


def test_unknown_trade_type_rejected(store):
    with pytest.raises(ValueError):
        store.insert_trade(record(1, trade_type="mint"))


def test_insert_reports_row_missing_after_commit():
    class LossyStore(TradeStore):
        def find_trade_by_tx_hash(self, tx_hash):
            return None

    store = LossyStore(":memory:")
    with pytest.raises(SongCurveError, match="missing after insert"):
        store.insert_trade(record(1))
    store.close()


def test_count_and_list_per_token(store):
    store.insert_trade(record(1, ts=300))
    store.insert_trade(record(2, ts=100))
    store.insert_trade(record(3, ts=200, token=OTHER_TOKEN))

    assert store.count_trades_for_token(TOKEN) == 2
    assert store.count_trades_for_token(OTHER_TOKEN) == 1
    assert [r.timestamp for r in store.list_trades(TOKEN)] == [100, 300]
    assert [r.timestamp for r in store.list_trades(TOKEN, since_ts=150)] == [300]
    assert len(store.list_trades(TOKEN, limit_n=1)) == 1


def test_to_dict_uses_wire_keys(store):
    d = store.insert_trade(record(1)).to_dict()
    assert d["txHash"] == tx(1)
    assert d["tradeType"] == "buy"
    assert Decimal(d["pricePerToken"]) == Decimal("0.15")


def test_file_backed_store_persists(tmp_path):
    path = str(tmp_path / "nested" / "trades.db")
    s = TradeStore(path)
    s.insert_trade(record(1))
    s.close()

    s = TradeStore(path)
    assert s.count_trades() == 1
    s.close()
