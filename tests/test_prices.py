"""
Tests for on-chain price reads and the payment token USD quote.

Tests cover:
- bonding curve price and supply decoding
- pair layout resolution for either token order
- quote staleness and empty reserves
"""

from decimal import Decimal

import pytest

from songcurve.errors import RPCError
from songcurve.prices import ContractPriceReader, PaymentPriceService, decode_uint256
from songcurve.utils import TOKEN0_SELECTOR, TOKEN1_SELECTOR

from conftest import E18, OTHER_TOKEN, PAIR, TOKEN, USDC, abi_result, make_config, seed_usd_pair


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def pair_cfg():
    return make_config(PAYMENT_USD_PAIR_ADDR=PAIR)


class TestDecodeUint256:
    def test_decodes_first_word(self):
        assert decode_uint256("0x" + f"{7:064x}" + "f" * 64) == 7

    @pytest.mark.parametrize("out", [None, "", "0x", "0x12"])
    def test_rejects_empty_or_short_output(self, out):
        with pytest.raises(RPCError):
            decode_uint256(out)


class TestContractPriceReader:
    @pytest.mark.asyncio
    async def test_reads_price_at_block(self, cfg, rpc):
        rpc.prices = {"latest": 3 * 10 ** 15, 500: 10 ** 15}
        reader = ContractPriceReader(cfg, rpc)

        assert await reader.read_price(TOKEN) == Decimal("0.003")
        assert await reader.read_price(TOKEN, 500) == Decimal("0.001")

    @pytest.mark.asyncio
    async def test_reads_remaining_supply(self, cfg, rpc):
        rpc.supply = 12 * E18
        assert await ContractPriceReader(cfg, rpc).read_curve_supply(TOKEN) == Decimal(12)

    @pytest.mark.asyncio
    async def test_revert_surfaces_as_rpc_error(self, cfg, rpc):
        with pytest.raises(RPCError):
            await ContractPriceReader(cfg, rpc).read_price(TOKEN)


class TestPaymentPriceService:
    @pytest.mark.asyncio
    async def test_payment_as_token0(self, pair_cfg, rpc):
        seed_usd_pair(rpc, payment_reserve=1000 * E18, quote_reserve=2500 * 10 ** 6)
        service = PaymentPriceService(pair_cfg, rpc)

        assert await service.refresh_once() == Decimal("2.5")
        assert service.layout.payment_is_token0 is True
        assert service.layout.quote_token == USDC
        assert service.layout.quote_decimals == 6
        assert await service.get_price() == (Decimal("2.5"), False)

    @pytest.mark.asyncio
    async def test_payment_as_token1(self, pair_cfg, rpc):
        seed_usd_pair(
            rpc, payment_reserve=400 * E18, quote_reserve=100 * 10 ** 6, payment_is_token0=False
        )
        service = PaymentPriceService(pair_cfg, rpc)

        assert await service.refresh_once() == Decimal("0.25")
        assert service.layout.payment_is_token0 is False

    @pytest.mark.asyncio
    async def test_layout_resolved_once(self, pair_cfg, rpc):
        seed_usd_pair(rpc, payment_reserve=E18, quote_reserve=10 ** 6)
        service = PaymentPriceService(pair_cfg, rpc)

        await service.refresh_once()
        await service.refresh_once()

        # token0, token1, decimals, then one getReserves per refresh
        assert rpc.calls["eth_call"] == 5

    @pytest.mark.asyncio
    async def test_quote_goes_stale(self, pair_cfg, rpc):
        seed_usd_pair(rpc, payment_reserve=E18, quote_reserve=3 * 10 ** 6)
        clock = FakeClock(1000.0)
        service = PaymentPriceService(pair_cfg, rpc, stale_after_sec=120, clock=clock)

        assert await service.get_price() == (None, True)
        await service.refresh_once()

        clock.t += 120
        assert await service.get_price() == (Decimal(3), False)
        clock.t += 1
        assert await service.get_price() == (Decimal(3), True)

    @pytest.mark.asyncio
    async def test_empty_reserve_keeps_last_quote(self, pair_cfg, rpc):
        seed_usd_pair(rpc, payment_reserve=E18, quote_reserve=2 * 10 ** 6)
        service = PaymentPriceService(pair_cfg, rpc)
        await service.refresh_once()

        seed_usd_pair(rpc, payment_reserve=0, quote_reserve=2 * 10 ** 6)
        assert await service.refresh_once() is None
        price, _ = await service.get_price()
        assert price == Decimal(2)

    @pytest.mark.asyncio
    async def test_pair_without_payment_token(self, pair_cfg, rpc):
        seed_usd_pair(rpc, payment_reserve=E18, quote_reserve=10 ** 6)
        rpc.call_results[(PAIR, TOKEN0_SELECTOR)] = abi_result(["address"], [TOKEN])
        rpc.call_results[(PAIR, TOKEN1_SELECTOR)] = abi_result(["address"], [OTHER_TOKEN])
        service = PaymentPriceService(pair_cfg, rpc)

        assert await service.refresh_once() is None
        assert service.layout is None
        assert await service.get_price() == (None, True)

    @pytest.mark.asyncio
    async def test_disabled_without_pair(self, cfg, rpc):
        service = PaymentPriceService(cfg, rpc)
        assert service.enabled is False
        assert await service.refresh_once() is None
        await service.start()
        assert rpc.calls["eth_call"] == 0

    @pytest.mark.asyncio
    async def test_start_survives_failed_first_quote(self, pair_cfg, rpc):
        service = PaymentPriceService(pair_cfg, rpc, refresh_sec=3600)
        await service.start()
        try:
            assert await service.get_price() == (None, True)
        finally:
            await service.stop()
