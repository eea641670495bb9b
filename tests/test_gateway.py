"""Tests for the exchange gateway and the request throttle.

Uses a fake ccxt exchange object so no network calls are made.
"""

import ccxt.async_support as ccxt_async
import pytest

from perpscout.config import Config
from perpscout.errors import InvariantViolationError, TransientCommunicationError
from perpscout.exchange.gateway import ExchangeGateway, candidate_pairs
from perpscout.exchange.throttle import RequestThrottle


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_config(**overrides) -> Config:
    defaults = dict(api_key="k", api_secret="s")
    defaults.update(overrides)
    return Config(**defaults)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeCcxt:
    """Minimal stand-in for a ccxt async exchange."""

    def __init__(self) -> None:
        self.ticker = {"last": 101.5, "bid": 101.4, "ask": 101.6, "quoteVolume": 3_000_000}
        self.ohlcv = [
            [3_000, 3.0, 3.5, 2.5, 3.2, 30.0],
            [1_000, 1.0, 1.5, 0.5, 1.2, 10.0],
            [2_000, 2.0, 2.5, 1.5, 2.2, 20.0],
        ]
        self.errors: list[Exception] = []
        self.calls: list[str] = []
        self.closed = False
        self.markets = {
            "BTC/USDT:USDT": {"precision": {"amount": 0.001}, "limits": {"amount": {"min": 0.001}}},
            "ETH/USDT:USDT": {"precision": {"amount": 0.01}, "limits": {"amount": {"min": 0.1}}},
        }
        self.positions = [
            {"symbol": "BTC/USDT:USDT", "side": "long", "contracts": 0.5, "entryPrice": 100.0,
             "markPrice": 101.0, "unrealizedPnl": 0.5, "leverage": 5},
            {"symbol": "ETH/USDT:USDT", "side": "short", "contracts": 0, "entryPrice": 0},
        ]

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self.errors:
            raise self.errors.pop(0)

    async def load_markets(self):
        self._maybe_fail("load_markets")
        return {"BTC/USDT:USDT": {"active": True}}

    async def fetch_ticker(self, symbol):
        self._maybe_fail("fetch_ticker")
        return self.ticker

    async def fetch_ohlcv(self, symbol, timeframe, since, limit):
        self._maybe_fail("fetch_ohlcv")
        return self.ohlcv

    async def fetch_order_book(self, symbol, limit):
        self._maybe_fail("fetch_order_book")
        return {"timestamp": 5, "bids": [[100.0, 2.0, 0]], "asks": [[100.1, 1.0, 0]]}

    async def fetch_balance(self):
        self._maybe_fail("fetch_balance")
        return {"USDT": {"free": 80.0, "used": 20.0, "total": 100.0}}

    async def fetch_positions(self):
        self._maybe_fail("fetch_positions")
        return self.positions

    def market(self, symbol):
        if symbol not in self.markets:
            raise ccxt_async.BadSymbol(f"market symbol {symbol} not found")
        return self.markets[symbol]

    def amount_to_precision(self, symbol, amount):
        step = self.markets[symbol]["precision"]["amount"]
        snapped = int(round(amount / step, 9)) * step
        if snapped == 0:
            raise ccxt_async.InvalidOrder(f"{symbol} amount of {amount} must be greater than minimum amount precision")
        return f"{snapped:.8f}"

    async def set_leverage(self, leverage, symbol):
        self._maybe_fail("set_leverage")
        return {}

    async def fetch_leverage(self, symbol):
        self._maybe_fail("fetch_leverage")
        return {"longLeverage": 5, "shortLeverage": 5}

    async def create_order(self, symbol, order_type, side, amount, price, params):
        self._maybe_fail("create_order")
        return {"id": "abc", "amount": amount, "filled": amount, "average": 100.2, "status": "closed"}

    async def close(self):
        self.closed = True


def _gateway(fake=None):
    fake = fake or FakeCcxt()
    sleep = RecordingSleep()
    gateway = ExchangeGateway(_make_config(), exchange=fake, throttle=RequestThrottle(0.0), sleep=sleep)
    return gateway, fake, sleep


# ── Mapping ──────────────────────────────────────────────────────────────


class TestMapping:
    @pytest.mark.asyncio
    async def test_fetch_ticker(self):
        gateway, _, _ = _gateway()
        ticker = await gateway.fetch_ticker("BTC/USDT:USDT")
        assert ticker.last == 101.5
        assert ticker.spread == pytest.approx(0.2)
        assert ticker.quote_volume == 3_000_000

    @pytest.mark.asyncio
    async def test_ticker_falls_back_to_close(self):
        gateway, fake, _ = _gateway()
        fake.ticker = {"last": None, "close": 99.0, "bid": None, "ask": None, "baseVolume": 7}
        ticker = await gateway.fetch_ticker("X")
        assert ticker.last == 99.0
        assert ticker.spread is None
        assert ticker.quote_volume == 7

    @pytest.mark.asyncio
    async def test_fetch_ohlcv_oldest_first(self):
        gateway, _, _ = _gateway()
        candles = await gateway.fetch_ohlcv("BTC/USDT:USDT", "1h", 3)
        assert [c.timestamp for c in candles] == [1_000, 2_000, 3_000]
        assert candles[0].close == 1.2
        assert candles[0].volume == 10.0

    @pytest.mark.asyncio
    async def test_fetch_positions_skips_empty(self):
        gateway, _, _ = _gateway()
        positions = await gateway.fetch_positions()
        assert [p.symbol for p in positions] == ["BTC/USDT:USDT"]
        assert positions[0].side == "long"
        assert positions[0].unrealized_pnl == 0.5
        assert positions[0].leverage == 5.0

    @pytest.mark.asyncio
    async def test_fetch_positions_infers_side_from_signed_contracts(self):
        gateway, fake, _ = _gateway()
        fake.positions = [
            {"symbol": "BTC/USDT:USDT", "side": None, "contracts": -0.5, "entryPrice": 100.0},
            {"symbol": "ETH/USDT:USDT", "side": "Sell", "contracts": 2, "entryPrice": 10.0},
        ]
        positions = await gateway.fetch_positions()
        assert [(p.symbol, p.side, p.contracts) for p in positions] == [
            ("BTC/USDT:USDT", "short", 0.5),
            ("ETH/USDT:USDT", "short", 2.0),
        ]

    @pytest.mark.asyncio
    async def test_fetch_positions_skips_unusable_side(self):
        gateway, fake, _ = _gateway()
        fake.positions = [
            {"symbol": "BTC/USDT:USDT", "side": "", "contracts": 0.5, "entryPrice": 100.0},
            {"symbol": "ETH/USDT:USDT", "side": "both", "contracts": 1, "entryPrice": 10.0},
        ]
        assert await gateway.fetch_positions() == []

    @pytest.mark.asyncio
    async def test_fetch_balance(self):
        gateway, _, _ = _gateway()
        balance = await gateway.fetch_balance()
        assert (balance.free, balance.used, balance.total) == (80.0, 20.0, 100.0)

    @pytest.mark.asyncio
    async def test_fetch_order_book(self):
        gateway, _, _ = _gateway()
        book = await gateway.fetch_order_book("BTC/USDT:USDT", 5)
        assert book.bids == [(100.0, 2.0)]
        assert book.asks == [(100.1, 1.0)]

    @pytest.mark.asyncio
    async def test_fetch_leverage(self):
        gateway, _, _ = _gateway()
        assert await gateway.fetch_leverage("BTC/USDT:USDT") == 5.0

    @pytest.mark.asyncio
    async def test_create_order(self):
        gateway, _, _ = _gateway()
        fill = await gateway.create_order("BTC/USDT:USDT", "market", "buy", 0.5)
        assert fill.order_id == "abc"
        assert fill.status == "closed"
        assert fill.filled == 0.5
        assert fill.average == 100.2

    @pytest.mark.asyncio
    async def test_close(self):
        gateway, fake, _ = _gateway()
        await gateway.close()
        assert fake.closed


# ── Amount precision ─────────────────────────────────────────────────────


class TestAmountToPrecision:
    def test_snaps_down_to_step(self):
        gateway, _, _ = _gateway()
        assert gateway.amount_to_precision("BTC/USDT:USDT", 0.12345) == pytest.approx(0.123)

    def test_below_market_minimum_rejected(self):
        gateway, _, _ = _gateway()
        with pytest.raises(InvariantViolationError, match="minimum"):
            gateway.amount_to_precision("ETH/USDT:USDT", 0.05)

    def test_rounds_to_zero_rejected(self):
        gateway, _, _ = _gateway()
        with pytest.raises(InvariantViolationError):
            gateway.amount_to_precision("BTC/USDT:USDT", 0.0004)

    def test_unknown_market_is_transient(self):
        gateway, _, _ = _gateway()
        with pytest.raises(TransientCommunicationError):
            gateway.amount_to_precision("DOGE/USDT:USDT", 10.0)


# ── Errors and retry ─────────────────────────────────────────────────────


class TestRetry:
    @pytest.mark.asyncio
    async def test_network_error_retried_with_backoff(self):
        gateway, fake, sleep = _gateway()
        fake.errors = [ccxt_async.NetworkError("reset"), ccxt_async.RequestTimeout("slow")]
        ticker = await gateway.fetch_ticker("BTC/USDT:USDT")
        assert ticker.last == 101.5
        assert sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_persistent_network_error_raises(self):
        gateway, fake, sleep = _gateway()
        fake.errors = [ccxt_async.NetworkError("down")] * 3
        with pytest.raises(TransientCommunicationError) as exc_info:
            await gateway.fetch_balance()
        assert exc_info.value.operation == "fetch_balance"
        assert fake.calls.count("fetch_balance") == 3

    @pytest.mark.asyncio
    async def test_exchange_error_not_retried(self):
        gateway, fake, sleep = _gateway()
        fake.errors = [ccxt_async.BadSymbol("unknown symbol")]
        with pytest.raises(TransientCommunicationError):
            await gateway.fetch_ticker("NOPE")
        assert fake.calls == ["fetch_ticker"]
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_orders_never_retried(self):
        gateway, fake, sleep = _gateway()
        fake.errors = [ccxt_async.NetworkError("reset")]
        with pytest.raises(TransientCommunicationError):
            await gateway.create_order("BTC/USDT:USDT", "market", "buy", 1.0)
        assert fake.calls == ["create_order"]

    @pytest.mark.asyncio
    async def test_unchanged_leverage_is_success(self):
        gateway, fake, _ = _gateway()
        fake.errors = [ccxt_async.ExchangeError('bybit {"retMsg":"leverage not modified"}')]
        await gateway.set_leverage("BTC/USDT:USDT", 5)

    @pytest.mark.asyncio
    async def test_other_leverage_errors_raise(self):
        gateway, fake, _ = _gateway()
        fake.errors = [ccxt_async.ExchangeError("leverage exceeds risk limit")]
        with pytest.raises(TransientCommunicationError):
            await gateway.set_leverage("BTC/USDT:USDT", 50)


# ── Candidate pairs ──────────────────────────────────────────────────────


_MARKETS = {
    "BTC/USDT:USDT": {"active": True},
    "ETH/USDT:USDT": {"active": True},
    "OLD/USDT:USDT": {"active": False},
    "BTC/USDT": {"active": True},
    "BTC/USD:BTC": {"active": True},
    "SOL/USDT:USDT": {},
}


class TestCandidatePairs:
    def test_linear_perpetuals_only(self):
        assert candidate_pairs(_MARKETS) == ["BTC/USDT:USDT", "ETH/USDT:USDT", "SOL/USDT:USDT"]

    def test_blacklist(self):
        assert candidate_pairs(_MARKETS, blacklist=("ETH/USDT:USDT",)) == ["BTC/USDT:USDT", "SOL/USDT:USDT"]

    def test_whitelist_keeps_order_and_drops_unknown(self):
        pairs = candidate_pairs(_MARKETS, whitelist=("SOL/USDT:USDT", "NOPE/USDT:USDT", "BTC/USDT:USDT"))
        assert pairs == ["SOL/USDT:USDT", "BTC/USDT:USDT"]

    def test_limit(self):
        assert candidate_pairs(_MARKETS, limit=2) == ["BTC/USDT:USDT", "ETH/USDT:USDT"]


# ── Throttle ─────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestThrottle:
    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self):
        sleep = RecordingSleep()
        throttle = RequestThrottle(0.5, clock=FakeClock(), sleep=sleep)
        await throttle.wait()
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_waits_out_remaining_interval(self):
        clock = FakeClock()
        sleep = RecordingSleep()
        throttle = RequestThrottle(0.5, clock=clock, sleep=sleep)
        await throttle.wait()
        clock.now = 0.2
        await throttle.wait()
        assert sleep.calls == [pytest.approx(0.3)]

    @pytest.mark.asyncio
    async def test_no_wait_after_interval_elapsed(self):
        clock = FakeClock()
        sleep = RecordingSleep()
        throttle = RequestThrottle(0.5, clock=clock, sleep=sleep)
        await throttle.wait()
        clock.now = 1.0
        await throttle.wait()
        assert sleep.calls == []

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            RequestThrottle(-1.0)
