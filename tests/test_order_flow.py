"""Tests for the order-book stream and imbalance helpers."""

import pytest

from perpscout.errors import TransientCommunicationError
from perpscout.exchange.models import OrderBookSnapshot
from perpscout.strategy.order_flow import (
    OrderBookStream,
    average_imbalance,
    flow_confirms,
    summarize_order_book,
)


def _book(bids: float, asks: float) -> OrderBookSnapshot:
    return OrderBookSnapshot(symbol="X", timestamp=0, bids=[(100.0, bids)], asks=[(100.1, asks)])


class FakeBookGateway:
    def __init__(self, books: list[OrderBookSnapshot], fail_at: int | None = None) -> None:
        self._books = books
        self._fail_at = fail_at
        self.calls = 0

    async def fetch_order_book(self, symbol: str, limit: int = 25) -> OrderBookSnapshot:
        self.calls += 1
        if self._fail_at is not None and self.calls == self._fail_at:
            raise TransientCommunicationError("fetch_order_book", "timeout")
        return self._books[(self.calls - 1) % len(self._books)]


async def _no_sleep(seconds: float) -> None:
    return None


class TestSummarize:
    def test_imbalance(self):
        summary = summarize_order_book(
            OrderBookSnapshot(symbol="X", timestamp=0,
                              bids=[(100.0, 2.0), (99.9, 4.0)], asks=[(100.1, 2.0)])
        )
        assert summary.bid_volume == 6.0
        assert summary.ask_volume == 2.0
        assert summary.imbalance == pytest.approx(0.5)

    def test_empty_book_is_balanced(self):
        assert summarize_order_book(OrderBookSnapshot(symbol="X", timestamp=None)).imbalance == 0.0

    @pytest.mark.parametrize(
        "direction, imbalance, expected",
        [("long", 0.5, True), ("long", -0.1, True), ("long", -0.3, False),
         ("short", -0.5, True), ("short", 0.3, False), ("hold", 0.0, False)],
    )
    def test_flow_confirms(self, direction, imbalance, expected):
        assert flow_confirms(direction, imbalance, 0.2) is expected


class TestOrderBookStream:
    @pytest.mark.asyncio
    async def test_bounded(self):
        gateway = FakeBookGateway([_book(1, 1)])
        stream = OrderBookStream(gateway, "X", max_snapshots=3, sleep=_no_sleep)
        snapshots = [s async for s in stream]
        assert len(snapshots) == 3
        assert gateway.calls == 3

    @pytest.mark.asyncio
    async def test_cancel_stops_iteration(self):
        gateway = FakeBookGateway([_book(1, 1)])
        stream = OrderBookStream(gateway, "X", max_snapshots=10, sleep=_no_sleep)
        seen = 0
        async for _ in stream:
            seen += 1
            if seen == 2:
                stream.cancel()
        assert seen == 2
        assert stream.cancelled

    @pytest.mark.asyncio
    async def test_restart_resets_bound(self):
        gateway = FakeBookGateway([_book(1, 1)])
        stream = OrderBookStream(gateway, "X", max_snapshots=2, sleep=_no_sleep)
        assert len([s async for s in stream]) == 2
        stream.restart()
        assert stream.count == 0
        assert len([s async for s in stream]) == 2

    @pytest.mark.asyncio
    async def test_context_manager_cancels_on_error(self):
        gateway = FakeBookGateway([_book(1, 1)], fail_at=2)
        stream = OrderBookStream(gateway, "X", max_snapshots=5, sleep=_no_sleep)
        with pytest.raises(TransientCommunicationError):
            async with stream:
                async for _ in stream:
                    pass
        assert stream.cancelled

    @pytest.mark.asyncio
    async def test_average_imbalance(self):
        gateway = FakeBookGateway([_book(3, 1), _book(1, 1), _book(1, 3)])
        stream = OrderBookStream(gateway, "X", max_snapshots=2, sleep=_no_sleep)
        assert await average_imbalance(stream) == pytest.approx(0.25)
        assert stream.cancelled

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            OrderBookStream(FakeBookGateway([]), "X", max_snapshots=0)
