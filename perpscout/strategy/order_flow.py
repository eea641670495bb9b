"""Order-flow sampling — a bounded, cancellable stream of book snapshots.

``OrderBookStream`` polls the order book through the gateway and yields at
most ``max_snapshots`` snapshots.  Consumers stop it explicitly with
``cancel()`` or by leaving its ``async with`` block.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from perpscout.exchange.models import OrderBookSnapshot

logger = logging.getLogger("perpscout.order_flow")


@dataclass(frozen=True)
class OrderFlowSummary:
    """Aggregated depth on both sides of one snapshot."""

    bid_volume: float
    ask_volume: float
    imbalance: float  # (bids − asks) / (bids + asks), in [-1, 1]


def summarize_order_book(snapshot: OrderBookSnapshot) -> OrderFlowSummary:
    """Sum bid and ask sizes and compute the book imbalance.

    An empty book has zero imbalance.
    """
    bid_volume = sum(size for _, size in snapshot.bids)
    ask_volume = sum(size for _, size in snapshot.asks)
    total = bid_volume + ask_volume
    imbalance = (bid_volume - ask_volume) / total if total > 0 else 0.0
    return OrderFlowSummary(bid_volume=bid_volume, ask_volume=ask_volume, imbalance=imbalance)


def flow_confirms(direction: str, imbalance: float, min_imbalance: float) -> bool:
    """``False`` when the book leans against *direction* by more than *min_imbalance*."""
    if direction == "long":
        return imbalance >= -min_imbalance
    if direction == "short":
        return imbalance <= min_imbalance
    return False


class OrderBookStream:
    """Async iterator over periodic order-book snapshots.

    Args:
        gateway: Provides ``fetch_order_book(symbol, limit)``.
        symbol: Market symbol.
        depth: Book levels per side.
        max_snapshots: Upper bound on yielded snapshots.
        interval: Seconds between polls.
        sleep: Coroutine used to wait between polls, injectable for tests.
    """

    def __init__(
        self,
        gateway,
        symbol: str,
        depth: int = 25,
        max_snapshots: int = 3,
        interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_snapshots < 1:
            raise ValueError(f"max_snapshots must be >= 1, got {max_snapshots}")
        self._gateway = gateway
        self._symbol = symbol
        self._depth = depth
        self._max_snapshots = max_snapshots
        self._interval = interval
        self._sleep = sleep
        self._count = 0
        self._cancelled = False

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def count(self) -> int:
        """Snapshots yielded since the last (re)start."""
        return self._count

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop iteration at the next suspension point."""
        if not self._cancelled:
            logger.debug("Order-flow stream for %s cancelled after %d snapshots",
                         self._symbol, self._count)
        self._cancelled = True

    def restart(self) -> None:
        """Reset the bound and clear cancellation."""
        self._count = 0
        self._cancelled = False

    # ── Async iteration ──────────────────────────────────────────────────

    def __aiter__(self) -> "OrderBookStream":
        return self

    async def __anext__(self) -> OrderBookSnapshot:
        if self._cancelled or self._count >= self._max_snapshots:
            raise StopAsyncIteration
        if self._count > 0:
            await self._sleep(self._interval)
            if self._cancelled:
                raise StopAsyncIteration
        snapshot = await self._gateway.fetch_order_book(self._symbol, self._depth)
        self._count += 1
        return snapshot

    async def __aenter__(self) -> "OrderBookStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()


async def average_imbalance(stream: OrderBookStream) -> Optional[float]:
    """Mean imbalance over every snapshot *stream* yields, ``None`` if none."""
    values: list[float] = []
    async with stream:
        async for snapshot in stream:
            values.append(summarize_order_book(snapshot).imbalance)
    if not values:
        return None
    return sum(values) / len(values)
