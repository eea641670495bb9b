"""Exchange data models — typed representations of ccxt unified structures."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar.  Sequences are ordered oldest-first."""

    timestamp: int  # ms since epoch
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Ticker:
    """Live ticker for one symbol."""

    symbol: str
    last: Optional[float]
    bid: Optional[float]
    ask: Optional[float]
    quote_volume: float

    @property
    def spread(self) -> Optional[float]:
        """Absolute bid/ask spread, or ``None`` when either side is missing."""
        if self.bid is None or self.ask is None:
            return None
        return self.ask - self.bid

    @property
    def has_valid_price(self) -> bool:
        return self.last is not None and self.last > 0


@dataclass(frozen=True)
class Balance:
    """USDT account balance snapshot."""

    free: float
    used: float
    total: float


@dataclass(frozen=True)
class ExchangePosition:
    """An open position as reported by the exchange."""

    symbol: str
    side: str  # "long" or "short"
    contracts: float
    entry_price: float
    mark_price: Optional[float]
    unrealized_pnl: Optional[float]
    leverage: Optional[float]


@dataclass(frozen=True)
class OrderFill:
    """Result of a market order."""

    order_id: str
    symbol: str
    side: str  # "buy" or "sell"
    amount: float
    filled: float
    average: Optional[float]
    status: str


@dataclass(frozen=True)
class OrderBookSnapshot:
    """Top-of-book depth for one symbol at one instant."""

    symbol: str
    timestamp: Optional[int]
    bids: list[tuple[float, float]] = field(default_factory=list)  # (price, size)
    asks: list[tuple[float, float]] = field(default_factory=list)
