"""Position lifecycle data models — states, positions, trade records, session."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionState(str, Enum):
    """Per-symbol lifecycle state.

    ``NONE → OPENING → OPEN → CLOSING → CLOSED → NONE``
    """

    NONE = "none"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


# States that occupy a slot against ``max_positions``
LIVE_STATES = frozenset({PositionState.OPENING, PositionState.OPEN, PositionState.CLOSING})


@dataclass(frozen=True)
class Position:
    """A confirmed live position."""

    symbol: str
    side: str  # "long" or "short"
    entry_price: float
    contracts: float
    leverage: int
    opened_at: datetime
    score: float = 0.0

    @property
    def margin(self) -> float:
        """Margin committed: notional at entry divided by leverage."""
        if self.leverage <= 0:
            return 0.0
        return self.entry_price * self.contracts / self.leverage


@dataclass(frozen=True)
class PendingEntry:
    """Context of an entry order not yet visible in the position list."""

    direction: str
    score: float
    leverage: int
    order_price: float
    session: Optional["TradingSession"] = None


@dataclass
class PositionTracker:
    """Mutable per-symbol state owned by the ``PositionManager``."""

    symbol: str
    state: PositionState = PositionState.NONE
    position: Optional[Position] = None
    pending: Optional[PendingEntry] = None
    opening_started_at: Optional[datetime] = None
    close_reason: Optional[str] = None
    last_mark_price: Optional[float] = None
    last_pnl: float = 0.0
    last_pnl_pct: float = 0.0

    def to_dict(self) -> dict:
        pos = self.position
        return {
            "symbol": self.symbol,
            "state": self.state.value,
            "side": pos.side if pos else None,
            "entry_price": pos.entry_price if pos else None,
            "contracts": pos.contracts if pos else None,
            "leverage": pos.leverage if pos else None,
            "opened_at": pos.opened_at.isoformat() if pos else None,
            "mark_price": self.last_mark_price,
            "pnl": round(self.last_pnl, 4),
            "pnl_pct": round(self.last_pnl_pct, 2),
        }


@dataclass(frozen=True)
class EntryRecord:
    """What the trade logger receives when a position opens."""

    timestamp: datetime
    pair: str
    side: str
    entry_price: float
    amount: float
    leverage: int
    score: float
    reason: str


@dataclass(frozen=True)
class ClosedTradeRecord:
    """What the trade logger receives when a position closes."""

    timestamp: datetime
    pair: str
    side: str
    entry_price: float
    exit_price: float
    amount: float
    leverage: int
    pnl: float
    pnl_percent: float
    reason: str
    duration_hours: float


@dataclass(frozen=True)
class OpenOutcome:
    """Result of one ``open_position`` attempt."""

    symbol: str
    opened: bool
    reason: str
    position: Optional[Position] = None


@dataclass
class TradingSession:
    """Per-run context handed to every scheduled cycle.

    Rebuilt from scratch on every supervisor (re)start; positions are never
    carried here, they are re-read from the exchange.
    """

    max_failed_passes: int = 3
    max_trades_per_pair: int = 1
    entries_halted: bool = False
    failed_passes: int = 0
    started_at: datetime = field(default_factory=utcnow)
    _entry_day: Optional[date] = field(default=None, init=False, repr=False)
    _entries: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    # ── Daily per-pair entry cap ─────────────────────────────────────────

    def _roll_day(self, now: datetime) -> None:
        today = now.astimezone(timezone.utc).date()
        if self._entry_day != today:
            self._entry_day = today
            self._entries = {}

    def entries_today(self, pair: str, now: Optional[datetime] = None) -> int:
        self._roll_day(now or utcnow())
        return self._entries.get(pair, 0)

    def can_enter(self, pair: str, now: Optional[datetime] = None) -> bool:
        return self.entries_today(pair, now) < self.max_trades_per_pair

    def record_entry(self, pair: str, now: Optional[datetime] = None) -> None:
        self._roll_day(now or utcnow())
        self._entries[pair] = self._entries.get(pair, 0) + 1

    # ── Gateway health ───────────────────────────────────────────────────

    def record_failed_pass(self) -> bool:
        """Count a total-failure selector pass; return ``True`` if entries halt."""
        self.failed_passes += 1
        if self.failed_passes >= self.max_failed_passes:
            self.entries_halted = True
        return self.entries_halted

    def record_successful_pass(self) -> bool:
        """Reset the failure count; return ``True`` if this pass lifted a halt.

        The lifting pass itself opens nothing, entries resume on the next one.
        """
        was_halted = self.entries_halted
        self.failed_passes = 0
        self.entries_halted = False
        return was_halted
