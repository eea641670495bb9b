"""Position lifecycle manager — one state machine per symbol.

``NONE → OPENING → OPEN → CLOSING → CLOSED → NONE``

Every transition past OPENING or CLOSING needs a confirmed read-back of
the exchange's position list; an order acknowledgement alone never moves
a symbol forward.  Transient exchange errors leave the state unchanged and
the next scheduled tick retries.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from perpscout.config import RiskConfig
from perpscout.errors import InvariantViolationError, TransientCommunicationError
from perpscout.exchange.models import Candle, ExchangePosition
from perpscout.lifecycle.models import (
    LIVE_STATES,
    ClosedTradeRecord,
    EntryRecord,
    OpenOutcome,
    PendingEntry,
    Position,
    PositionState,
    PositionTracker,
    TradingSession,
    utcnow,
)
from perpscout.risk.sizer import (
    confirm_leverage,
    intraday_volatility,
    select_leverage,
    size_position,
)

logger = logging.getLogger("perpscout.lifecycle")

TAKE_PROFIT = "take_profit"
STOP_LOSS = "stop_loss"
CLOSED_EXTERNALLY = "closed_externally"

_ENTRY_SIDE = {"long": "buy", "short": "sell"}
_EXIT_SIDE = {"long": "sell", "short": "buy"}


def unrealized_pnl_pct(
    position: Position,
    mark_price: Optional[float],
    unrealized_pnl: Optional[float],
) -> tuple[float, float]:
    """Return ``(pnl, pnl_pct)`` where the percentage is relative to margin.

    ``pnl_pct = unrealized_pnl / (entry_price × contracts / leverage) × 100``

    When the exchange reports no unrealized PnL it is derived from the
    mark price.  No data at all reads as 0.
    """
    if unrealized_pnl is None:
        if mark_price is None:
            return 0.0, 0.0
        delta = mark_price - position.entry_price
        if position.side == "short":
            delta = -delta
        unrealized_pnl = delta * position.contracts

    margin = position.margin
    if margin <= 0:
        return unrealized_pnl, 0.0
    return unrealized_pnl, unrealized_pnl / margin * 100.0


def exit_reason(pnl_pct: float, risk: RiskConfig) -> Optional[str]:
    """Boundary-inclusive take-profit / stop-loss check."""
    if pnl_pct >= risk.take_profit_pct:
        return TAKE_PROFIT
    if pnl_pct <= risk.stop_loss_pct:
        return STOP_LOSS
    return None


class PositionManager:
    """Owns the per-symbol lifecycle registry.

    Args:
        gateway: An ``ExchangeGateway`` (or duck-typed fake).
        risk: Risk limits.
        trade_logger: Receives ``log_entry`` / ``log_exit`` calls and
                      answers ``open_entry``.  Failures are logged and
                      swallowed.
        clock: Returns the current aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        gateway,
        risk: RiskConfig,
        trade_logger=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._risk = risk
        self._trade_logger = trade_logger
        self._clock = clock
        self._trackers: dict[str, PositionTracker] = {}
        self._lock = asyncio.Lock()

    # ── Queries ──────────────────────────────────────────────────────────

    def state(self, symbol: str) -> PositionState:
        tracker = self._trackers.get(symbol)
        return tracker.state if tracker else PositionState.NONE

    def tracker(self, symbol: str) -> Optional[PositionTracker]:
        return self._trackers.get(symbol)

    @property
    def live_count(self) -> int:
        return sum(1 for t in self._trackers.values() if t.state in LIVE_STATES)

    @property
    def live_symbols(self) -> list[str]:
        return [s for s, t in self._trackers.items() if t.state in LIVE_STATES]

    def snapshot(self) -> list[dict]:
        """Registry contents for the status API."""
        return [t.to_dict() for t in self._trackers.values()]

    def can_open(self, symbol: str, session: Optional[TradingSession] = None) -> tuple[bool, str]:
        """Check every precondition for ``NONE → OPENING``."""
        if self.state(symbol) != PositionState.NONE:
            return False, f"{symbol} already {self.state(symbol).value}"
        if self.live_count >= self._risk.max_positions:
            return False, f"position cap reached ({self._risk.max_positions})"
        if session is not None and not session.can_enter(symbol, self._clock()):
            return False, f"{symbol} daily entry cap reached ({self._risk.max_trades_per_pair})"
        return True, "ok"

    # ── Trade logger (fire-and-forget) ───────────────────────────────────

    async def _log_entry(self, record: EntryRecord) -> None:
        if self._trade_logger is None:
            return
        try:
            await asyncio.to_thread(self._trade_logger.log_entry, record)
        except Exception as exc:
            logger.warning("Trade logger failed on entry for %s: %s", record.pair, exc)

    async def _log_exit(self, record: ClosedTradeRecord) -> None:
        if self._trade_logger is None:
            return
        try:
            await asyncio.to_thread(self._trade_logger.log_exit, record)
        except Exception as exc:
            logger.warning("Trade logger failed on exit for %s: %s", record.pair, exc)

    async def _restored_entry(self, symbol: str) -> tuple[Optional[datetime], float]:
        """Look up ``opened_at`` and score of the still-open logged entry."""
        if self._trade_logger is None:
            return None, 0.0
        try:
            row = await asyncio.to_thread(self._trade_logger.open_entry, symbol)
        except Exception as exc:
            logger.warning("Trade logger lookup failed for %s: %s", symbol, exc)
            return None, 0.0
        if not row:
            return None, 0.0
        opened_at = row.get("timestamp")
        if isinstance(opened_at, str):
            opened_at = datetime.fromisoformat(opened_at)
        return opened_at, float(row.get("score") or 0.0)

    # ── Opening ──────────────────────────────────────────────────────────

    def _discard(self, tracker: PositionTracker) -> None:
        if self._trackers.get(tracker.symbol) is tracker:
            del self._trackers[tracker.symbol]

    async def open_position(
        self,
        symbol: str,
        direction: str,
        score: float,
        price: float,
        candles: list[Candle],
        session: Optional[TradingSession] = None,
    ) -> OpenOutcome:
        """Try to open a position in *direction* (``"long"`` / ``"short"``).

        Returns an ``OpenOutcome``; it never raises for a failed attempt.
        A symbol left in OPENING (order sent, position not yet visible) is
        confirmed or timed out by ``reconcile``.
        """
        if direction not in _ENTRY_SIDE:
            return OpenOutcome(symbol, False, f"no direction ({direction})")

        async with self._lock:
            allowed, why = self.can_open(symbol, session)
            if not allowed:
                logger.info("Skip %s: %s", symbol, why)
                return OpenOutcome(symbol, False, why)
            tracker = PositionTracker(
                symbol=symbol,
                state=PositionState.OPENING,
                opening_started_at=self._clock(),
            )
            self._trackers[symbol] = tracker

        try:
            volatility = intraday_volatility(candles, self._risk.volatility_window)
            leverage = select_leverage(volatility, self._risk)
            await confirm_leverage(self._gateway, symbol, leverage)

            balance = await self._gateway.fetch_balance()
            size = size_position(balance.free, price, leverage, self._risk)
            if not size.is_tradeable:
                raise InvariantViolationError(f"{symbol}: {size.skip_reason}")
            contracts = self._gateway.amount_to_precision(symbol, size.contracts)

            logger.info(
                "Opening %s %s: %s contracts @ ~%s, %dx, margin %.2f (vol %.2f%%)",
                direction, symbol, contracts, price, leverage, size.margin, volatility,
            )
            tracker.pending = PendingEntry(
                direction=direction,
                score=score,
                leverage=leverage,
                order_price=price,
                session=session,
            )
            fill = await self._gateway.create_order(
                symbol, "market", _ENTRY_SIDE[direction], contracts
            )
        except InvariantViolationError as exc:
            self._discard(tracker)
            logger.warning("Open %s aborted: %s", symbol, exc)
            return OpenOutcome(symbol, False, str(exc))
        except TransientCommunicationError as exc:
            self._discard(tracker)
            logger.warning("Open %s failed: %s", symbol, exc)
            return OpenOutcome(symbol, False, str(exc))

        try:
            live = await self._gateway.fetch_positions()
        except TransientCommunicationError as exc:
            logger.warning("Open %s: read-back failed, staying OPENING: %s", symbol, exc)
            return OpenOutcome(symbol, False, "awaiting confirmation")

        confirmed = next((p for p in live if p.symbol == symbol), None)
        if confirmed is None:
            logger.warning("Open %s: order %s not yet visible, staying OPENING", symbol, fill.order_id)
            return OpenOutcome(symbol, False, "awaiting confirmation")

        async with self._lock:
            if self._trackers.get(symbol) is not tracker or tracker.state != PositionState.OPENING:
                # Reconcile confirmed (or dropped) it while the read-back was in flight
                opened = tracker.state == PositionState.OPEN
                return OpenOutcome(symbol, opened, "opened" if opened else "settled by reconcile",
                                   tracker.position)
            position = await self._confirm_entry(tracker, confirmed, fill.average)
        return OpenOutcome(symbol, True, "opened", position)

    async def _confirm_entry(
        self,
        tracker: PositionTracker,
        confirmed: ExchangePosition,
        fill_price: Optional[float] = None,
    ) -> Position:
        """``OPENING → OPEN`` once the position is visible on the exchange.

        Records the entry against the session's daily cap and hands the
        entry record to the trade logger.  Caller holds the lock.
        """
        pending = tracker.pending
        now = self._clock()
        position = Position(
            symbol=tracker.symbol,
            side=confirmed.side or pending.direction,
            entry_price=confirmed.entry_price or fill_price or pending.order_price,
            contracts=confirmed.contracts,
            leverage=pending.leverage,
            opened_at=tracker.opening_started_at or now,
            score=pending.score,
        )
        tracker.position = position
        tracker.state = PositionState.OPEN
        tracker.pending = None
        tracker.opening_started_at = None
        tracker.last_mark_price = confirmed.mark_price
        if pending.session is not None:
            pending.session.record_entry(tracker.symbol, now)

        logger.info(
            "Opened %s %s: %s @ %s, %dx",
            position.side, tracker.symbol, position.contracts, position.entry_price,
            position.leverage,
        )
        await self._log_entry(
            EntryRecord(
                timestamp=position.opened_at,
                pair=tracker.symbol,
                side=position.side,
                entry_price=position.entry_price,
                amount=position.contracts,
                leverage=position.leverage,
                score=pending.score,
                reason=f"score {pending.score:.2f}",
            )
        )
        return position

    # ── Closing ──────────────────────────────────────────────────────────

    async def _finalize(
        self,
        tracker: PositionTracker,
        exit_price: float,
        reason: str,
    ) -> ClosedTradeRecord:
        """``CLOSING/OPEN → CLOSED → NONE`` and hand the record to the logger.

        Caller holds the lock.
        """
        position = tracker.position
        now = self._clock()
        tracker.state = PositionState.CLOSED
        record = ClosedTradeRecord(
            timestamp=now,
            pair=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            amount=position.contracts,
            leverage=position.leverage,
            pnl=tracker.last_pnl,
            pnl_percent=tracker.last_pnl_pct,
            reason=reason,
            duration_hours=max((now - position.opened_at).total_seconds(), 0.0) / 3600.0,
        )
        logger.info(
            "Closed %s %s (%s): pnl %.4f (%.2f%%) after %.2fh",
            position.side, position.symbol, reason, record.pnl, record.pnl_percent,
            record.duration_hours,
        )
        self._discard(tracker)
        await self._log_exit(record)
        return record

    async def _close(
        self, tracker: PositionTracker, live: ExchangePosition
    ) -> Optional[ClosedTradeRecord]:
        """Send a reduce-only market order and confirm the position is gone.

        Caller holds the lock.
        """
        position = tracker.position
        tracker.state = PositionState.CLOSING
        try:
            fill = await self._gateway.create_order(
                position.symbol,
                "market",
                _EXIT_SIDE[position.side],
                live.contracts,
                {"reduceOnly": True},
            )
            remaining = await self._gateway.fetch_positions()
        except TransientCommunicationError as exc:
            logger.warning(
                "Close %s (%s) failed, will retry: %s",
                position.symbol, tracker.close_reason, exc,
            )
            return None

        if any(p.symbol == position.symbol for p in remaining):
            logger.warning("Close %s not yet confirmed, staying CLOSING", position.symbol)
            return None

        exit_price = fill.average or tracker.last_mark_price or position.entry_price
        return await self._finalize(tracker, exit_price, tracker.close_reason or "")

    # ── Monitoring ───────────────────────────────────────────────────────

    async def _fetch_positions(
        self, positions: Optional[Iterable[ExchangePosition]]
    ) -> Optional[dict[str, ExchangePosition]]:
        if positions is None:
            try:
                positions = await self._gateway.fetch_positions()
            except TransientCommunicationError as exc:
                logger.warning("Position fetch failed: %s", exc)
                return None
        return {p.symbol: p for p in positions}

    async def monitor(
        self, positions: Optional[list[ExchangePosition]] = None
    ) -> list[ClosedTradeRecord]:
        """One monitoring tick: update PnL, close on threshold breach.

        Symbols already CLOSING get their close order retried.  Each close
        runs under the registry lock and re-checks that the tracker is still
        registered, so a concurrent ``reconcile`` never settles it twice.
        """
        live = await self._fetch_positions(positions)
        if live is None:
            return []

        closed: list[ClosedTradeRecord] = []
        for tracker in list(self._trackers.values()):
            if tracker.state not in (PositionState.OPEN, PositionState.CLOSING):
                continue
            exchange_pos = live.get(tracker.symbol)
            if exchange_pos is None:
                # Vanished positions are settled by reconcile
                continue

            pnl, pnl_pct = unrealized_pnl_pct(
                tracker.position, exchange_pos.mark_price, exchange_pos.unrealized_pnl
            )
            tracker.last_mark_price = exchange_pos.mark_price
            tracker.last_pnl = pnl
            tracker.last_pnl_pct = pnl_pct

            reason = None
            if tracker.state == PositionState.OPEN:
                reason = exit_reason(pnl_pct, self._risk)
                if reason is None:
                    logger.debug("%s pnl %.2f%%", tracker.symbol, pnl_pct)
                    continue

            async with self._lock:
                if self._trackers.get(tracker.symbol) is not tracker or tracker.state not in (
                    PositionState.OPEN, PositionState.CLOSING,
                ):
                    continue
                if reason is not None and tracker.state == PositionState.OPEN:
                    tracker.close_reason = reason
                    logger.info(
                        "%s %s hit: pnl %.2f%% (tp %.2f / sl %.2f)",
                        tracker.symbol, reason, pnl_pct,
                        self._risk.take_profit_pct, self._risk.stop_loss_pct,
                    )
                record = await self._close(tracker, exchange_pos)
            if record is not None:
                closed.append(record)
        return closed

    # ── Reconciliation ───────────────────────────────────────────────────

    async def reconcile(
        self, positions: Optional[list[ExchangePosition]] = None
    ) -> list[ClosedTradeRecord]:
        """Rebuild the registry from the exchange's position list.

        * Unknown live positions are adopted as OPEN.
        * OPENING symbols that became visible are confirmed exactly as
          ``open_position`` would have; those past
          ``opening_timeout_seconds`` fall back to NONE.
        * OPEN or CLOSING symbols missing on the exchange are finalized.

        The whole pass, including the position fetch, holds the registry
        lock.  Pass *positions* only when no other task can change the
        registry in between.

        Returns the records of positions found closed.
        """
        async with self._lock:
            live = await self._fetch_positions(positions)
            if live is None:
                return []
            return await self._reconcile_locked(live)

    async def _reconcile_locked(
        self, live: dict[str, ExchangePosition]
    ) -> list[ClosedTradeRecord]:
        now = self._clock()
        closed: list[ClosedTradeRecord] = []

        for symbol, exchange_pos in live.items():
            tracker = self._trackers.get(symbol)
            if tracker is not None and tracker.state in (PositionState.OPEN, PositionState.CLOSING):
                continue
            if tracker is not None and tracker.state == PositionState.OPENING:
                if tracker.pending is None:
                    # Entry order not sent yet; open_position owns it
                    continue
                logger.info("Reconcile: %s confirmed on exchange, OPENING → OPEN", symbol)
                await self._confirm_entry(tracker, exchange_pos)
                continue

            logger.info("Reconcile: adopting untracked %s position on %s", exchange_pos.side, symbol)
            opened_at, score = await self._restored_entry(symbol)
            self._trackers[symbol] = PositionTracker(
                symbol=symbol,
                state=PositionState.OPEN,
                position=Position(
                    symbol=symbol,
                    side=exchange_pos.side,
                    entry_price=exchange_pos.entry_price,
                    contracts=exchange_pos.contracts,
                    leverage=int(exchange_pos.leverage or self._risk.default_leverage),
                    opened_at=opened_at or now,
                    score=score,
                ),
                last_mark_price=exchange_pos.mark_price,
            )

        for symbol, tracker in list(self._trackers.items()):
            if symbol in live:
                continue
            if tracker.state == PositionState.OPENING:
                started = tracker.opening_started_at or now
                if (now - started).total_seconds() > self._risk.opening_timeout_seconds:
                    logger.warning("Reconcile: %s never appeared, OPENING → NONE", symbol)
                    self._discard(tracker)
            elif tracker.state in (PositionState.OPEN, PositionState.CLOSING):
                reason = tracker.close_reason or CLOSED_EXTERNALLY
                logger.warning("Reconcile: %s no longer on exchange (%s)", symbol, reason)
                exit_price = tracker.last_mark_price or tracker.position.entry_price
                closed.append(await self._finalize(tracker, exit_price, reason))
            else:
                self._discard(tracker)

        return closed
