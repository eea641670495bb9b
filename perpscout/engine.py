"""PerpScout — trading loop (orchestration).

Connects pair selection, risk sizing and the position lifecycle into three
independent periodic tasks:

* analysis — reconcile, select the best pair, open a position
* monitor  — reconcile, check PnL thresholds, close positions
* report   — log the daily statistics

Each task owns its own cadence.  They coordinate only through the
exchange's position list, read at the start of every cycle.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from perpscout.api.routers import update_status
from perpscout.config import Config
from perpscout.errors import GatewayUnavailableError, TransientCommunicationError
from perpscout.exchange.gateway import candidate_pairs
from perpscout.lifecycle.manager import PositionManager
from perpscout.lifecycle.models import TradingSession
from perpscout.strategy.order_flow import OrderBookStream, average_imbalance, flow_confirms
from perpscout.strategy.pair_selector import PairSelector

logger = logging.getLogger("perpscout.engine")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TradingLoop:
    """Runs the analysis, monitoring and reporting cycles.

    Args:
        config: Application configuration.
        gateway: An ``ExchangeGateway`` (or compatible duck-type / mock).
        manager: The ``PositionManager`` for this run.
        session: The ``TradingSession`` for this run.
        selector: A ``PairSelector``; built from *gateway* when omitted.
        trade_repo: Source of the daily report; optional.
        sleep: Coroutine used between cycles, injectable for tests.
    """

    def __init__(
        self,
        config: Config,
        gateway,
        manager: PositionManager,
        session: TradingSession,
        selector: Optional[PairSelector] = None,
        trade_repo=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._manager = manager
        self._session = session
        self._selector = selector or PairSelector(gateway, config)
        self._trade_repo = trade_repo
        self._sleep = sleep
        self._candidates: list[str] = []
        self._running = False

    @property
    def manager(self) -> PositionManager:
        return self._manager

    @property
    def session(self) -> TradingSession:
        return self._session

    @property
    def candidates(self) -> list[str]:
        return list(self._candidates)

    def stop(self) -> None:
        """Signal every periodic task to stop after its current cycle."""
        self._running = False

    # ── Start-up ─────────────────────────────────────────────────────────

    async def load_candidates(self) -> list[str]:
        """Load markets and derive the candidate pair list."""
        markets = await self._gateway.load_markets()
        self._candidates = candidate_pairs(
            markets,
            suffix=self._config.quote_suffix,
            whitelist=self._config.pair_whitelist,
            blacklist=self._config.pair_blacklist,
            limit=self._config.max_candidates,
        )
        logger.info("Loaded %d candidate pairs", len(self._candidates))
        update_status(candidates=len(self._candidates))
        return self._candidates

    async def initialize(self) -> None:
        """Load candidates and adopt whatever is already open on the exchange."""
        await self.load_candidates()
        await self._manager.reconcile()
        update_status(
            running=True,
            exchange=self._config.exchange_id,
            started_at=self._session.started_at.isoformat(),
            open_positions=self._manager.live_count,
        )

    # ── Analysis cycle ───────────────────────────────────────────────────

    async def _order_flow_agrees(self, pair: str, direction: str) -> bool:
        scoring = self._config.scoring
        stream = OrderBookStream(
            self._gateway,
            pair,
            max_snapshots=scoring.order_flow_snapshots,
            sleep=self._sleep,
        )
        try:
            imbalance = await average_imbalance(stream)
        except TransientCommunicationError as exc:
            logger.warning("%s: order-flow check failed: %s", pair, exc)
            return False
        if imbalance is None:
            return False
        agrees = flow_confirms(direction, imbalance, scoring.order_flow_min_imbalance)
        logger.info(
            "%s order-flow imbalance %.3f %s %s signal",
            pair, imbalance, "confirms" if agrees else "opposes", direction,
        )
        return agrees

    async def run_analysis_cycle(self) -> dict:
        """One pass: reconcile, select, maybe open.

        Returns a dict describing the action taken, e.g.
        ``{"action": "opened", "pair": ...}`` or
        ``{"action": "skipped", "reason": ...}``.
        """
        risk = self._config.risk
        await self._manager.reconcile()
        update_status(
            last_analysis_at=_now_iso(),
            open_positions=self._manager.live_count,
        )

        if self._manager.live_count >= risk.max_positions:
            return self._result({"action": "skipped", "reason": "at_capacity"})

        if not self._candidates:
            await self.load_candidates()
        live = set(self._manager.live_symbols)
        candidates = [p for p in self._candidates if p not in live]

        try:
            best = await self._selector.select_best_pair(candidates)
        except GatewayUnavailableError as exc:
            halted = self._session.record_failed_pass()
            logger.error(
                "Selector pass failed (%d consecutive): %s%s",
                self._session.failed_passes, exc,
                ", new entries halted" if halted else "",
            )
            return self._result({"action": "error", "reason": "gateway_unavailable"})

        if self._session.record_successful_pass():
            logger.info("Gateway recovered, new entries resume next pass")
            return self._result({"action": "skipped", "reason": "entries_halted"})

        if best is None:
            return self._result({"action": "skipped", "reason": "no_signal"})

        update_status(last_best_pair=best.pair, last_best_score=round(best.score, 4))
        if abs(best.score) < risk.open_score_threshold:
            logger.info(
                "%s score %.2f below threshold %.2f",
                best.pair, best.score, risk.open_score_threshold,
            )
            return self._result({"action": "skipped", "reason": "below_threshold", "pair": best.pair})

        direction = best.result.direction
        if self._config.scoring.order_flow_confirm and not await self._order_flow_agrees(
            best.pair, direction
        ):
            return self._result({"action": "skipped", "reason": "order_flow", "pair": best.pair})

        outcome = await self._manager.open_position(
            best.pair,
            direction,
            best.score,
            best.ticker.last,
            best.candles,
            session=self._session,
        )
        update_status(open_positions=self._manager.live_count)
        if outcome.opened:
            return self._result({
                "action": "opened",
                "pair": best.pair,
                "direction": direction,
                "score": best.score,
                "reasons": list(best.result.reasons),
            })
        return self._result({"action": "skipped", "reason": outcome.reason, "pair": best.pair})

    def _result(self, result: dict) -> dict:
        update_status(
            last_action=result.get("action"),
            entries_halted=self._session.entries_halted,
            failed_passes=self._session.failed_passes,
        )
        return result

    # ── Monitoring cycle ─────────────────────────────────────────────────

    async def run_monitor_cycle(self) -> list:
        """One tick: reconcile against a fresh position read, then check thresholds.

        ``reconcile`` fetches under the registry lock, so an entry confirmed
        by the analysis task in the meantime is never mistaken for a close.
        """
        closed = await self._manager.reconcile()
        closed += await self._manager.monitor()
        update_status(last_monitor_at=_now_iso(), open_positions=self._manager.live_count)
        return closed

    # ── Report cycle ─────────────────────────────────────────────────────

    async def run_report_cycle(self) -> Optional[dict]:
        if self._trade_repo is None:
            return None
        report = await asyncio.to_thread(self._trade_repo.daily_report)
        logger.info(
            "Daily report %s: %d trades, win rate %.1f%%, total %.2f%%",
            report["date"], report["total_trades"], report["win_rate"],
            report["total_pnl_percent"],
        )
        update_status(last_report=report)
        return report

    # ── Scheduling ───────────────────────────────────────────────────────

    async def _periodic(
        self,
        name: str,
        interval: float,
        cycle: Callable[[], Awaitable],
        max_cycles: int = 0,
    ) -> None:
        """Run *cycle* every *interval* seconds until stopped.

        Cycle-local exchange errors are logged and the next tick retries;
        anything else propagates to the supervisor.
        """
        count = 0
        while self._running:
            count += 1
            try:
                await cycle()
            except TransientCommunicationError as exc:
                logger.warning("%s cycle %d: %s", name, count, exc)
            if max_cycles > 0 and count >= max_cycles:
                break
            await self._sleep(interval)

    async def run(self, max_cycles: int = 0) -> None:
        """Initialise, then run the three periodic tasks until stopped.

        Args:
            max_cycles: Stop each task after this many cycles (0 = unlimited).

        Raises:
            Exception: the first unhandled error from any task, after the
                others are cancelled.
        """
        self._running = True
        await self.initialize()

        cfg = self._config
        tasks = [
            asyncio.create_task(
                self._periodic("monitor", cfg.monitor_interval_seconds, self.run_monitor_cycle, max_cycles),
                name="monitor",
            ),
            asyncio.create_task(
                self._periodic("analysis", cfg.analysis_interval_seconds, self.run_analysis_cycle, max_cycles),
                name="analysis",
            ),
            asyncio.create_task(
                self._periodic("report", cfg.report_interval_seconds, self.run_report_cycle, max_cycles),
                name="report",
            ),
        ]

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    raise exc
        finally:
            self._running = False
            for task in tasks:
                if not task.done():
                    task.cancel()
            update_status(running=False)
