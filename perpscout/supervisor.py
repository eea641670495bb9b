"""Supervisor — restarts the trading loop after an unhandled failure.

Every (re)start builds a fresh ``TradingSession`` and ``PositionManager``;
nothing from the crashed run is trusted.  Live positions are re-adopted
from the exchange during ``TradingLoop.initialize``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from perpscout.api.routers import update_status
from perpscout.config import Config
from perpscout.engine import TradingLoop
from perpscout.lifecycle.manager import PositionManager
from perpscout.lifecycle.models import TradingSession
from perpscout.strategy.pair_selector import PairSelector

logger = logging.getLogger("perpscout.supervisor")


class Supervisor:
    """Crash-recovery wrapper around ``TradingLoop``.

    Args:
        config: Application configuration.
        gateway: Shared ``ExchangeGateway``.
        trade_repo: Trade logger passed to each new ``PositionManager``.
        sleep: Coroutine used for the restart cool-down, injectable for tests.
    """

    def __init__(
        self,
        config: Config,
        gateway,
        trade_repo=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._trade_repo = trade_repo
        self._sleep = sleep
        self._loop: Optional[TradingLoop] = None
        self._running = False
        self.restarts = 0

    @property
    def loop(self) -> Optional[TradingLoop]:
        return self._loop

    @property
    def manager(self) -> Optional[PositionManager]:
        return self._loop.manager if self._loop else None

    def build_loop(self) -> TradingLoop:
        """Build a loop with a brand-new session and registry."""
        cfg = self._config
        session = TradingSession(
            max_failed_passes=cfg.max_failed_passes,
            max_trades_per_pair=cfg.risk.max_trades_per_pair,
        )
        manager = PositionManager(self._gateway, cfg.risk, trade_logger=self._trade_repo)
        return TradingLoop(
            config=cfg,
            gateway=self._gateway,
            manager=manager,
            session=session,
            selector=PairSelector(self._gateway, cfg),
            trade_repo=self._trade_repo,
            sleep=self._sleep,
        )

    def stop(self) -> None:
        self._running = False
        if self._loop is not None:
            self._loop.stop()

    async def run(self, max_restarts: int = 0, max_cycles: int = 0) -> None:
        """Run the loop, restarting after ``restart_delay_seconds`` on failure.

        Args:
            max_restarts: Give up after this many restarts (0 = never).
            max_cycles: Forwarded to ``TradingLoop.run``.
        """
        self._running = True
        while self._running:
            self._loop = self.build_loop()
            try:
                await self._loop.run(max_cycles=max_cycles)
                logger.info("Trading loop stopped")
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Trading loop crashed: %s", exc, exc_info=True)
                if not self._running:
                    break
                if max_restarts > 0 and self.restarts >= max_restarts:
                    logger.error("Restart limit (%d) reached, giving up", max_restarts)
                    raise
                self.restarts += 1
                update_status(restarts=self.restarts)
                logger.info(
                    "Restarting in %ds (restart #%d)",
                    self._config.restart_delay_seconds, self.restarts,
                )
                await self._sleep(self._config.restart_delay_seconds)
        self._running = False
