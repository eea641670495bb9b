"""Pair selector — scores candidate pairs in throttled batches.

Cheap ticker filters run before the candle fetch.  Each pair is evaluated
independently: one pair failing never aborts its batch.  The winner is
the pair with the largest absolute score, first seen on an exact tie.
"""

import asyncio
import logging
from typing import Callable, Optional

from perpscout.config import Config
from perpscout.errors import GatewayUnavailableError, TransientCommunicationError
from perpscout.strategy import scorer
from perpscout.strategy.models import ScoredPair, ScoreResult

logger = logging.getLogger("perpscout.selector")

# Sentinel for "this pair's exchange calls failed"
_FAILED = object()


class PairSelector:
    """Runs the composite scorer across candidate pairs.

    Args:
        gateway: An ``ExchangeGateway`` (or duck-typed fake) providing
                 ``fetch_ticker`` and ``fetch_ohlcv``.
        config: Application configuration.
        score_fn: Scoring function, ``scorer.score`` by default.
    """

    def __init__(
        self,
        gateway,
        config: Config,
        score_fn: Callable[..., ScoreResult] = scorer.score,
    ) -> None:
        self._gateway = gateway
        self._config = config
        self._score_fn = score_fn
        self.last_scores: dict[str, float] = {}

    async def _evaluate(self, pair: str):
        """Fetch-then-score one pair.

        Returns a ``ScoredPair``, ``None`` when the pair is filtered out or
        has no signal, or ``_FAILED`` on an exchange error.
        """
        scoring = self._config.scoring
        try:
            ticker = await self._gateway.fetch_ticker(pair)

            if ticker.quote_volume < scoring.min_quote_volume:
                logger.debug(
                    "%s skipped: volume %.0f < %.0f",
                    pair, ticker.quote_volume, scoring.min_quote_volume,
                )
                return None
            spread = ticker.spread
            if spread is not None and spread > scoring.max_spread:
                logger.debug("%s skipped: spread %s > %s", pair, spread, scoring.max_spread)
                return None

            candles = await self._gateway.fetch_ohlcv(
                pair, self._config.timeframe, self._config.candle_limit
            )
        except TransientCommunicationError as exc:
            logger.warning("%s: fetch failed: %s", pair, exc)
            return _FAILED

        try:
            result = self._score_fn(pair, candles, ticker, config=scoring)
        except Exception as exc:
            logger.warning("%s: scoring failed: %s", pair, exc)
            return None

        self.last_scores[pair] = result.score
        logger.debug("%s score=%.2f reasons=%s", pair, result.score, list(result.reasons))
        if result.score == 0:
            return None
        return ScoredPair(pair=pair, candles=candles, ticker=ticker, result=result)

    async def select_best_pair(self, candidates: list[str]) -> Optional[ScoredPair]:
        """Return the strongest-signal pair across all batches, or ``None``.

        Raises:
            GatewayUnavailableError: every examined pair failed at the
                exchange, meaning the gateway itself is down.
        """
        self.last_scores = {}
        scoring = self._config.scoring
        threshold = self._config.risk.open_score_threshold

        best: Optional[ScoredPair] = None
        examined = 0
        failed = 0

        for start in range(0, len(candidates), scoring.batch_size):
            batch = candidates[start:start + scoring.batch_size]
            outcomes = await asyncio.gather(*(self._evaluate(p) for p in batch))

            for outcome in outcomes:
                examined += 1
                if outcome is _FAILED:
                    failed += 1
                    continue
                if outcome is None:
                    continue
                if best is None or abs(outcome.score) > abs(best.score):
                    best = outcome

            if (
                scoring.stop_on_qualifying
                and best is not None
                and abs(best.score) >= threshold
            ):
                logger.info(
                    "Qualifying pair %s found after %d/%d candidates",
                    best.pair, examined, len(candidates),
                )
                break

        if examined and failed == examined:
            raise GatewayUnavailableError(
                f"all {examined} candidate fetches failed"
            )

        if best is None:
            logger.info("No pair produced a signal (%d examined, %d failed)", examined, failed)
        else:
            logger.info(
                "Best pair: %s score=%.2f (%s)",
                best.pair, best.score, best.result.direction,
            )
        return best
