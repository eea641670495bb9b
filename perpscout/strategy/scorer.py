"""Composite scorer — one signed score per pair, pure functions, no I/O.

The score accumulates in a fixed order and every step appends a reason:

1. Technical base from EMA50/EMA200 and MACD crossovers plus MACD sign,
   gated by a direction-specific RSI band.
2. ADX trend-strength gate: a trendless market is HOLD.
3. Banded volume bonus in the direction of the running score.
4. Tight-spread bonus, same direction.
5. Support/Resistance proximity.
6. Choppy-range dampening (score halved).

Positive means long bias, negative means short bias.
"""

from typing import Optional

from perpscout.config import MIN_CANDLES, ScoringConfig
from perpscout.errors import InsufficientDataError
from perpscout.exchange.models import Candle, Ticker
from perpscout.strategy.aggregator import build_snapshot
from perpscout.strategy.models import IndicatorSnapshot, ScoreResult, SRLevels
from perpscout.strategy.sr_levels import detect_sr_levels, is_choppy, sr_proximity_score

# ── Technical increments ────────────────────────────────────────────────
EMA_CROSS_POINTS = 3.0
MACD_CROSS_POINTS = 2.0
MACD_SIGN_POINTS = 1.0
TIGHT_SPREAD_POINTS = 1.0

# (lower bound in USDT quote volume, points, label), highest first
VOLUME_BANDS: tuple[tuple[float, float, str], ...] = (
    (20_000_000.0, 3.0, "Very High"),
    (5_000_000.0, 2.0, "High"),
    (1_000_000.0, 1.0, "Medium"),
)

INSUFFICIENT_DATA = "Insufficient data"


def _sign(value: float) -> float:
    if value > 0:
        return 1.0
    if value < 0:
        return -1.0
    return 0.0


def _technical_score(
    snap: IndicatorSnapshot, config: ScoringConfig
) -> tuple[float, list[str]]:
    """Crossover and MACD-sign increments, then the RSI band gate."""
    score = 0.0
    reasons: list[str] = []

    if snap.ema50_prev < snap.ema200_prev and snap.ema50 > snap.ema200:
        score += EMA_CROSS_POINTS
        reasons.append(f"EMA Crossover Up (+{EMA_CROSS_POINTS:g})")
    elif snap.ema50_prev > snap.ema200_prev and snap.ema50 < snap.ema200:
        score -= EMA_CROSS_POINTS
        reasons.append(f"EMA Crossover Down (-{EMA_CROSS_POINTS:g})")

    if snap.macd_line_prev < snap.macd_signal_prev and snap.macd_line > snap.macd_signal:
        score += MACD_CROSS_POINTS
        reasons.append(f"MACD Crossover Up (+{MACD_CROSS_POINTS:g})")
    elif snap.macd_line_prev > snap.macd_signal_prev and snap.macd_line < snap.macd_signal:
        score -= MACD_CROSS_POINTS
        reasons.append(f"MACD Crossover Down (-{MACD_CROSS_POINTS:g})")

    if snap.macd_line > 0:
        score += MACD_SIGN_POINTS
        reasons.append(f"MACD Positive (+{MACD_SIGN_POINTS:g})")
    elif snap.macd_line < 0:
        score -= MACD_SIGN_POINTS
        reasons.append(f"MACD Negative (-{MACD_SIGN_POINTS:g})")

    # RSI gates rather than scores
    if score > 0 and not (config.bull_rsi_min <= snap.rsi <= config.bull_rsi_max):
        reasons.append(
            f"RSI {snap.rsi:.1f} outside bullish band "
            f"{config.bull_rsi_min:g}-{config.bull_rsi_max:g}, signal suppressed"
        )
        score = 0.0
    elif score < 0 and not (config.bear_rsi_min <= snap.rsi <= config.bear_rsi_max):
        reasons.append(
            f"RSI {snap.rsi:.1f} outside bearish band "
            f"{config.bear_rsi_min:g}-{config.bear_rsi_max:g}, signal suppressed"
        )
        score = 0.0

    return score, reasons


def volume_points(quote_volume: float) -> tuple[float, Optional[str]]:
    """Return the unsigned volume bonus and its band label."""
    for floor, points, label in VOLUME_BANDS:
        if quote_volume >= floor:
            return points, label
    return 0.0, None


def score_snapshot(
    snap: IndicatorSnapshot,
    ticker: Ticker,
    levels: SRLevels,
    config: ScoringConfig = ScoringConfig(),
) -> ScoreResult:
    """Score a pre-computed indicator snapshot.

    Args:
        snap: Indicator snapshot for the pair's candle window.
        ticker: Live ticker; ``ticker.last`` anchors S/R distances.
        levels: Support/resistance levels around ``ticker.last``.
        config: Gates, bands and thresholds.

    Returns:
        ``ScoreResult`` with the ordered reason trail.
    """
    score, reasons = _technical_score(snap, config)

    if snap.adx < config.adx_floor:
        reasons.append(f"ADX {snap.adx:.1f} below {config.adx_floor:g}, HOLD")
        return ScoreResult(score=0.0, reasons=tuple(reasons))

    if score == 0:
        reasons.append("No directional signal, HOLD")
        return ScoreResult(score=0.0, reasons=tuple(reasons))

    direction = _sign(score)

    points, label = volume_points(ticker.quote_volume)
    if label is not None:
        score += direction * points
        reasons.append(
            f"{label} Volume ({ticker.quote_volume / 1_000_000:.1f}M, "
            f"{'+' if direction > 0 else '-'}{points:g})"
        )

    spread = ticker.spread
    if spread is not None and 0 <= spread < config.tight_spread:
        score += direction * TIGHT_SPREAD_POINTS
        reasons.append(
            f"Tight Spread ({spread:g}, "
            f"{'+' if direction > 0 else '-'}{TIGHT_SPREAD_POINTS:g})"
        )

    price = ticker.last or 0.0
    sr_points, sr_reasons = sr_proximity_score(price, levels)
    score += sr_points
    reasons.extend(sr_reasons)

    if is_choppy(price, levels):
        score /= 2.0
        reasons.append("Choppy range between strong S/R, score halved")

    return ScoreResult(score=score, reasons=tuple(reasons))


def score(
    pair: str,
    candles: list[Candle],
    ticker: Ticker,
    sr_levels: Optional[SRLevels] = None,
    config: ScoringConfig = ScoringConfig(),
    min_candles: int = MIN_CANDLES,
) -> ScoreResult:
    """Score one pair from its candle window, live ticker and S/R levels.

    Never raises for short windows or a missing price: those return a
    neutral result whose reason starts with ``"Insufficient data"``.
    When *sr_levels* is ``None`` they are detected from *candles*.
    """
    if ticker is None or not ticker.has_valid_price:
        return ScoreResult(
            score=0.0, reasons=(f"{INSUFFICIENT_DATA}: no valid price for {pair}",)
        )

    try:
        snap = build_snapshot(candles, min_candles=min_candles)
    except InsufficientDataError as exc:
        return ScoreResult(
            score=0.0,
            reasons=(f"{INSUFFICIENT_DATA}: need {exc.required} candles, got {exc.got}",),
        )

    if sr_levels is None:
        sr_levels = detect_sr_levels(candles, ticker.last)

    return score_snapshot(snap, ticker, sr_levels, config)
