"""Indicator aggregator — one ``IndicatorSnapshot`` per candle window.

Pure function of its input.  Windows shorter than ``MIN_CANDLES`` are
rejected outright: EMA200 and friends carry no meaning below their
lookback.
"""

import math

from perpscout.config import MIN_CANDLES
from perpscout.errors import InsufficientDataError
from perpscout.exchange.models import Candle
from perpscout.strategy.indicators import (
    calculate_adx,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
)
from perpscout.strategy.models import IndicatorSnapshot


def _last_two(series: list[float]) -> tuple[float, float]:
    """Return ``(last, previous)``; a not-yet-ready previous reads as last."""
    last = series[-1]
    prev = series[-2] if len(series) >= 2 else last
    if math.isnan(prev):
        prev = last
    return last, prev


def build_snapshot(
    candles: list[Candle], min_candles: int = MIN_CANDLES
) -> IndicatorSnapshot:
    """Compute the indicator snapshot for an oldest-first candle window.

    Raises:
        InsufficientDataError: fewer than *min_candles* candles.
    """
    if len(candles) < min_candles:
        raise InsufficientDataError(min_candles, len(candles))

    ema50, ema50_prev = _last_two(calculate_ema(candles, 50))
    ema200, ema200_prev = _last_two(calculate_ema(candles, 200))
    macd_line, signal_line = calculate_macd(candles)
    macd, macd_prev = _last_two(macd_line)
    signal, signal_prev = _last_two(signal_line)
    rsi = calculate_rsi(candles)[-1]
    adx = calculate_adx(candles)[-1]

    return IndicatorSnapshot(
        ema50=ema50,
        ema200=ema200,
        ema50_prev=ema50_prev,
        ema200_prev=ema200_prev,
        rsi=rsi,
        macd_line=macd,
        macd_signal=signal,
        macd_line_prev=macd_prev,
        macd_signal_prev=signal_prev,
        adx=adx,
    )
