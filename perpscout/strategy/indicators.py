"""Technical indicators — EMA, RSI, MACD, ADX. Pure functions, no I/O.

Every function returns a series the same length as its input; entries
before the indicator is ready are ``float('nan')``.
"""

import math

from perpscout.exchange.models import Candle


def _ema_values(values: list[float], period: int) -> list[float]:
    """EMA over a plain value series, seeded with the SMA of the first
    *period* values.  Leading NaNs in *values* are skipped."""
    out: list[float] = [float("nan")] * len(values)
    start = next((i for i, v in enumerate(values) if not math.isnan(v)), len(values))
    if len(values) - start < period:
        return out

    k = 2.0 / (period + 1)
    seed_end = start + period
    out[seed_end - 1] = sum(values[start:seed_end]) / period
    for i in range(seed_end, len(values)):
        out[i] = values[i] * k + out[i - 1] * (1 - k)
    return out


def calculate_ema(candles: list[Candle], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series of closes.

    Uses the standard EMA formula:
        ``EMA_today = close × k + EMA_yesterday × (1 - k)``
    where ``k = 2 / (period + 1)``.

    Raises ``ValueError`` if fewer than *period* candles are provided.
    """
    if len(candles) < period:
        raise ValueError(
            f"Need at least {period} candles for EMA({period}), "
            f"got {len(candles)}"
        )
    return _ema_values([c.close for c in candles], period)


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(candles: list[Candle], period: int = 14) -> list[float]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = SMA of first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 - 100 / (1 + avg_gain / avg_loss)

    A window with neither gains nor losses reads as 50.

    Requires at least ``period + 1`` candles.
    """
    if len(candles) < period + 1:
        raise ValueError(
            f"Need at least {period + 1} candles for RSI({period}), "
            f"got {len(candles)}"
        )

    closes = [c.close for c in candles]
    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]

    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    rsi: list[float] = [float("nan")] * len(candles)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    def _rsi_from_avgs(ag: float, al: float) -> float:
        if al == 0 and ag == 0:
            return 50.0
        if al == 0:
            return 100.0
        return 100.0 - 100.0 / (1.0 + ag / al)

    rsi[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        # deltas are offset by one candle
        rsi[i + 1] = _rsi_from_avgs(avg_gain, avg_loss)

    return rsi


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd(
    candles: list[Candle],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[list[float], list[float]]:
    """Calculate the MACD line and its signal line.

    MACD   = EMA(close, *fast*) − EMA(close, *slow*)
    Signal = EMA(MACD, *signal*)

    Requires at least ``slow + signal`` candles.

    Returns ``(macd_line, signal_line)``.
    """
    min_candles = slow + signal
    if len(candles) < min_candles:
        raise ValueError(
            f"Need at least {min_candles} candles for MACD({fast},{slow},{signal}), "
            f"got {len(candles)}"
        )

    closes = [c.close for c in candles]
    ema_fast = _ema_values(closes, fast)
    ema_slow = _ema_values(closes, slow)
    macd_line = [f - s for f, s in zip(ema_fast, ema_slow)]
    signal_line = _ema_values(macd_line, signal)
    return macd_line, signal_line


# ── ADX ──────────────────────────────────────────────────────────────────


def calculate_adx(candles: list[Candle], period: int = 14) -> list[float]:
    """Calculate the Average Directional Index (ADX).

    Algorithm:
        1. +DM / -DM directional movement per bar.
        2. Wilder-smooth +DM, -DM, and TR over *period*.
        3. +DI = 100 × smoothed_+DM / smoothed_TR
        4. -DI = 100 × smoothed_-DM / smoothed_TR
        5. DX = 100 × |+DI − −DI| / (+DI + −DI)
        6. ADX = Wilder-smoothed DX over *period*.

    A range with no movement at all has DX = 0.

    Requires at least ``2 × period + 1`` candles.
    """
    min_candles = 2 * period + 1
    if len(candles) < min_candles:
        raise ValueError(
            f"Need at least {min_candles} candles for ADX({period}), "
            f"got {len(candles)}"
        )

    n = len(candles)

    plus_dm_raw: list[float] = [0.0]
    minus_dm_raw: list[float] = [0.0]
    tr_raw: list[float] = [0.0]

    for i in range(1, n):
        high = candles[i].high
        low = candles[i].low
        prev_high = candles[i - 1].high
        prev_low = candles[i - 1].low
        prev_close = candles[i - 1].close

        up_move = high - prev_high
        down_move = prev_low - low

        pdm = up_move if (up_move > down_move and up_move > 0) else 0.0
        mdm = down_move if (down_move > up_move and down_move > 0) else 0.0

        tr = max(high - low, abs(high - prev_close), abs(low - prev_close))

        plus_dm_raw.append(pdm)
        minus_dm_raw.append(mdm)
        tr_raw.append(tr)

    smoothed_plus_dm = sum(plus_dm_raw[1 : period + 1])
    smoothed_minus_dm = sum(minus_dm_raw[1 : period + 1])
    smoothed_tr = sum(tr_raw[1 : period + 1])

    def _compute_dx(s_pdm: float, s_mdm: float, s_tr: float) -> float:
        if s_tr == 0:
            return 0.0
        plus_di = 100.0 * s_pdm / s_tr
        minus_di = 100.0 * s_mdm / s_tr
        di_sum = plus_di + minus_di
        if di_sum == 0:
            return 0.0
        return 100.0 * abs(plus_di - minus_di) / di_sum

    # dx_values[0] belongs to candle index *period*
    dx_values: list[float] = [
        _compute_dx(smoothed_plus_dm, smoothed_minus_dm, smoothed_tr)
    ]

    for i in range(period + 1, n):
        smoothed_plus_dm = smoothed_plus_dm - smoothed_plus_dm / period + plus_dm_raw[i]
        smoothed_minus_dm = smoothed_minus_dm - smoothed_minus_dm / period + minus_dm_raw[i]
        smoothed_tr = smoothed_tr - smoothed_tr / period + tr_raw[i]
        dx_values.append(
            _compute_dx(smoothed_plus_dm, smoothed_minus_dm, smoothed_tr)
        )

    adx_result: list[float] = [float("nan")] * n

    adx_prev = sum(dx_values[:period]) / period
    adx_result[2 * period - 1] = adx_prev

    for j in range(period, len(dx_values)):
        adx_prev = (adx_prev * (period - 1) + dx_values[j]) / period
        adx_result[period + j] = adx_prev

    return adx_result
