"""Support/Resistance level detection from candle extremes — pure functions."""

from perpscout.exchange.models import Candle
from perpscout.strategy.models import SRLevel, SRLevels

# Distance bands (percent of price) → proximity weight
PROXIMITY_BANDS: tuple[tuple[float, float], ...] = (
    (0.5, 1.0),
    (1.0, 0.8),
    (2.0, 0.5),
)
PROXIMITY_STRENGTH_CAP = 2.0

CHOPPY_BAND_PCT = 2.0
CHOPPY_MIN_STRENGTH = 3.0


def _tally_touches(candles: list[Candle], decimals: int) -> dict[float, int]:
    """Count how often each rounded high/low price occurs."""
    touches: dict[float, int] = {}
    for candle in candles:
        for price in (candle.high, candle.low):
            rounded = round(price, decimals)
            touches[rounded] = touches.get(rounded, 0) + 1
    return touches


def detect_sr_levels(
    candles: list[Candle],
    current_price: float,
    decimals: int = 2,
    min_touches: int = 3,
    max_strength: float = 5.0,
) -> SRLevels:
    """Detect horizontal support and resistance levels.

    Every candle high and low is rounded to *decimals* places and tallied.
    Prices touched at least *min_touches* times become levels with
    ``strength = min(touches / 2, max_strength)``.

    Args:
        candles: Candle window, any order.
        current_price: Levels at or below this price are support, levels
                       above it are resistance.
        decimals: Price granularity for grouping touches.
        min_touches: Minimum touch count for a level.
        max_strength: Strength cap.

    Returns:
        ``SRLevels`` with both sides sorted ascending by price.
    """
    touches = _tally_touches(candles, decimals)

    levels = sorted(
        (
            SRLevel(price=price, strength=min(count / 2.0, max_strength))
            for price, count in touches.items()
            if count >= min_touches
        ),
        key=lambda lvl: lvl.price,
    )

    support = tuple(lvl for lvl in levels if lvl.price <= current_price)
    resistance = tuple(lvl for lvl in levels if lvl.price > current_price)
    return SRLevels(support=support, resistance=resistance)


def proximity_weight(distance_pct: float) -> float:
    """Map a distance-to-level (percent of price) onto its weight band."""
    for limit, weight in PROXIMITY_BANDS:
        if distance_pct < limit:
            return weight
    return 0.0


def sr_proximity_score(price: float, levels: SRLevels) -> tuple[float, list[str]]:
    """Signed contribution of the nearest support and resistance.

    Nearby support pushes the score up (bounce), nearby resistance pushes
    it down (rejection).  Each side contributes at most
    ``PROXIMITY_STRENGTH_CAP``.

    Returns:
        ``(contribution, reasons)``.
    """
    if price <= 0:
        return 0.0, []

    contribution = 0.0
    reasons: list[str] = []

    support = levels.nearest_support
    if support is not None:
        distance = (price - support.price) / price * 100.0
        weight = proximity_weight(distance)
        if weight > 0:
            bonus = weight * min(support.strength, PROXIMITY_STRENGTH_CAP)
            contribution += bonus
            reasons.append(
                f"Near Support {support.price} ({distance:.2f}%, +{bonus:.2f})"
            )

    resistance = levels.nearest_resistance
    if resistance is not None:
        distance = (resistance.price - price) / price * 100.0
        weight = proximity_weight(distance)
        if weight > 0:
            penalty = weight * min(resistance.strength, PROXIMITY_STRENGTH_CAP)
            contribution -= penalty
            reasons.append(
                f"Near Resistance {resistance.price} ({distance:.2f}%, -{penalty:.2f})"
            )

    return contribution, reasons


def is_choppy(price: float, levels: SRLevels) -> bool:
    """``True`` when strong support and resistance box the price in tightly."""
    support = levels.nearest_support
    resistance = levels.nearest_resistance
    if support is None or resistance is None or price <= 0:
        return False
    if support.strength < CHOPPY_MIN_STRENGTH or resistance.strength < CHOPPY_MIN_STRENGTH:
        return False
    width_pct = (resistance.price - support.price) / price * 100.0
    return width_pct < CHOPPY_BAND_PCT
