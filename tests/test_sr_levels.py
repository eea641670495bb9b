"""Deterministic tests for support/resistance detection and proximity scoring."""

import pytest

from perpscout.exchange.models import Candle
from perpscout.strategy.models import SRLevel, SRLevels
from perpscout.strategy.sr_levels import (
    detect_sr_levels,
    is_choppy,
    proximity_weight,
    sr_proximity_score,
)


def _bar(i: int, high: float, low: float) -> Candle:
    mid = (high + low) / 2
    return Candle(timestamp=i * 60_000, open=mid, high=high, low=low, close=mid)


def _range_candles() -> list[Candle]:
    """Three touches of 105 on the highs, three of 95 on the lows, noise between."""
    return [
        _bar(0, 105.001, 95.004),
        _bar(1, 103.37, 97.11),
        _bar(2, 104.998, 96.23),
        _bar(3, 102.41, 94.996),
        _bar(4, 105.003, 98.52),
        _bar(5, 101.19, 95.002),
    ]


class TestDetectSRLevels:
    def test_levels_partitioned_around_price(self):
        levels = detect_sr_levels(_range_candles(), current_price=100.0)
        assert levels.support == (SRLevel(price=95.0, strength=1.5),)
        assert levels.resistance == (SRLevel(price=105.0, strength=1.5),)

    def test_fewer_than_three_touches_ignored(self):
        candles = [_bar(0, 110.0, 90.0), _bar(1, 110.0, 90.0)]
        levels = detect_sr_levels(candles, current_price=100.0)
        assert levels.support == ()
        assert levels.resistance == ()

    def test_strength_capped(self):
        candles = [_bar(i, 101.0, 99.0) for i in range(12)]
        levels = detect_sr_levels(candles, current_price=100.0)
        assert levels.nearest_support.strength == 5.0
        assert levels.nearest_resistance.strength == 5.0

    def test_sorted_ascending(self):
        candles = []
        for i in range(3):
            candles.append(_bar(i, 120.0, 80.0))
            candles.append(_bar(i + 10, 110.0, 90.0))
        levels = detect_sr_levels(candles, current_price=100.0)
        assert [lvl.price for lvl in levels.support] == [80.0, 90.0]
        assert [lvl.price for lvl in levels.resistance] == [110.0, 120.0]
        assert levels.nearest_support.price == 90.0
        assert levels.nearest_resistance.price == 110.0

    def test_level_at_price_is_support(self):
        candles = [_bar(i, 101.0, 100.0) for i in range(3)]
        levels = detect_sr_levels(candles, current_price=100.0)
        assert levels.nearest_support.price == 100.0

    def test_deterministic(self):
        a = detect_sr_levels(_range_candles(), 100.0)
        b = detect_sr_levels(list(reversed(_range_candles())), 100.0)
        assert a == b


class TestProximity:
    @pytest.mark.parametrize(
        "distance, weight",
        [(0.0, 1.0), (0.3, 1.0), (0.7, 0.8), (1.5, 0.5), (2.0, 0.0), (5.0, 0.0)],
    )
    def test_weight_bands(self, distance, weight):
        assert proximity_weight(distance) == weight

    def test_near_support_is_bonus(self):
        levels = SRLevels(support=(SRLevel(99.8, 4.0),))
        points, reasons = sr_proximity_score(100.0, levels)
        assert points == pytest.approx(2.0)  # weight 1.0 × strength capped at 2
        assert "Near Support" in reasons[0]

    def test_near_resistance_is_penalty(self):
        levels = SRLevels(resistance=(SRLevel(101.5, 1.0),))
        points, reasons = sr_proximity_score(100.0, levels)
        assert points == pytest.approx(-0.5)
        assert "Near Resistance" in reasons[0]

    def test_distant_levels_contribute_nothing(self):
        levels = SRLevels(support=(SRLevel(90.0, 5.0),), resistance=(SRLevel(110.0, 5.0),))
        assert sr_proximity_score(100.0, levels) == (0.0, [])


class TestChoppy:
    def test_strong_tight_range_is_choppy(self):
        levels = SRLevels(support=(SRLevel(99.5, 3.0),), resistance=(SRLevel(100.5, 3.5),))
        assert is_choppy(100.0, levels) is True

    def test_weak_levels_not_choppy(self):
        levels = SRLevels(support=(SRLevel(99.5, 2.5),), resistance=(SRLevel(100.5, 5.0),))
        assert is_choppy(100.0, levels) is False

    def test_wide_range_not_choppy(self):
        levels = SRLevels(support=(SRLevel(98.0, 5.0),), resistance=(SRLevel(102.0, 5.0),))
        assert is_choppy(100.0, levels) is False

    def test_one_sided_not_choppy(self):
        levels = SRLevels(support=(SRLevel(99.9, 5.0),))
        assert is_choppy(100.0, levels) is False
