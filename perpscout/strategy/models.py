"""Strategy data models — typed representations for scoring inputs and outputs."""

from dataclasses import dataclass, field

from perpscout.exchange.models import Candle, Ticker


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Last and previous indicator values for one candle window."""

    ema50: float
    ema200: float
    ema50_prev: float
    ema200_prev: float
    rsi: float
    macd_line: float
    macd_signal: float
    macd_line_prev: float
    macd_signal_prev: float
    adx: float


@dataclass(frozen=True)
class SRLevel:
    """A horizontal price level with repeated touches."""

    price: float
    strength: float  # normalised touch count, capped


@dataclass(frozen=True)
class SRLevels:
    """Support below and resistance above the current price, ascending."""

    support: tuple[SRLevel, ...] = ()
    resistance: tuple[SRLevel, ...] = ()

    @property
    def nearest_support(self) -> SRLevel | None:
        return self.support[-1] if self.support else None

    @property
    def nearest_resistance(self) -> SRLevel | None:
        return self.resistance[0] if self.resistance else None


@dataclass(frozen=True)
class ScoreResult:
    """Signed composite score plus its explanation trail.

    Positive means long bias, negative means short bias; magnitude is
    conviction and is only meaningful relative to other scores.
    """

    score: float
    reasons: tuple[str, ...] = ()

    @property
    def direction(self) -> str:
        if self.score > 0:
            return "long"
        if self.score < 0:
            return "short"
        return "hold"


@dataclass(frozen=True)
class ScoredPair:
    """A pair that survived filtering, with the data it was scored on."""

    pair: str
    candles: list[Candle] = field(repr=False)
    ticker: Ticker
    result: ScoreResult

    @property
    def score(self) -> float:
        return self.result.score
