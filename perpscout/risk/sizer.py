"""Risk sizer — leverage from volatility, contracts from margin budget.

Everything except ``confirm_leverage`` is pure math, no I/O.
"""

import logging
import math
from dataclasses import dataclass

from perpscout.config import RiskConfig
from perpscout.errors import InvariantViolationError
from perpscout.exchange.models import Candle

logger = logging.getLogger("perpscout.sizer")


@dataclass(frozen=True)
class PositionSize:
    """Outcome of a sizing calculation.

    ``contracts == 0`` means "skip this trade"; ``skip_reason`` says why.
    """

    leverage: int
    margin: float
    position_value: float
    contracts: float
    skip_reason: str | None = None

    @property
    def is_tradeable(self) -> bool:
        return self.contracts > 0


def intraday_volatility(candles: list[Candle], window: int = 24) -> float:
    """Mean per-candle range ``(high − low) / low`` over the last *window* candles, in percent.

    Returns 0.0 for an empty window.  Candles with a non-positive low are
    ignored.
    """
    recent = [c for c in candles[-window:] if c.low > 0]
    if not recent:
        return 0.0
    return sum((c.high - c.low) / c.low for c in recent) / len(recent) * 100.0


def select_leverage(volatility_pct: float, risk: RiskConfig) -> int:
    """Three-band leverage policy.

    * above ``high_volatility_pct`` → ``min_leverage``
    * below ``low_volatility_pct``  → ``max_leverage``
    * otherwise                     → ``default_leverage``

    The result is always within ``[min_leverage, max_leverage]``.
    """
    if math.isnan(volatility_pct):
        leverage = risk.default_leverage
    elif volatility_pct > risk.high_volatility_pct:
        leverage = risk.min_leverage
    elif volatility_pct < risk.low_volatility_pct:
        leverage = risk.max_leverage
    else:
        leverage = risk.default_leverage
    return max(risk.min_leverage, min(risk.max_leverage, leverage))


def margin_budget(free_balance: float, risk: RiskConfig) -> float:
    """Margin to commit: the fixed amount, or a clamped percentage of balance."""
    if risk.trade_amount_usdt is not None:
        return risk.trade_amount_usdt
    raw = max(free_balance, 0.0) * (risk.risk_pct / 100.0)
    return max(risk.min_trade_usdt, min(risk.max_trade_usdt, raw))


def size_position(
    free_balance: float,
    price: float,
    leverage: int,
    risk: RiskConfig,
) -> PositionSize:
    """Turn balance, price and leverage into a contract count.

    Formula::

        margin         = margin_budget(free_balance)
        position_value = margin × leverage
        contracts      = position_value / price

    Insufficient balance or a non-positive price yields ``contracts = 0``
    rather than an exception.
    """
    margin = margin_budget(free_balance, risk)

    if free_balance < margin:
        return PositionSize(
            leverage=leverage,
            margin=margin,
            position_value=0.0,
            contracts=0.0,
            skip_reason=f"insufficient balance {free_balance:.2f} < margin {margin:.2f}",
        )
    if price <= 0 or leverage <= 0:
        return PositionSize(
            leverage=leverage,
            margin=margin,
            position_value=0.0,
            contracts=0.0,
            skip_reason=f"invalid price {price} or leverage {leverage}",
        )

    position_value = margin * leverage
    return PositionSize(
        leverage=leverage,
        margin=margin,
        position_value=position_value,
        contracts=position_value / price,
    )


async def confirm_leverage(gateway, symbol: str, leverage: int) -> int:
    """Set leverage on the exchange and verify the read-back.

    Raises:
        InvariantViolationError: the exchange reports a different value
            (or none at all).
    """
    await gateway.set_leverage(symbol, leverage)
    reported = await gateway.fetch_leverage(symbol)
    if reported is None or int(round(reported)) != leverage:
        raise InvariantViolationError(
            f"{symbol}: leverage read-back {reported} != requested {leverage}"
        )
    logger.debug("%s leverage confirmed at %dx", symbol, leverage)
    return leverage
