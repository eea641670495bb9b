"""Trade statistics — pure functions for closed-trade analysis."""

from typing import Optional


def calculate_stats(trades: list[dict]) -> dict:
    """Compute summary statistics from a list of closed trades.

    Each trade dict must have ``"pnl"`` and ``"pnl_percent"`` keys (float).

    Returns:
        Dict with ``total_trades``, ``winning_trades``, ``losing_trades``,
        ``win_rate`` (percent), ``average_pnl_percent``,
        ``best_trade_percent``, ``worst_trade_percent``,
        ``total_pnl_percent``, ``net_pnl``, ``profit_factor`` and
        ``max_drawdown``.
    """
    if not trades:
        return {
            "total_trades": 0,
            "winning_trades": 0,
            "losing_trades": 0,
            "win_rate": 0.0,
            "average_pnl_percent": 0.0,
            "best_trade_percent": None,
            "worst_trade_percent": None,
            "total_pnl_percent": 0.0,
            "net_pnl": 0.0,
            "profit_factor": None,
            "max_drawdown": 0.0,
        }

    pnls = [float(t["pnl"] or 0.0) for t in trades]
    pcts = [float(t["pnl_percent"] or 0.0) for t in trades]
    total = len(trades)
    winners = [p for p in pnls if p > 0]
    losers = [p for p in pnls if p <= 0]

    gross_profit = sum(winners)
    gross_loss = abs(sum(losers))
    profit_factor: Optional[float] = (
        gross_profit / gross_loss if gross_loss > 0 else None
    )

    return {
        "total_trades": total,
        "winning_trades": len(winners),
        "losing_trades": len(losers),
        "win_rate": round(len(winners) / total * 100.0, 2),
        "average_pnl_percent": round(sum(pcts) / total, 2),
        "best_trade_percent": round(max(pcts), 2),
        "worst_trade_percent": round(min(pcts), 2),
        "total_pnl_percent": round(sum(pcts), 2),
        "net_pnl": round(sum(pnls), 4),
        "profit_factor": round(profit_factor, 4) if profit_factor is not None else None,
        "max_drawdown": round(_max_drawdown(pnls), 4),
    }


# ── Helpers ──────────────────────────────────────────────────────────────


def _max_drawdown(pnls: list[float]) -> float:
    """Largest peak-to-trough decline of the cumulative P&L curve (positive)."""
    cumulative = 0.0
    peak = 0.0
    max_dd = 0.0
    for p in pnls:
        cumulative += p
        peak = max(peak, cumulative)
        max_dd = max(max_dd, peak - cumulative)
    return max_dd
