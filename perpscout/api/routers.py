"""Internal API routers — /health, /status, /positions, /trades, /report.

No business logic, no DB writes.  Delegates to the trade repo, the
supervisor and the shared status dict the trading loop updates.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("perpscout.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_STATUS: dict = {
    "running": False,
    "exchange": None,
    "started_at": None,
    "restarts": 0,
    "entries_halted": False,
    "failed_passes": 0,
    "candidates": 0,
    "open_positions": 0,
    "last_analysis_at": None,
    "last_action": None,
    "last_best_pair": None,
    "last_best_score": None,
    "last_monitor_at": None,
    "last_report": None,
}

_status: dict = dict(_DEFAULT_STATUS)
_trade_repo = None   # Set via configure_routers()
_supervisor = None   # Set via configure_routers()


def configure_routers(trade_repo=None, supervisor=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        trade_repo: A ``TradeRepo`` instance (or duck-type for tests).
        supervisor: A ``Supervisor`` whose current ``manager`` serves
                    ``/positions``.
    """
    global _trade_repo, _supervisor  # noqa: PLW0603
    _trade_repo = trade_repo
    _supervisor = supervisor


def update_status(**fields) -> None:
    """Update individual fields of the shared status dict."""
    _status.update(fields)


def reset_status() -> None:
    _status.clear()
    _status.update(_DEFAULT_STATUS)


def get_status_snapshot() -> dict:
    return dict(_status)


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@router.get("/status")
def status() -> dict:
    return get_status_snapshot()


@router.get("/positions")
def positions() -> dict:
    manager = getattr(_supervisor, "manager", None)
    if manager is None:
        return {"positions": [], "count": 0}
    snapshot = manager.snapshot()
    return {"positions": snapshot, "count": len(snapshot)}


@router.get("/trades")
def trades(
    limit: int = Query(20, ge=1, le=500),
    event: Optional[str] = Query(None, pattern="^(ENTRY|EXIT)$"),
    pair: Optional[str] = None,
) -> dict:
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(limit=limit, event=event, pair=pair)


@router.get("/report")
def report(day: Optional[str] = None) -> dict:
    if _trade_repo is None:
        raise HTTPException(status_code=503, detail="trade repository not configured")
    try:
        target = date.fromisoformat(day) if day else None
    except ValueError:
        raise HTTPException(status_code=422, detail=f"invalid date: {day}")
    return _trade_repo.daily_report(target)
