"""Tests for the status API endpoints."""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from perpscout.api.routers import configure_routers, reset_status, update_status
from perpscout.lifecycle.models import Position, PositionState, PositionTracker
from perpscout.main import app, warn_if_live

client = TestClient(app)


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_trade_repo(trades=None, total=0):
    """Return a mock TradeRepo with canned responses."""
    repo = MagicMock()
    if trades is None:
        trades = []
    repo.get_trades.return_value = {"trades": trades, "total": total}
    repo.daily_report.return_value = {"date": "2026-03-02", "total_trades": 0}
    return repo


def _make_supervisor(trackers=()):
    manager = MagicMock()
    manager.snapshot.return_value = [t.to_dict() for t in trackers]
    supervisor = MagicMock()
    supervisor.manager = manager
    return supervisor


def _open_tracker(symbol="BTC/USDT:USDT") -> PositionTracker:
    return PositionTracker(
        symbol=symbol,
        state=PositionState.OPEN,
        position=Position(
            symbol=symbol, side="long", entry_price=100.0, contracts=0.5, leverage=5,
            opened_at=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc), score=6.0,
        ),
        last_mark_price=101.0,
        last_pnl=0.5,
        last_pnl_pct=5.0,
    )


@pytest.fixture(autouse=True)
def _reset():
    reset_status()
    configure_routers(trade_repo=None, supervisor=None)
    yield
    reset_status()
    configure_routers(trade_repo=None, supervisor=None)


# ── Tests ────────────────────────────────────────────────────────────────


class TestHealthAndStatus:
    def test_health(self):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_status_defaults(self):
        data = client.get("/status").json()
        assert data["running"] is False
        assert data["open_positions"] == 0
        assert data["entries_halted"] is False

    def test_status_reflects_updates(self):
        update_status(running=True, open_positions=2, last_best_pair="ETH/USDT:USDT")
        data = client.get("/status").json()
        assert data["running"] is True
        assert data["open_positions"] == 2
        assert data["last_best_pair"] == "ETH/USDT:USDT"


class TestPositionsEndpoint:
    def test_no_supervisor(self):
        assert client.get("/positions").json() == {"positions": [], "count": 0}

    def test_registry_snapshot(self):
        configure_routers(supervisor=_make_supervisor([_open_tracker()]))
        data = client.get("/positions").json()
        assert data["count"] == 1
        pos = data["positions"][0]
        assert pos["symbol"] == "BTC/USDT:USDT"
        assert pos["state"] == "open"
        assert pos["side"] == "long"
        assert pos["leverage"] == 5
        assert pos["pnl_pct"] == 5.0


class TestTradesEndpoint:
    def test_no_repo(self):
        assert client.get("/trades").json() == {"trades": [], "total": 0}

    def test_passes_filters(self):
        repo = _make_trade_repo(trades=[{"pair": "BTC/USDT:USDT", "event": "EXIT"}], total=1)
        configure_routers(trade_repo=repo)
        resp = client.get("/trades", params={"limit": 5, "event": "EXIT", "pair": "BTC/USDT:USDT"})
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        repo.get_trades.assert_called_once_with(limit=5, event="EXIT", pair="BTC/USDT:USDT")

    def test_invalid_event_rejected(self):
        configure_routers(trade_repo=_make_trade_repo())
        assert client.get("/trades", params={"event": "OTHER"}).status_code == 422

    def test_limit_bounds(self):
        configure_routers(trade_repo=_make_trade_repo())
        assert client.get("/trades", params={"limit": 0}).status_code == 422


class TestReportEndpoint:
    def test_no_repo_is_503(self):
        assert client.get("/report").status_code == 503

    def test_today_by_default(self):
        repo = _make_trade_repo()
        configure_routers(trade_repo=repo)
        assert client.get("/report").status_code == 200
        repo.daily_report.assert_called_once_with(None)

    def test_explicit_day(self):
        repo = _make_trade_repo()
        configure_routers(trade_repo=repo)
        client.get("/report", params={"day": "2026-03-02"})
        repo.daily_report.assert_called_once_with(date(2026, 3, 2))

    def test_bad_day_is_422(self):
        configure_routers(trade_repo=_make_trade_repo())
        assert client.get("/report", params={"day": "yesterday"}).status_code == 422


class TestWarnIfLive:
    def test_live(self, caplog):
        with caplog.at_level("WARNING", logger="perpscout"):
            assert warn_if_live(False) is True
        assert "LIVE TRADING" in caplog.text

    def test_testnet(self):
        assert warn_if_live(True) is False
