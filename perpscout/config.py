"""PerpScout — application configuration.

Loads .env variables into typed, frozen config objects.
Validates required variables and risk invariants on startup.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from perpscout.errors import ConfigError


_REQUIRED_VARS = [
    "EXCHANGE_API_KEY",
    "EXCHANGE_API_SECRET",
]

MIN_CANDLES = 200


@dataclass(frozen=True)
class RiskConfig:
    """Process-wide risk limits.  Read-only after startup.

    Exactly one sizing mode is active: a fixed USDT margin per trade
    (``trade_amount_usdt``) or a percentage of free balance (``risk_pct``),
    the latter clamped to ``[min_trade_usdt, max_trade_usdt]``.
    """

    max_positions: int = 5
    max_trades_per_pair: int = 1
    default_leverage: int = 5
    min_leverage: int = 2
    max_leverage: int = 10
    trade_amount_usdt: Optional[float] = 10.0
    risk_pct: Optional[float] = None
    min_trade_usdt: float = 10.0
    max_trade_usdt: float = 100.0
    take_profit_pct: float = 10.0
    stop_loss_pct: float = -5.0
    high_volatility_pct: float = 3.0
    low_volatility_pct: float = 1.0
    volatility_window: int = 24
    open_score_threshold: float = 2.0
    opening_timeout_seconds: int = 120

    def __post_init__(self) -> None:
        if self.max_positions <= 0:
            raise ConfigError(f"max_positions must be > 0, got {self.max_positions}")
        if self.max_trades_per_pair < 1:
            raise ConfigError(
                f"max_trades_per_pair must be >= 1, got {self.max_trades_per_pair}"
            )
        if self.min_leverage < 1:
            raise ConfigError(f"min_leverage must be >= 1, got {self.min_leverage}")
        if not (self.min_leverage <= self.default_leverage <= self.max_leverage):
            raise ConfigError(
                "leverage must satisfy min <= default <= max, got "
                f"{self.min_leverage} / {self.default_leverage} / {self.max_leverage}"
            )
        if (self.trade_amount_usdt is None) == (self.risk_pct is None):
            raise ConfigError("set exactly one of trade_amount_usdt or risk_pct")
        if self.trade_amount_usdt is not None and self.trade_amount_usdt <= 0:
            raise ConfigError(
                f"trade_amount_usdt must be positive, got {self.trade_amount_usdt}"
            )
        if self.risk_pct is not None and not (0 < self.risk_pct <= 100):
            raise ConfigError(f"risk_pct must be in (0, 100], got {self.risk_pct}")
        if not (0 < self.min_trade_usdt <= self.max_trade_usdt):
            raise ConfigError(
                "trade amount range must satisfy 0 < min <= max, got "
                f"{self.min_trade_usdt} / {self.max_trade_usdt}"
            )
        if self.take_profit_pct <= 0:
            raise ConfigError(
                f"take_profit_pct must be positive, got {self.take_profit_pct}"
            )
        if self.stop_loss_pct >= 0:
            raise ConfigError(f"stop_loss_pct must be negative, got {self.stop_loss_pct}")
        if not (0 <= self.low_volatility_pct < self.high_volatility_pct):
            raise ConfigError(
                "volatility thresholds must satisfy 0 <= low < high, got "
                f"{self.low_volatility_pct} / {self.high_volatility_pct}"
            )
        if self.volatility_window < 1:
            raise ConfigError(
                f"volatility_window must be >= 1, got {self.volatility_window}"
            )
        if self.open_score_threshold < 0:
            raise ConfigError(
                f"open_score_threshold must be >= 0, got {self.open_score_threshold}"
            )
        if self.opening_timeout_seconds <= 0:
            raise ConfigError(
                "opening_timeout_seconds must be positive, got "
                f"{self.opening_timeout_seconds}"
            )


@dataclass(frozen=True)
class ScoringConfig:
    """Pair-selection filters, scorer gates and selector pacing."""

    min_quote_volume: float = 500_000.0
    max_spread: float = 0.5
    tight_spread: float = 0.1
    batch_size: int = 5
    min_request_interval: float = 0.2
    adx_floor: float = 20.0
    bull_rsi_min: float = 35.0
    bull_rsi_max: float = 75.0
    bear_rsi_min: float = 25.0
    bear_rsi_max: float = 65.0
    stop_on_qualifying: bool = False
    order_flow_confirm: bool = False
    order_flow_snapshots: int = 3
    order_flow_min_imbalance: float = 0.2

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.min_request_interval < 0:
            raise ConfigError(
                "min_request_interval must be >= 0, got "
                f"{self.min_request_interval}"
            )
        if self.tight_spread > self.max_spread:
            raise ConfigError("tight_spread must not exceed max_spread")
        if not (self.bull_rsi_min < self.bull_rsi_max):
            raise ConfigError("bull RSI band is empty")
        if not (self.bear_rsi_min < self.bear_rsi_max):
            raise ConfigError("bear RSI band is empty")
        if self.order_flow_snapshots < 1:
            raise ConfigError("order_flow_snapshots must be >= 1")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    api_key: str
    api_secret: str
    exchange_id: str = "bybit"
    testnet: bool = False
    timeframe: str = "1h"
    candle_limit: int = 250
    quote_suffix: str = "/USDT:USDT"
    max_candidates: int = 56
    pair_whitelist: tuple[str, ...] = ()
    pair_blacklist: tuple[str, ...] = ()
    analysis_interval_seconds: int = 60
    monitor_interval_seconds: int = 15
    report_interval_seconds: int = 3600
    restart_delay_seconds: int = 30
    max_failed_passes: int = 3
    db_path: str = "data/perpscout.db"
    log_level: str = "INFO"
    health_port: int = 8080
    risk: RiskConfig = field(default_factory=RiskConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    def __post_init__(self) -> None:
        if self.candle_limit < MIN_CANDLES:
            raise ConfigError(
                f"candle_limit must be >= {MIN_CANDLES}, got {self.candle_limit}"
            )
        for name in (
            "analysis_interval_seconds",
            "monitor_interval_seconds",
            "report_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")


# ── Env helpers ──────────────────────────────────────────────────────────


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(s.strip() for s in raw.split(",") if s.strip())


def _env_optional_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    if raw.strip() == "":
        return None
    return float(raw)


def load_risk_config() -> RiskConfig:
    """Build a ``RiskConfig`` from ``RISK_*`` variables.

    Setting ``RISK_PCT`` switches to percentage sizing and disables the
    fixed trade amount unless ``TRADE_AMOUNT_USDT`` is also set (which is
    rejected as ambiguous).
    """
    risk_pct = _env_optional_float("RISK_PCT", None)
    default_amount = None if risk_pct is not None else 10.0
    return RiskConfig(
        max_positions=int(os.environ.get("MAX_POSITIONS", "5")),
        max_trades_per_pair=int(os.environ.get("MAX_TRADES_PER_PAIR", "1")),
        default_leverage=int(os.environ.get("DEFAULT_LEVERAGE", "5")),
        min_leverage=int(os.environ.get("MIN_LEVERAGE", "2")),
        max_leverage=int(os.environ.get("MAX_LEVERAGE", "10")),
        trade_amount_usdt=_env_optional_float("TRADE_AMOUNT_USDT", default_amount),
        risk_pct=risk_pct,
        min_trade_usdt=float(os.environ.get("MIN_TRADE_USDT", "10")),
        max_trade_usdt=float(os.environ.get("MAX_TRADE_USDT", "100")),
        take_profit_pct=float(os.environ.get("TAKE_PROFIT_PCT", "10")),
        stop_loss_pct=float(os.environ.get("STOP_LOSS_PCT", "-5")),
        high_volatility_pct=float(os.environ.get("HIGH_VOLATILITY_PCT", "3")),
        low_volatility_pct=float(os.environ.get("LOW_VOLATILITY_PCT", "1")),
        volatility_window=int(os.environ.get("VOLATILITY_WINDOW", "24")),
        open_score_threshold=float(os.environ.get("OPEN_SCORE_THRESHOLD", "2")),
        opening_timeout_seconds=int(os.environ.get("OPENING_TIMEOUT_SECONDS", "120")),
    )


def load_scoring_config() -> ScoringConfig:
    """Build a ``ScoringConfig`` from environment variables."""
    return ScoringConfig(
        min_quote_volume=float(os.environ.get("MIN_QUOTE_VOLUME", "500000")),
        max_spread=float(os.environ.get("MAX_SPREAD", "0.5")),
        tight_spread=float(os.environ.get("TIGHT_SPREAD", "0.1")),
        batch_size=int(os.environ.get("BATCH_SIZE", "5")),
        min_request_interval=float(os.environ.get("MIN_REQUEST_INTERVAL", "0.2")),
        adx_floor=float(os.environ.get("ADX_FLOOR", "20")),
        bull_rsi_min=float(os.environ.get("BULL_RSI_MIN", "35")),
        bull_rsi_max=float(os.environ.get("BULL_RSI_MAX", "75")),
        bear_rsi_min=float(os.environ.get("BEAR_RSI_MIN", "25")),
        bear_rsi_max=float(os.environ.get("BEAR_RSI_MAX", "65")),
        stop_on_qualifying=_env_bool("STOP_ON_QUALIFYING", False),
        order_flow_confirm=_env_bool("ORDER_FLOW_CONFIRM", False),
        order_flow_snapshots=int(os.environ.get("ORDER_FLOW_SNAPSHOTS", "3")),
        order_flow_min_imbalance=float(os.environ.get("ORDER_FLOW_MIN_IMBALANCE", "0.2")),
    )


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, and ``ConfigError`` on any invalid value.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        api_key=os.environ["EXCHANGE_API_KEY"],
        api_secret=os.environ["EXCHANGE_API_SECRET"],
        exchange_id=os.environ.get("EXCHANGE_ID", "bybit"),
        testnet=_env_bool("EXCHANGE_TESTNET", False),
        timeframe=os.environ.get("TIMEFRAME", "1h"),
        candle_limit=int(os.environ.get("CANDLE_LIMIT", "250")),
        quote_suffix=os.environ.get("QUOTE_SUFFIX", "/USDT:USDT"),
        max_candidates=int(os.environ.get("MAX_CANDIDATES", "56")),
        pair_whitelist=_env_list("PAIR_WHITELIST"),
        pair_blacklist=_env_list("PAIR_BLACKLIST"),
        analysis_interval_seconds=int(os.environ.get("ANALYSIS_INTERVAL_SECONDS", "60")),
        monitor_interval_seconds=int(os.environ.get("MONITOR_INTERVAL_SECONDS", "15")),
        report_interval_seconds=int(os.environ.get("REPORT_INTERVAL_SECONDS", "3600")),
        restart_delay_seconds=int(os.environ.get("RESTART_DELAY_SECONDS", "30")),
        max_failed_passes=int(os.environ.get("MAX_FAILED_PASSES", "3")),
        db_path=os.environ.get("DB_PATH", "data/perpscout.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        risk=load_risk_config(),
        scoring=load_scoring_config(),
    )
