"""Exchange gateway — async ccxt adapter.

Handles all communication with the derivatives exchange: markets, tickers,
candles, balance, positions, leverage and order placement.  Every call
passes through the shared ``RequestThrottle`` and every ccxt failure is
surfaced as ``TransientCommunicationError``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import ccxt.async_support as ccxt_async

from perpscout.config import Config
from perpscout.errors import InvariantViolationError, TransientCommunicationError
from perpscout.exchange.models import (
    Balance,
    Candle,
    ExchangePosition,
    OrderBookSnapshot,
    OrderFill,
    Ticker,
)
from perpscout.exchange.throttle import RequestThrottle

logger = logging.getLogger("perpscout.gateway")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt

# Exchanges answer "set the same leverage again" with an error
_LEVERAGE_UNCHANGED_MARKERS = ("leverage not modified", "no need to change")


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _position_side(raw_side: Any, signed_contracts: float) -> Optional[str]:
    """Normalise a ccxt position side to ``"long"`` / ``"short"``.

    Some exchanges leave ``side`` empty and sign the contract count instead.
    """
    side = str(raw_side or "").lower()
    if side in ("long", "buy"):
        return "long"
    if side in ("short", "sell"):
        return "short"
    if signed_contracts < 0:
        return "short"
    return None


def candidate_pairs(
    markets: dict,
    suffix: str = "/USDT:USDT",
    whitelist: tuple[str, ...] = (),
    blacklist: tuple[str, ...] = (),
    limit: int = 0,
) -> list[str]:
    """List tradable linear perpetual symbols from a ``load_markets`` result.

    A non-empty *whitelist* restricts the result to those symbols (keeping
    whitelist order).  *blacklist* entries are always removed.  Market
    order is otherwise preserved so iteration is deterministic.
    """
    active = [
        symbol
        for symbol, market in markets.items()
        if symbol.endswith(suffix) and (market or {}).get("active", True) is not False
    ]
    if whitelist:
        allowed = set(active)
        active = [s for s in whitelist if s in allowed]
    banned = set(blacklist)
    pairs = [s for s in active if s not in banned]
    if limit > 0:
        pairs = pairs[:limit]
    return pairs


class ExchangeGateway:
    """Async gateway wrapping a ccxt unified exchange.

    Args:
        config: Application configuration (credentials, exchange id).
        exchange: A ready ccxt async exchange instance.  Built from
                  *config* when omitted; tests pass a fake.
        throttle: Shared single-slot throttle.  Built from
                  ``config.scoring.min_request_interval`` when omitted.
        sleep: Coroutine used for retry back-off, injectable for tests.
    """

    def __init__(
        self,
        config: Config,
        exchange: Any = None,
        throttle: Optional[RequestThrottle] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._exchange = exchange if exchange is not None else self._create_exchange(config)
        self._throttle = throttle or RequestThrottle(config.scoring.min_request_interval)
        self._sleep = sleep

    @staticmethod
    def _create_exchange(config: Config):
        """Create a ccxt async exchange configured for linear swaps."""
        exchange_cls = getattr(ccxt_async, config.exchange_id)
        exchange = exchange_cls({
            "apiKey": config.api_key,
            "secret": config.api_secret,
            "enableRateLimit": True,
            "options": {
                "defaultType": "swap",
                "adjustForTimeDifference": True,
            },
        })
        if config.testnet:
            exchange.set_sandbox_mode(True)
            logger.info("Gateway: sandbox mode enabled for %s", config.exchange_id)
        return exchange

    @property
    def throttle(self) -> RequestThrottle:
        return self._throttle

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        retries: int = _MAX_RETRIES,
    ) -> Any:
        """Run one exchange call with throttling and back-off retry.

        Network errors are retried; exchange-side rejections are not.
        Both end up as ``TransientCommunicationError`` for the caller.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(retries):
            await self._throttle.wait()
            try:
                return await factory()
            except ccxt_async.NetworkError as exc:
                last_exc = exc
                if attempt + 1 >= retries:
                    break
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "%s network error (%s) — retry %d/%d in %.1fs",
                    operation, exc, attempt + 1, retries, delay,
                )
                await self._sleep(delay)
            except ccxt_async.BaseError as exc:
                raise TransientCommunicationError(operation, str(exc)) from exc

        raise TransientCommunicationError(operation, str(last_exc)) from last_exc

    # ── Market data ──────────────────────────────────────────────────────

    async def load_markets(self) -> dict:
        """Return the exchange's market map (symbol → market dict)."""
        return await self._call("load_markets", lambda: self._exchange.load_markets())

    async def fetch_ticker(self, symbol: str) -> Ticker:
        raw = await self._call(
            f"fetch_ticker({symbol})", lambda: self._exchange.fetch_ticker(symbol)
        )
        last = _float_or_none(raw.get("last")) or _float_or_none(raw.get("close"))
        volume = raw.get("quoteVolume") or raw.get("baseVolume") or 0.0
        return Ticker(
            symbol=symbol,
            last=last,
            bid=_float_or_none(raw.get("bid")),
            ask=_float_or_none(raw.get("ask")),
            quote_volume=float(volume),
        )

    async def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Fetch candles ordered oldest-first."""
        rows = await self._call(
            f"fetch_ohlcv({symbol})",
            lambda: self._exchange.fetch_ohlcv(symbol, timeframe, None, limit),
        )
        candles = [
            Candle(
                timestamp=int(r[0]),
                open=float(r[1]),
                high=float(r[2]),
                low=float(r[3]),
                close=float(r[4]),
                volume=float(r[5]) if len(r) > 5 and r[5] is not None else 0.0,
            )
            for r in rows
        ]
        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def fetch_order_book(self, symbol: str, limit: int = 25) -> OrderBookSnapshot:
        raw = await self._call(
            f"fetch_order_book({symbol})",
            lambda: self._exchange.fetch_order_book(symbol, limit),
        )
        return OrderBookSnapshot(
            symbol=symbol,
            timestamp=raw.get("timestamp"),
            bids=[(float(p), float(s)) for p, s, *_ in raw.get("bids", [])],
            asks=[(float(p), float(s)) for p, s, *_ in raw.get("asks", [])],
        )

    # ── Account ──────────────────────────────────────────────────────────

    async def fetch_balance(self) -> Balance:
        raw = await self._call("fetch_balance", lambda: self._exchange.fetch_balance())
        usdt = raw.get("USDT") or {}
        return Balance(
            free=float(usdt.get("free") or 0.0),
            used=float(usdt.get("used") or 0.0),
            total=float(usdt.get("total") or 0.0),
        )

    async def fetch_positions(self) -> list[ExchangePosition]:
        """Return live positions only (non-zero contracts)."""
        raw = await self._call("fetch_positions", lambda: self._exchange.fetch_positions())
        positions: list[ExchangePosition] = []
        for p in raw:
            signed = float(p.get("contracts") or 0.0)
            contracts = abs(signed)
            if contracts <= 0:
                continue
            side = _position_side(p.get("side"), signed)
            if side is None:
                logger.warning(
                    "Position on %s has no usable side (%r), skipped",
                    p.get("symbol"), p.get("side"),
                )
                continue
            positions.append(
                ExchangePosition(
                    symbol=p.get("symbol", ""),
                    side=side,
                    contracts=contracts,
                    entry_price=float(p.get("entryPrice") or 0.0),
                    mark_price=_float_or_none(p.get("markPrice")),
                    unrealized_pnl=_float_or_none(p.get("unrealizedPnl")),
                    leverage=_float_or_none(p.get("leverage")),
                )
            )
        return positions

    # ── Leverage ─────────────────────────────────────────────────────────

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set leverage; an "already set" rejection counts as success."""
        try:
            await self._call(
                f"set_leverage({symbol})",
                lambda: self._exchange.set_leverage(leverage, symbol),
            )
        except TransientCommunicationError as exc:
            if any(m in str(exc).lower() for m in _LEVERAGE_UNCHANGED_MARKERS):
                logger.debug("Leverage for %s already %dx", symbol, leverage)
                return
            raise

    async def fetch_leverage(self, symbol: str) -> Optional[float]:
        """Read back the leverage the exchange reports for *symbol*."""
        raw = await self._call(
            f"fetch_leverage({symbol})", lambda: self._exchange.fetch_leverage(symbol)
        )
        return _float_or_none(raw.get("longLeverage")) or _float_or_none(
            raw.get("shortLeverage")
        )

    # ── Orders ───────────────────────────────────────────────────────────

    def amount_to_precision(self, symbol: str, amount: float) -> float:
        """Snap *amount* down to the market's amount step.

        Needs ``load_markets`` to have run.

        Raises:
            InvariantViolationError: the snapped amount is zero or below the
                market's minimum order amount.
            TransientCommunicationError: the market is unknown.
        """
        try:
            market = self._exchange.market(symbol)
            snapped = float(self._exchange.amount_to_precision(symbol, amount))
        except ccxt_async.InvalidOrder as exc:
            raise InvariantViolationError(
                f"{symbol}: amount {amount} below the market's precision"
            ) from exc
        except ccxt_async.BaseError as exc:
            raise TransientCommunicationError(f"amount_to_precision({symbol})", str(exc)) from exc

        min_amount = _float_or_none(((market.get("limits") or {}).get("amount") or {}).get("min"))
        if snapped <= 0 or (min_amount is not None and snapped < min_amount):
            raise InvariantViolationError(
                f"{symbol}: amount {snapped} below minimum {min_amount}"
            )
        return snapped

    async def create_order(
        self,
        symbol: str,
        order_type: str,
        side: str,
        amount: float,
        params: Optional[dict] = None,
    ) -> OrderFill:
        """Place an order.  Never retried: a resend could double the fill."""
        raw = await self._call(
            f"create_order({symbol})",
            lambda: self._exchange.create_order(
                symbol, order_type, side, amount, None, params or {}
            ),
            retries=1,
        )
        return OrderFill(
            order_id=str(raw.get("id", "")),
            symbol=symbol,
            side=side,
            amount=float(raw.get("amount") or amount),
            filled=float(raw.get("filled") or 0.0),
            average=_float_or_none(raw.get("average")) or _float_or_none(raw.get("price")),
            status=raw.get("status") or "",
        )

    async def close(self) -> None:
        """Release the underlying HTTP session."""
        await self._exchange.close()
