"""PerpScout — error taxonomy.

Every failure the trading core distinguishes has its own type so callers
can decide between "skip this pair", "skip this trade" and "restart".
"""


class PerpScoutError(Exception):
    """Base class for all PerpScout errors."""


class ConfigError(PerpScoutError, ValueError):
    """Invalid configuration value or combination, raised at load time."""


class TransientCommunicationError(PerpScoutError):
    """A network or API failure talking to the exchange.

    The caller treats the result of that single operation as absent.
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class GatewayUnavailableError(PerpScoutError):
    """Every exchange call in a selector pass failed."""


class InsufficientDataError(PerpScoutError, ValueError):
    """Candle window shorter than the indicator lookback."""

    def __init__(self, required: int, got: int) -> None:
        super().__init__(f"insufficient data: need {required} candles, got {got}")
        self.required = required
        self.got = got


class InvariantViolationError(PerpScoutError):
    """A trade precondition failed (leverage read-back, size, margin).

    The trade attempt is aborted; nothing is sent to the exchange after
    this is raised.
    """
