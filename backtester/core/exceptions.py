class BacktesterError(Exception):
    """Base class for all backtester exceptions."""


class ConfigError(BacktesterError):
    """Raised for missing/malformed configuration."""


class DataValidationError(BacktesterError):
    """Raised when input bars or ledger dates break ordering or schema rules."""


class TradeExecutionError(BacktesterError):
    """Raised when order handling fails for reasons other than a normal rejection."""


class OrderValidationError(TradeExecutionError):
    """Raised when an order reaches the ledger with a non-positive quantity or price."""


class StrategyError(BacktesterError):
    """Raised when a strategy or indicator collaborator cannot produce output."""


__all__ = [
    "BacktesterError",
    "ConfigError",
    "DataValidationError",
    "TradeExecutionError",
    "OrderValidationError",
    "StrategyError",
]
