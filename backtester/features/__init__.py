"""
Backtester: feature engineering package

This package includes:
- `indicators`: technical indicators (SMA, EMA, RSI, ATR, MACD, Bollinger)
  and the per-bar `TechnicalIndicatorProvider` used by the backtest driver

Usage:
    from backtester.features import indicators

All functions are vectorized pandas operations with no I/O.
"""

from . import indicators

__all__ = ["indicators"]
