"""
Feature engineering: technical indicators.

Contains vectorized indicator calculations built on pandas, plus the
per-bar provider the backtest driver reads indicator snapshots from.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Sequence

import numpy as np
import pandas as pd

from backtester.core.exceptions import StrategyError
from backtester.core.models import Bar

log = logging.getLogger(__name__)


def rsi(series: pd.Series, period: int = 14) -> pd.Series:
    """
    Compute Relative Strength Index (RSI).

    Parameters
    ----------
    series : pd.Series
        Price series (e.g., closing prices).
    period : int, default 14
        Lookback period for RSI.

    Returns
    -------
    pd.Series
        RSI values scaled 0–100.
    """
    if series is None or len(series) < period:
        log.warning(
            "RSI input too short (len=%s < period=%s)",
            len(series) if series is not None else None,
            period,
        )
        return pd.Series(dtype=float)

    delta = series.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)

    avg_gain = gain.ewm(alpha=1 / period, min_periods=period, adjust=False).mean()
    avg_loss = loss.ewm(alpha=1 / period, min_periods=period, adjust=False).mean()

    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi_val = 100 - (100 / (1 + rs))
    # no losses in the window: maximal strength, or neutral on a flat window
    rsi_val = rsi_val.mask((avg_loss == 0) & (avg_gain > 0), 100.0)
    rsi_val = rsi_val.mask((avg_loss == 0) & (avg_gain == 0), 50.0)
    rsi_val = rsi_val.bfill().clip(0, 100)

    log.debug("RSI computed for %d bars", len(series))
    return rsi_val


def sma(series: pd.Series, period: int = 20) -> pd.Series:
    """Simple moving average."""
    return series.rolling(window=period, min_periods=1).mean()


def ema(series: pd.Series, period: int = 20) -> pd.Series:
    """Exponential moving average."""
    return series.ewm(span=period, adjust=False).mean()


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Average True Range using OHLC data.
    Requires columns: 'high', 'low', 'close'.
    """
    if not all(c in df.columns for c in ["high", "low", "close"]):
        raise ValueError("DataFrame must contain columns: high, low, close")
    tr = df[["high", "low", "close"]].copy()
    tr["h-l"] = tr["high"] - tr["low"]
    tr["h-cp"] = (tr["high"] - tr["close"].shift()).abs()
    tr["l-cp"] = (tr["low"] - tr["close"].shift()).abs()
    tr["tr"] = tr[["h-l", "h-cp", "l-cp"]].max(axis=1)
    return tr["tr"].ewm(alpha=1 / period, min_periods=period, adjust=False).mean()


def macd(
    series: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9
) -> pd.DataFrame:
    """MACD line, signal line and histogram."""
    line = ema(series, fast) - ema(series, slow)
    sig = line.ewm(span=signal, adjust=False).mean()
    return pd.DataFrame({"macd": line, "macd_signal": sig, "macd_hist": line - sig})


def bollinger(series: pd.Series, period: int = 20, num_std: float = 2.0) -> pd.DataFrame:
    """Bollinger bands (population std) with %B and bandwidth."""
    mid = series.rolling(window=period, min_periods=period).mean()
    std = series.rolling(window=period, min_periods=period).std(ddof=0)
    upper = mid + num_std * std
    lower = mid - num_std * std
    width = (upper - lower).replace(0, np.nan)
    return pd.DataFrame(
        {
            "bb_middle": mid,
            "bb_upper": upper,
            "bb_lower": lower,
            "bb_percent_b": (series - lower) / width,
            "bb_bandwidth": width / mid.replace(0, np.nan),
        }
    )


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    """OHLCV float frame indexed by bar timestamp."""
    return pd.DataFrame(
        {
            "open": [float(b.open) for b in bars],
            "high": [float(b.high) for b in bars],
            "low": [float(b.low) for b in bars],
            "close": [float(b.close) for b in bars],
            "volume": [float(b.volume) for b in bars],
        },
        index=pd.DatetimeIndex([b.timestamp for b in bars], name="timestamp"),
    )


@dataclass(frozen=True)
class IndicatorConfig:
    sma_fast: int = 5
    sma_slow: int = 20
    ema_fast: int = 12
    ema_slow: int = 26
    macd_signal: int = 9
    rsi_period: int = 14
    atr_period: int = 14
    bb_period: int = 20
    bb_std: float = 2.0


class TechnicalIndicatorProvider:
    """
    Precomputes indicators over the full bar history and serves one
    snapshot per bar index.

    Values are only meaningful once ``warmup_bars`` bars have been seen;
    the driver hands strategies an empty mapping before that.
    """

    def __init__(self, config: IndicatorConfig | None = None) -> None:
        self.config = config or IndicatorConfig()
        self._frame: pd.DataFrame | None = None

    @property
    def warmup_bars(self) -> int:
        c = self.config
        return max(
            c.sma_slow,
            c.ema_slow + c.macd_signal,
            c.rsi_period + 1,
            c.atr_period + 1,
            c.bb_period,
        )

    def prepare(self, bars: Sequence[Bar]) -> None:
        c = self.config
        df = bars_to_frame(bars)
        if df.empty:
            self._frame = df
            return
        close = df["close"]
        out = pd.DataFrame(index=df.index)
        out["close"] = close
        out["sma_fast"] = sma(close, c.sma_fast)
        out["sma_slow"] = sma(close, c.sma_slow)
        out["ema_fast"] = ema(close, c.ema_fast)
        out["ema_slow"] = ema(close, c.ema_slow)
        out = out.join(macd(close, c.ema_fast, c.ema_slow, c.macd_signal))
        r = rsi(close, c.rsi_period)
        out["rsi"] = r.reindex(df.index) if not r.empty else np.nan
        out["atr"] = atr(df, c.atr_period)
        out = out.join(bollinger(close, c.bb_period, c.bb_std))
        out["volume_sma"] = sma(df["volume"], c.sma_slow)
        self._frame = out
        log.debug("indicators prepared for %d bars", len(out))

    def at(self, index: int) -> Dict[str, float]:
        if self._frame is None:
            raise StrategyError("indicator provider used before prepare()")
        if index < 0 or index >= len(self._frame):
            raise StrategyError(f"indicator index {index} out of range")
        row = self._frame.iloc[index]
        return {
            name: float(value)
            for name, value in row.items()
            if value is not None and not math.isnan(float(value))
        }


__all__ = [
    "rsi",
    "sma",
    "ema",
    "atr",
    "macd",
    "bollinger",
    "bars_to_frame",
    "IndicatorConfig",
    "TechnicalIndicatorProvider",
]
