from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Iterable, List, Sequence

import numpy as np
import pandas as pd

from backtester.core.models import Bar, EquitySnapshot

SYMBOL = "00700.HK"


def make_bar(
    ts: dt.datetime,
    close: float | str,
    *,
    symbol: str = SYMBOL,
    high: float | str | None = None,
    low: float | str | None = None,
    open_: float | str | None = None,
    volume: int = 1_000,
) -> Bar:
    close_d = Decimal(str(close))
    return Bar(
        symbol=symbol,
        timestamp=ts,
        open=Decimal(str(open_)) if open_ is not None else close_d,
        high=Decimal(str(high)) if high is not None else close_d,
        low=Decimal(str(low)) if low is not None else close_d,
        close=close_d,
        volume=volume,
    )


def daily_bars(
    closes: Iterable[float | str],
    *,
    start: dt.datetime = dt.datetime(2024, 1, 2, 16, 0),
    symbol: str = SYMBOL,
) -> List[Bar]:
    """One bar per calendar day at 16:00."""
    return [
        make_bar(start + dt.timedelta(days=i), c, symbol=symbol)
        for i, c in enumerate(closes)
    ]


def intraday_bars(
    day_closes: Sequence[Sequence[float | str]],
    *,
    start: dt.date = dt.date(2024, 1, 2),
    symbol: str = SYMBOL,
) -> List[Bar]:
    """Half-hourly bars from 09:30, one inner sequence per calendar day."""
    bars: List[Bar] = []
    for d, closes in enumerate(day_closes):
        open_ts = dt.datetime.combine(start + dt.timedelta(days=d), dt.time(9, 30))
        for k, c in enumerate(closes):
            bars.append(make_bar(open_ts + dt.timedelta(minutes=30 * k), c, symbol=symbol))
    return bars


def equity_curve(values: Iterable[float | str], start: dt.date = dt.date(2024, 1, 1)):
    return [
        EquitySnapshot(date=start + dt.timedelta(days=i), equity=Decimal(str(v)))
        for i, v in enumerate(values)
    ]


def toy_ohlcv(n: int = 400, seed: int = 42) -> pd.DataFrame:
    """
    Deterministic daily series with three regimes:
    - Flat/slow climb
    - Strong trend up
    - Then a fade
    """
    rng = np.random.default_rng(seed=seed)
    idx = pd.date_range("2021-01-01 16:00", periods=n, freq="B")

    third = n // 3
    drift = np.r_[
        np.full(third, 0.0002),
        np.full(third, 0.0015),
        np.full(n - 2 * third, -0.0008),
    ]
    close = 100.0 * np.cumprod(1 + drift + rng.normal(0.0, 0.012, n))
    high = close * (1 + np.clip(rng.normal(0.004, 0.003, n), 0, None))
    low = close * (1 - np.clip(rng.normal(0.004, 0.003, n), 0, None))
    open_ = pd.Series(close).shift(1).fillna(close[0]).to_numpy()
    vol = rng.integers(1_000_000, 5_000_000, n)

    return pd.DataFrame(
        {
            "timestamp": idx,
            "open": open_.round(3),
            "high": np.maximum(high, np.maximum(open_, close)).round(3),
            "low": np.minimum(low, np.minimum(open_, close)).round(3),
            "close": close.round(3),
            "volume": vol,
        }
    )


def frame_to_bars(df: pd.DataFrame, symbol: str = SYMBOL) -> List[Bar]:
    return [
        make_bar(
            row.timestamp.to_pydatetime(),
            row.close,
            symbol=symbol,
            high=row.high,
            low=row.low,
            open_=row.open,
            volume=int(row.volume),
        )
        for row in df.itertuples(index=False)
    ]
