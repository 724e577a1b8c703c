import math

import numpy as np
import pandas as pd
import pytest

from backtester.core.exceptions import StrategyError
from backtester.features.indicators import (
    IndicatorConfig,
    TechnicalIndicatorProvider,
    atr,
    bars_to_frame,
    bollinger,
    macd,
    rsi,
    sma,
)
from tests.support.bars import daily_bars, frame_to_bars, toy_ohlcv


@pytest.fixture
def toy_bars():
    """Deterministic three-regime daily bars."""
    return frame_to_bars(toy_ohlcv(n=120))


def test_rsi_bounds_and_extremes():
    rising = pd.Series(np.arange(1.0, 40.0))
    flat = pd.Series([10.0] * 30)
    noisy = pd.Series(100 + np.random.default_rng(1).normal(0, 2, 200).cumsum())

    assert rsi(rising).iloc[-1] == pytest.approx(100.0)
    assert rsi(flat).iloc[-1] == pytest.approx(50.0)
    values = rsi(noisy)
    assert values.between(0, 100).all()
    assert not values.isna().any()


def test_rsi_short_input_is_empty():
    assert rsi(pd.Series([1.0, 2.0]), period=14).empty


def test_sma_and_macd_shapes():
    close = pd.Series(np.linspace(10, 20, 50))

    assert sma(close, 5).iloc[-1] == pytest.approx(close.iloc[-5:].mean())
    frame = macd(close)
    assert list(frame.columns) == ["macd", "macd_signal", "macd_hist"]
    assert (frame["macd_hist"] == frame["macd"] - frame["macd_signal"]).all()
    assert frame["macd"].iloc[-1] > 0  # steady uptrend


def test_atr_requires_columns():
    with pytest.raises(ValueError):
        atr(pd.DataFrame({"close": [1.0, 2.0]}))


def test_bollinger_percent_b():
    close = pd.Series([10.0] * 19 + [12.0])
    bands = bollinger(close, period=20)

    last = bands.iloc[-1]
    assert last["bb_upper"] > last["bb_middle"] > last["bb_lower"]
    assert last["bb_percent_b"] > 1.0
    # flat history has zero width
    assert math.isnan(bollinger(pd.Series([5.0] * 20)).iloc[-1]["bb_percent_b"])


def test_bars_to_frame():
    df = bars_to_frame(daily_bars([10, 11]))

    assert list(df.columns) == ["open", "high", "low", "close", "volume"]
    assert df["close"].tolist() == [10.0, 11.0]
    assert df.index.name == "timestamp"


def test_provider_warmup_and_snapshots(toy_bars):
    provider = TechnicalIndicatorProvider()
    assert provider.warmup_bars == 35

    provider.prepare(toy_bars)
    late = provider.at(len(toy_bars) - 1)

    for key in ("close", "sma_slow", "macd", "macd_signal", "rsi", "atr", "bb_percent_b"):
        assert key in late
    assert late["close"] == pytest.approx(float(toy_bars[-1].close))
    # bollinger needs a full window
    assert "bb_middle" not in provider.at(0)


def test_provider_custom_config_changes_warmup():
    provider = TechnicalIndicatorProvider(IndicatorConfig(sma_slow=50, ema_slow=10, macd_signal=5))

    assert provider.warmup_bars == 50


def test_provider_guards(toy_bars):
    provider = TechnicalIndicatorProvider()
    with pytest.raises(StrategyError):
        provider.at(0)

    provider.prepare(toy_bars)
    with pytest.raises(StrategyError):
        provider.at(len(toy_bars))
