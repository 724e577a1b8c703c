from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from backtester.core.models import Position
from tests.support.bars import SYMBOL, frame_to_bars, make_bar, toy_ohlcv


@pytest.fixture(scope="module")
def toy_bars():
    """
    Deterministic series with three regimes:
    - Flat/slow climb
    - Strong trend up (entries)
    - Then a fade (exits)
    """
    return frame_to_bars(toy_ohlcv(n=400))


@pytest.fixture
def bar():
    return make_bar(dt.datetime(2024, 3, 1, 16), "100")


@pytest.fixture
def holding():
    def _make(avg_cost: str, qty: int = 100):
        return {SYMBOL: Position(symbol=SYMBOL, quantity=qty, average_cost=Decimal(avg_cost))}

    return _make
