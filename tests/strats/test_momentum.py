from __future__ import annotations

from decimal import Decimal

import pytest

from backtester.backtest.engine import BacktestDriver, FractionOfEquitySizer
from backtester.backtest.result import BacktestRequest
from backtester.core.exceptions import ConfigError
from backtester.core.models import SignalKind
from backtester.features.indicators import TechnicalIndicatorProvider
from backtester.strats.momentum import MomentumStrategy
from backtester.strats.params import MomentumParams
from tests.support.bars import SYMBOL


def _snap(macd, signal, **extra):
    return {"macd": macd, "macd_signal": signal, **extra}


BULLISH = [_snap(-0.1, 0.0), _snap(0.2, 0.1, rsi=55.0, sma_slow=95.0)]
BEARISH = [_snap(0.1, 0.0), _snap(-0.2, -0.1, rsi=45.0, sma_slow=105.0)]


def test_needs_two_snapshots_with_macd(bar):
    strat = MomentumStrategy()

    assert strat.generate_signal(bar, [], {}).kind is SignalKind.NO_ACTION
    assert strat.generate_signal(bar, [{}, {}], {}).kind is SignalKind.NO_ACTION


def test_bullish_crossover_buys_with_confidence(bar):
    signal = MomentumStrategy().generate_signal(bar, BULLISH, {})

    assert signal.kind is SignalKind.BUY
    # 0.5 base + rsi 0.2 + positive macd 0.1 + above trend 0.1
    assert signal.confidence == pytest.approx(0.9)
    assert signal.price == Decimal("100")
    assert signal.metadata["macd"] == 0.2


def test_bullish_crossover_below_trend_holds(bar):
    history = [_snap(-0.1, 0.0), _snap(0.2, 0.1, rsi=55.0, sma_slow=120.0)]

    assert MomentumStrategy().generate_signal(bar, history, {}).kind is SignalKind.HOLD
    loose = MomentumStrategy(MomentumParams(require_trend=False))
    assert loose.generate_signal(bar, history, {}).kind is SignalKind.BUY


def test_overbought_crossover_filtered_by_confidence(bar):
    history = [_snap(-0.3, -0.2), _snap(-0.1, -0.15, rsi=80.0)]

    # 0.5 - 0.2, macd negative, no trend data
    signal = MomentumStrategy().generate_signal(bar, history, {})
    assert signal.kind is SignalKind.HOLD


def test_position_limit(bar, holding):
    strat = MomentumStrategy({"max_positions": 1})

    assert strat.generate_signal(bar, BULLISH, holding("100")).kind is SignalKind.HOLD


def test_bearish_crossover_closes_only_when_holding(bar, holding):
    strat = MomentumStrategy()

    assert strat.generate_signal(bar, BEARISH, {}).kind is SignalKind.HOLD
    signal = strat.generate_signal(bar, BEARISH, holding("100"))
    assert signal.kind is SignalKind.CLOSE_LONG
    assert signal.confidence == pytest.approx(0.9)


@pytest.mark.parametrize(
    "avg_cost,reason",
    [("106", "stop loss"), ("90", "take profit")],
)
def test_risk_exits_from_average_cost(bar, holding, avg_cost, reason):
    signal = MomentumStrategy().generate_signal(bar, BULLISH, holding(avg_cost))

    assert signal.kind is SignalKind.CLOSE_LONG
    assert signal.reason.startswith(reason)


def test_full_run_over_trend_regimes(toy_bars):
    request = BacktestRequest(
        symbol=SYMBOL,
        initial_capital=Decimal("100000"),
        strategy_name="momentum",
        liquidate_at_end=True,
    )
    driver = BacktestDriver(
        MomentumStrategy(), TechnicalIndicatorProvider(), FractionOfEquitySizer(0.2, 100)
    )

    result = driver.run(request, toy_bars)

    assert result.is_successful
    assert result.trades, "expected at least one crossover entry"
    assert result.open_positions == ()
    buys = [t for t in result.trades if t.side.value == "BUY"]
    assert all(t.quantity % 100 == 0 for t in buys)
    # no entries before the indicators have warmed up
    assert buys[0].created_at >= toy_bars[TechnicalIndicatorProvider().warmup_bars - 1].timestamp
    assert result.metrics.total_trades == len(result.trades) - len(buys)


def test_overrides_keep_default_exits(bar, holding):
    strat = MomentumStrategy({"min_confidence": 0.5})

    assert strat.params == MomentumParams(min_confidence=0.5)
    # close 100 against average cost 125 is a 20% loss
    signal = strat.generate_signal(bar, [], holding("125"))
    assert signal.kind is SignalKind.CLOSE_LONG
    assert signal.reason.startswith("stop loss")


def test_unknown_override_rejected():
    with pytest.raises(ConfigError):
        MomentumStrategy({"stop_loss": 0.1})
