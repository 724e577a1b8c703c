from __future__ import annotations

import asyncio
import datetime as dt
from decimal import Decimal
from typing import Dict, List

import pytest

from backtester.backtest.costs import FeeSchedule
from backtester.backtest.engine import (
    BacktestDriver,
    FixedLotSizer,
    FractionOfEquitySizer,
    run_backtest,
    run_backtest_async,
)
from backtester.backtest.result import BacktestRequest
from backtester.core.models import OrderStatus, OrderType, Position, Signal, SignalKind
from tests.support.bars import SYMBOL, daily_bars, intraday_bars, make_bar

D = Decimal


class ScriptedStrategy:
    """Emits the scripted signal for the n-th call, HOLD otherwise."""

    def __init__(self, script: Dict[int, dict] | None = None) -> None:
        self.script = script or {}
        self.calls: List[tuple] = []

    def generate_signal(self, bar, indicator_history, positions):
        n = len(self.calls)
        self.calls.append((bar, list(indicator_history), dict(positions)))
        planned = self.script.get(n)
        if planned is None:
            return Signal.hold(bar.symbol)
        return Signal(symbol=bar.symbol, **planned)


class ExplodingStrategy:
    def generate_signal(self, bar, indicator_history, positions):
        raise RuntimeError("indicator feed went away")


class CountingProvider:
    def __init__(self, warmup_bars: int = 3) -> None:
        self.warmup_bars = warmup_bars
        self.prepared = 0

    def prepare(self, bars):
        self.prepared = len(bars)

    def at(self, index):
        return {"index": float(index)}


def _request(**overrides) -> BacktestRequest:
    params = dict(
        symbol=SYMBOL,
        initial_capital=D("10000"),
        slippage_rate=D("0"),
        fee_schedule=FeeSchedule.zero(),
        risk_free_rate=0.0,
    )
    params.update(overrides)
    return BacktestRequest(**params)


def test_empty_bars_give_successful_empty_result():
    result = BacktestDriver(ScriptedStrategy()).run(_request(), [])

    assert result.is_successful
    assert result.final_equity == D("10000")
    assert result.final_cash == D("10000")
    assert result.metrics.total_trades == 0
    assert result.equity_curve == ()
    assert result.error is None


def test_idle_run_reports_zero_risk_ratios():
    request = _request(risk_free_rate=0.02)

    result = BacktestDriver(ScriptedStrategy()).run(request, daily_bars([10, 11, 12, 11, 10]))

    assert result.is_successful
    assert result.trades == ()
    assert len(result.equity_curve) == 5
    assert result.metrics.sharpe_ratio == 0.0
    assert result.metrics.sortino_ratio == 0.0
    assert result.metrics.max_drawdown == 0.0


def test_two_calendar_days_produce_two_snapshots():
    bars = intraday_bars([[10, 11], [12, 13]])
    strategy = ScriptedStrategy({0: {"kind": SignalKind.BUY, "quantity": 100}})

    result = BacktestDriver(strategy).run(_request(), bars)

    assert result.is_successful
    dates = [s.date for s in result.equity_curve]
    assert dates == [dt.date(2024, 1, 2), dt.date(2024, 1, 3)]
    # the day-one snapshot is taken once the first bar of day two has been processed
    assert result.equity_curve[0].equity == D("9000") + D("1200")
    assert result.equity_curve[-1].equity == result.final_equity == D("10300")


def test_market_buy_fills_at_close_with_status():
    bars = daily_bars([10, 11, 12])
    strategy = ScriptedStrategy({1: {"kind": SignalKind.BUY, "quantity": 200}})

    result = BacktestDriver(strategy).run(_request(), bars)

    (order,) = result.trades
    assert order.status is OrderStatus.FILLED
    assert order.price == D("11")
    assert order.created_at == bars[1].timestamp
    assert result.final_cash == D("10000") - D("2200")
    assert result.open_positions[0].quantity == 200


def test_rejected_buy_does_not_abort_run():
    bars = daily_bars([10, 11])
    strategy = ScriptedStrategy({0: {"kind": SignalKind.BUY, "quantity": 5000}})

    result = BacktestDriver(strategy).run(_request(), bars)

    assert result.is_successful
    assert result.trades == ()
    assert result.final_equity == D("10000")
    assert len(strategy.calls) == 2


def test_close_long_sells_entire_holding_and_close_short_is_ignored():
    bars = daily_bars([10, 11, 12, 13])
    strategy = ScriptedStrategy(
        {
            0: {"kind": SignalKind.BUY, "quantity": 300},
            1: {"kind": SignalKind.CLOSE_SHORT},
            2: {"kind": SignalKind.CLOSE_LONG},
        }
    )

    result = BacktestDriver(strategy).run(_request(), bars)

    assert [t.side.value for t in result.trades] == ["BUY", "SELL"]
    sell = result.trades[-1]
    assert sell.quantity == 300
    assert sell.realized_pnl == D("600")
    assert result.open_positions == ()
    assert result.metrics.win_rate == 1.0


def test_sell_without_position_is_rejected_not_fatal():
    bars = daily_bars([10, 11])
    strategy = ScriptedStrategy({0: {"kind": SignalKind.SELL, "quantity": 100}})

    result = BacktestDriver(strategy).run(_request(), bars)

    assert result.is_successful
    assert result.trades == ()


def test_zero_quantity_produces_no_order():
    bars = daily_bars([10, 11])
    strategy = ScriptedStrategy({0: {"kind": SignalKind.BUY, "quantity": 0}})

    result = BacktestDriver(strategy).run(_request(), bars)

    assert result.trades == ()


def test_limit_buy_waits_for_touch():
    bars = [
        make_bar(dt.datetime(2024, 1, 2, 16), 10, high=10.2, low=9.9),
        make_bar(dt.datetime(2024, 1, 3, 16), 10, high=10.1, low=9.6),
        make_bar(dt.datetime(2024, 1, 4, 16), 9.4, high=9.8, low=9.3),
    ]
    strategy = ScriptedStrategy(
        {
            0: {
                "kind": SignalKind.BUY,
                "quantity": 100,
                "price": D("9.50"),
                "order_type": OrderType.LIMIT,
            }
        }
    )

    result = BacktestDriver(strategy).run(_request(), bars)

    (order,) = result.trades
    assert order.order_type is OrderType.LIMIT
    assert order.status is OrderStatus.FILLED
    assert order.executed_price == D("9.50")
    # filled while processing the third bar, not the second
    assert strategy.calls[2][2][SYMBOL].quantity == 100
    assert SYMBOL not in strategy.calls[1][2]


def test_warmup_bars_feed_indicators_but_never_trade():
    bars = daily_bars([10, 11, 12, 13, 14])
    provider = CountingProvider(warmup_bars=3)
    strategy = ScriptedStrategy({0: {"kind": SignalKind.BUY, "quantity": 100}})
    request = _request(start_time=bars[2].timestamp, indicator_history_lookback=4)

    result = BacktestDriver(strategy, provider).run(request, bars)

    assert provider.prepared == 5
    assert len(strategy.calls) == 3
    assert strategy.calls[0][0] == bars[2]
    # history covers bars 0..2, with empty snapshots before the warm-up is met
    assert strategy.calls[0][1] == [{}, {}, {"index": 2.0}]
    assert len(strategy.calls[-1][1]) == 4
    assert result.trades[0].price == D("12")
    assert result.bars_processed == 3


def test_bars_after_end_time_are_ignored():
    bars = daily_bars([10, 11, 12, 13])
    strategy = ScriptedStrategy()

    result = BacktestDriver(strategy).run(_request(end_time=bars[1].timestamp), bars)

    assert len(strategy.calls) == 2
    assert len(result.equity_curve) == 2


def test_no_bar_at_or_after_start_is_an_error_result():
    bars = daily_bars([10, 11])
    request = _request(start_time=dt.datetime(2030, 1, 1))

    result = BacktestDriver(ScriptedStrategy()).run(request, bars)

    assert not result.is_successful
    assert "no bars" in result.error
    assert result.final_equity == D("10000")


def test_strategy_exception_becomes_error_result():
    result = BacktestDriver(ExplodingStrategy()).run(_request(), daily_bars([10, 11]))

    assert not result.is_successful
    assert result.error == "indicator feed went away"
    assert result.trades == ()
    assert "FAILED" in result.summary()


def test_unordered_bars_become_error_result():
    bars = daily_bars([10, 11])

    result = BacktestDriver(ScriptedStrategy()).run(_request(), list(reversed(bars)))

    assert not result.is_successful
    assert "strictly increasing" in result.error


def test_liquidate_at_end_closes_positions_and_fixes_last_snapshot():
    bars = daily_bars([10, 12])
    strategy = ScriptedStrategy({0: {"kind": SignalKind.BUY, "quantity": 100}})

    result = BacktestDriver(strategy).run(_request(liquidate_at_end=True), bars)

    assert result.open_positions == ()
    assert result.final_cash == result.final_equity == D("10200")
    assert result.equity_curve[-1].equity == D("10200")
    assert result.trades[-1].rationale == "end of run liquidation"


def test_default_sizer_uses_board_lots():
    bars = daily_bars([10, 11])
    strategy = ScriptedStrategy({0: {"kind": SignalKind.BUY}})

    result = run_backtest(_request(), bars, strategy)

    assert result.trades[0].quantity == 100


def test_each_run_gets_a_fresh_ledger():
    bars = daily_bars([10, 11])
    driver = BacktestDriver(ScriptedStrategy({0: {"kind": SignalKind.BUY, "quantity": 100}}))

    first = driver.run(_request(), bars)
    second = driver.run(_request(), bars)

    assert first.final_cash == D("9000")
    assert second.final_cash == D("10000")  # script already consumed
    assert first.run_id != second.run_id


def test_run_backtest_async():
    bars = daily_bars([10, 11, 12])

    async def _go():
        drivers = [BacktestDriver(ScriptedStrategy()) for _ in range(3)]
        return await asyncio.gather(
            *(run_backtest_async(d, _request(), bars) for d in drivers)
        )

    results = asyncio.run(_go())

    assert all(r.is_successful for r in results)
    assert len({r.run_id for r in results}) == 3


# -------- sizers --------
def _pos(qty: int, mv: str = "0") -> Dict[str, Position]:
    return {SYMBOL: Position(symbol=SYMBOL, quantity=qty, average_cost=D("10"), market_value=D(mv))}


def test_fixed_lot_sizer():
    sizer = FixedLotSizer(100)
    buy = Signal(symbol=SYMBOL, kind=SignalKind.BUY)
    sell = Signal(symbol=SYMBOL, kind=SignalKind.SELL)

    assert sizer.size(buy, D("10"), D("0"), {}) == 100
    assert sizer.size(sell, D("10"), D("0"), _pos(40)) == 40
    assert sizer.size(sell, D("10"), D("0"), {}) == 0
    with pytest.raises(ValueError):
        FixedLotSizer(0)


def test_fraction_of_equity_sizer_rounds_down_to_lots():
    sizer = FractionOfEquitySizer(max_position_ratio=0.2, lot_size=100)
    buy = Signal(symbol=SYMBOL, kind=SignalKind.BUY, confidence=0.5)

    # equity 100,000 -> budget 20,000 -> 1,538 shares at 13 -> 1,500
    assert sizer.size(buy, D("13"), D("90000"), _pos(1000, "10000")) == 1500
    # budget capped by cash
    assert sizer.size(buy, D("10"), D("500"), _pos(1000, "99500")) == 0
    assert sizer.size(Signal(symbol=SYMBOL, kind=SignalKind.SELL), D("10"), D("0"), _pos(700)) == 700

    scaled = FractionOfEquitySizer(0.2, 100, scale_by_confidence=True)
    assert scaled.size(buy, D("10"), D("100000"), {}) == 1000
