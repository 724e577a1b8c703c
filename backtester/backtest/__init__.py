"""Backtesting core: transaction costs, portfolio ledger, the bar-by-bar driver and performance analytics.
The CLI (`run`) and parameter sweeps (`sweeps`) sit on top and are imported on demand.
"""

from backtester.backtest.costs import CostBreakdown, FeeSchedule, TransactionCostModel
from backtester.backtest.engine import (
    BacktestDriver,
    FixedLotSizer,
    FractionOfEquitySizer,
    run_backtest,
    run_backtest_async,
)
from backtester.backtest.ledger import ExecutionResult, PortfolioLedger, RejectReason
from backtester.backtest.metrics import PerformanceMetrics, compute_performance
from backtester.backtest.result import BacktestRequest, BacktestResult

__all__ = [
    "CostBreakdown",
    "FeeSchedule",
    "TransactionCostModel",
    "PortfolioLedger",
    "ExecutionResult",
    "RejectReason",
    "BacktestDriver",
    "FixedLotSizer",
    "FractionOfEquitySizer",
    "run_backtest",
    "run_backtest_async",
    "PerformanceMetrics",
    "compute_performance",
    "BacktestRequest",
    "BacktestResult",
]
