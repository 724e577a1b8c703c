from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import pandas as pd
from pydantic import BaseModel, Field, field_validator, model_validator

from backtester.backtest.costs import FeeSchedule
from backtester.backtest.metrics import (
    PerformanceMetrics,
    daily_returns as _daily_returns,
    drawdown_series,
    monthly_returns,
)
from backtester.core.models import EquitySnapshot, Order, Position
from backtester.core.money import ZERO, to_decimal


class BacktestRequest(BaseModel):
    """
    Parameters of one backtest run.

    Attributes:
        symbol (str): Instrument to simulate.
        start_time (Optional[datetime]): First bar that may trade; earlier bars are warm-up.
        end_time (Optional[datetime]): Bars after this are ignored.
        initial_capital (Decimal): Starting cash.
        strategy_name (str): Display name of the strategy.
        timeframe (str): Bar interval label, informational only.
        slippage_rate (Decimal): Adverse price fraction applied to each fill.
        fee_schedule (FeeSchedule): Transaction fee regime.
        risk_free_rate (float): Annual hurdle for Sharpe/Sortino.
        max_position_ratio (float): Equity fraction the default sizer may commit.
        indicator_history_lookback (int): Indicator snapshots handed to the strategy.
        liquidate_at_end (bool): Sell remaining positions at the last close.
        output_path (Optional[str]): Where reports go, if anywhere.
    """

    symbol: str
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    initial_capital: Decimal = Field(default=Decimal("100000"), gt=0)
    strategy_name: str = ""
    timeframe: str = "1d"
    slippage_rate: Decimal = Field(default=Decimal("0.0001"), ge=0, lt=1)
    fee_schedule: FeeSchedule = Field(default_factory=FeeSchedule.hong_kong)
    risk_free_rate: float = 0.02
    max_position_ratio: float = Field(default=0.2, gt=0, le=1)
    indicator_history_lookback: int = Field(default=20, gt=0)
    liquidate_at_end: bool = False
    output_path: Optional[str] = None

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    @field_validator("symbol")
    @classmethod
    def _non_blank_symbol(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("symbol must not be blank")
        return value

    @field_validator("initial_capital", "slippage_rate", mode="before")
    @classmethod
    def _coerce_money(cls, value: Any) -> Decimal:
        return to_decimal(value, field="amount")

    @model_validator(mode="after")
    def _check_window(self) -> "BacktestRequest":
        if self.start_time and self.end_time and self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        return self


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class BacktestResult:
    """
    Final artifact of a run; either a success or an error variant.

    A run that saw no bars is still a success: it echoes the initial capital
    as the final equity and carries no trades.
    """

    symbol: str
    strategy_name: str
    start_time: Optional[dt.datetime]
    end_time: Optional[dt.datetime]
    initial_capital: Decimal
    final_cash: Decimal
    final_equity: Decimal
    unrealized_pnl: Decimal = ZERO
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    equity_curve: Tuple[EquitySnapshot, ...] = ()
    trades: Tuple[Order, ...] = ()
    open_positions: Tuple[Position, ...] = ()
    bars_processed: int = 0
    run_id: str = ""
    error: Optional[str] = None

    @classmethod
    def empty(cls, request: BacktestRequest, *, run_id: str = "") -> "BacktestResult":
        return cls(
            symbol=request.symbol,
            strategy_name=request.strategy_name,
            start_time=request.start_time,
            end_time=request.end_time,
            initial_capital=request.initial_capital,
            final_cash=request.initial_capital,
            final_equity=request.initial_capital,
            run_id=run_id,
        )

    @classmethod
    def failure(
        cls, request: BacktestRequest, message: str, *, run_id: str = ""
    ) -> "BacktestResult":
        return cls(
            symbol=request.symbol,
            strategy_name=request.strategy_name,
            start_time=request.start_time,
            end_time=request.end_time,
            initial_capital=request.initial_capital,
            final_cash=request.initial_capital,
            final_equity=request.initial_capital,
            run_id=run_id,
            error=message or "backtest failed",
        )

    @property
    def is_successful(self) -> bool:
        return self.error is None

    @property
    def total_return(self) -> Decimal:
        if self.initial_capital == 0:
            return ZERO
        return self.final_equity / self.initial_capital - 1

    @property
    def total_pnl(self) -> Decimal:
        return self.final_equity - self.initial_capital

    # -------- Derived series --------
    def equity_frame(self) -> pd.DataFrame:
        """Equity curve with daily return and drawdown columns."""
        if not self.equity_curve:
            return pd.DataFrame(columns=["date", "equity", "return", "drawdown"])
        values = [float(s.equity) for s in self.equity_curve]
        df = pd.DataFrame(
            {
                "date": [s.date for s in self.equity_curve],
                "equity": values,
            }
        )
        df["return"] = df["equity"].pct_change().fillna(0.0)
        df["drawdown"] = drawdown_series(df["equity"].to_numpy())
        return df

    def trades_frame(self) -> pd.DataFrame:
        return pd.DataFrame([t.to_record() for t in self.trades])

    def daily_returns(self) -> list[float]:
        values = self.equity_frame()["equity"].to_numpy(dtype=float)
        return [float(r) for r in _daily_returns(values)]

    def monthly_returns(self) -> Dict[str, float]:
        return monthly_returns(self.equity_curve)

    # -------- Reporting --------
    def summary(self) -> str:
        if not self.is_successful:
            return f"Backtest {self.symbol} FAILED: {self.error}"
        m = self.metrics
        lines = [
            f"Backtest {self.symbol} [{self.strategy_name or '-'}]",
            f"  period        : {self.start_time or '-'} -> {self.end_time or '-'}",
            f"  capital       : {self.initial_capital} -> {self.final_equity:.2f} "
            f"(cash {self.final_cash:.2f})",
            f"  return        : {m.cumulative_return:.2%} (ann. {m.annualized_return:.2%})",
            f"  sharpe/sortino: {m.sharpe_ratio:.2f} / {m.sortino_ratio:.2f}",
            f"  max drawdown  : {m.max_drawdown:.2%} over {m.max_drawdown_duration} days",
            f"  trades        : {m.total_trades} closed, win rate {m.win_rate:.1%}, "
            f"profit factor {m.profit_factor:.2f}",
            f"  costs         : {m.total_costs} (+ slippage {m.total_slippage:.2f})",
        ]
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(
            {
                "run_id": self.run_id,
                "symbol": self.symbol,
                "strategy": self.strategy_name,
                "start_time": self.start_time,
                "end_time": self.end_time,
                "initial_capital": self.initial_capital,
                "final_cash": self.final_cash,
                "final_equity": self.final_equity,
                "unrealized_pnl": self.unrealized_pnl,
                "bars_processed": self.bars_processed,
                "successful": self.is_successful,
                "error": self.error,
                "metrics": self.metrics.as_flat_dict(),
                "equity_curve": [
                    {"date": s.date, "equity": s.equity} for s in self.equity_curve
                ],
                "trades": [t.to_record() for t in self.trades],
            }
        )


__all__ = ["BacktestRequest", "BacktestResult"]
