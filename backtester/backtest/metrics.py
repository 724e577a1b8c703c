# backtester/backtest/metrics.py
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from backtester.core.models import EquitySnapshot, Order
from backtester.core.money import ZERO

TRADING_DAYS = 252

# Reported as the profit factor when a run has winners but no losing trade
PROFIT_FACTOR_SENTINEL = 999.0


# -------- Data classes --------
@dataclass(frozen=True)
class EquityMetrics:
    periods: int = 0
    cumulative_return: float = 0.0
    annualized_return: float = 0.0
    annualized_volatility: float = 0.0
    downside_deviation: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_duration: int = 0
    calmar_ratio: float = 0.0


@dataclass(frozen=True)
class TradeMetrics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    average_win: Decimal = ZERO
    average_loss: Decimal = ZERO
    total_profit: Decimal = ZERO
    total_loss: Decimal = ZERO
    profit_factor: float = 0.0
    payoff_ratio: float = 0.0
    expectancy: Decimal = ZERO
    best_trade: Decimal = ZERO
    worst_trade: Decimal = ZERO
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0


@dataclass(frozen=True)
class CostMetrics:
    total_commission: Decimal = ZERO
    total_stamp_duty: Decimal = ZERO
    total_trading_fee: Decimal = ZERO
    total_settlement_fee: Decimal = ZERO
    total_system_fee: Decimal = ZERO
    total_costs: Decimal = ZERO
    total_slippage: Decimal = ZERO


@dataclass(frozen=True)
class PerformanceMetrics:
    """
    Everything derived from a finished run.

    Field access is flattened, so ``metrics.sharpe_ratio`` and
    ``metrics.win_rate`` read through to the nested groups.
    """

    equity: EquityMetrics = field(default_factory=EquityMetrics)
    trades: TradeMetrics = field(default_factory=TradeMetrics)
    costs: CostMetrics = field(default_factory=CostMetrics)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") or name in ("equity", "trades", "costs"):
            raise AttributeError(name)
        for group in (self.equity, self.trades, self.costs):
            if name in group.__dataclass_fields__:
                return getattr(group, name)
        raise AttributeError(f"{type(self).__name__} has no metric '{name}'")

    def as_flat_dict(self) -> Dict[str, Any]:
        return {**asdict(self.equity), **asdict(self.trades), **asdict(self.costs)}


# -------- Internals --------
def _equity_values(curve: Sequence[EquitySnapshot]) -> np.ndarray:
    return np.array([float(s.equity) for s in curve], dtype=float)


def daily_returns(values: np.ndarray) -> np.ndarray:
    """Simple period returns; periods following a zero equity are skipped."""
    if len(values) < 2:
        return np.array([], dtype=float)
    prev = values[:-1]
    cur = values[1:]
    mask = prev != 0
    return cur[mask] / prev[mask] - 1.0


def _annualized_return(cumulative: float, num_days: int) -> float:
    if num_days == 0:
        return 0.0
    base = 1.0 + cumulative
    if base <= 0:
        return -1.0
    return base ** (TRADING_DAYS / num_days) - 1.0


def _downside_deviation(rets: np.ndarray, rf_daily: float) -> float:
    if len(rets) == 0:
        return 0.0
    below = rets[rets < rf_daily]
    if len(below) == 0:
        return 0.0
    semi_variance = float(np.sum((below - rf_daily) ** 2)) / len(rets)
    return math.sqrt(semi_variance) * math.sqrt(TRADING_DAYS)


def drawdown_series(values: np.ndarray) -> np.ndarray:
    """Fractional distance below the running peak, in [0, 1]."""
    if len(values) == 0:
        return np.array([], dtype=float)
    peak = np.maximum.accumulate(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peak > 0, (peak - values) / peak, 0.0)
    return np.clip(dd, 0.0, 1.0)


def _drawdown_stats(values: np.ndarray) -> Tuple[float, int]:
    dd = drawdown_series(values)
    if len(dd) == 0:
        return 0.0, 0
    max_run = run = 0
    for underwater in dd > 0:
        if underwater:
            run += 1
            max_run = max(max_run, run)
        else:
            run = 0
    return float(dd.max()), int(max_run)


def monthly_returns(curve: Sequence[EquitySnapshot]) -> Dict[str, float]:
    """Month-over-month return of the month-end equity, keyed ``YYYY-MM``."""
    if len(curve) < 2:
        return {}
    s = pd.Series(
        _equity_values(curve),
        index=pd.DatetimeIndex([pd.Timestamp(snap.date) for snap in curve]),
    )
    month_end = s.groupby(s.index.to_period("M")).last()
    prev = month_end.shift(1)
    prev.iloc[0] = s.iloc[0]
    rets = (month_end / prev - 1.0).replace([np.inf, -np.inf], np.nan).fillna(0.0)
    return {str(period): float(value) for period, value in rets.items()}


# -------- Public API --------
def equity_stats(
    curve: Sequence[EquitySnapshot],
    *,
    risk_free_rate: float = 0.0,
) -> EquityMetrics:
    """
    Return/risk statistics of a daily equity curve.

    risk_free_rate: annual rate; Sharpe/Sortino use it as the hurdle and the
    downside deviation is measured against its daily equivalent.
    """
    if len(curve) < 2:
        logger.debug("[metrics] equity curve too short (n={}); zero metrics", len(curve))
        return EquityMetrics(periods=len(curve))

    values = _equity_values(curve)
    rets = daily_returns(values)
    rf = float(risk_free_rate)
    rf_daily = rf / TRADING_DAYS

    cumulative = float(values[-1] / values[0] - 1.0) if values[0] != 0 else 0.0
    annualized = _annualized_return(cumulative, len(values))
    vol = float(np.std(rets, ddof=0)) * math.sqrt(TRADING_DAYS) if len(rets) else 0.0
    downside = _downside_deviation(rets, rf_daily)

    sharpe = (annualized - rf) / vol if vol > 0 else 0.0
    # a flat curve has no risk to reward, whatever the hurdle
    sortino = (annualized - rf) / downside if downside > 0 and vol > 0 else 0.0
    max_dd, max_dd_len = _drawdown_stats(values)
    calmar = annualized / max_dd if max_dd > 0 else 0.0

    logger.debug(
        "[metrics] n={} cum={:.4f} ann={:.4f} vol={:.4f} sharpe={:.3f} sortino={:.3f} maxDD={:.4f} len={} calmar={:.3f}",
        len(values),
        cumulative,
        annualized,
        vol,
        sharpe,
        sortino,
        max_dd,
        max_dd_len,
        calmar,
    )

    return EquityMetrics(
        periods=len(values),
        cumulative_return=cumulative,
        annualized_return=annualized,
        annualized_volatility=vol,
        downside_deviation=downside,
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        max_drawdown=max_dd,
        max_drawdown_duration=max_dd_len,
        calmar_ratio=calmar,
    )


def trade_stats(trades: Sequence[Order]) -> TradeMetrics:
    closed = [o for o in trades if o.is_sell and o.realized_pnl is not None]
    if not closed:
        return TradeMetrics()

    pnls: List[Decimal] = [o.realized_pnl for o in closed]  # type: ignore[misc]
    wins = [p for p in pnls if p > 0]
    losses = [-p for p in pnls if p < 0]

    n = len(pnls)
    total_profit = sum(wins, ZERO)
    total_loss = sum(losses, ZERO)
    avg_win = total_profit / len(wins) if wins else ZERO
    avg_loss = total_loss / len(losses) if losses else ZERO

    if total_profit == 0:
        profit_factor = 0.0
    elif total_loss == 0:
        profit_factor = PROFIT_FACTOR_SENTINEL
    else:
        profit_factor = float(total_profit / total_loss)
    payoff = float(avg_win / avg_loss) if avg_loss > 0 else 0.0

    max_wins = max_losses = run_w = run_l = 0
    for p in pnls:
        run_w = run_w + 1 if p > 0 else 0
        run_l = run_l + 1 if p < 0 else 0
        max_wins = max(max_wins, run_w)
        max_losses = max(max_losses, run_l)

    return TradeMetrics(
        total_trades=n,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / n,
        average_win=avg_win,
        average_loss=avg_loss,
        total_profit=total_profit,
        total_loss=total_loss,
        profit_factor=profit_factor,
        payoff_ratio=payoff,
        expectancy=sum(pnls, ZERO) / n,
        best_trade=max(pnls),
        worst_trade=min(pnls),
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
    )


def cost_stats(trades: Sequence[Order]) -> CostMetrics:
    filled = [o for o in trades if o.costs is not None]
    return CostMetrics(
        total_commission=sum((o.costs.commission for o in filled), ZERO),
        total_stamp_duty=sum((o.costs.stamp_duty for o in filled), ZERO),
        total_trading_fee=sum((o.costs.trading_fee for o in filled), ZERO),
        total_settlement_fee=sum((o.costs.settlement_fee for o in filled), ZERO),
        total_system_fee=sum((o.costs.system_fee for o in filled), ZERO),
        total_costs=sum((o.costs.total_cost for o in filled), ZERO),
        total_slippage=sum((o.slippage_cost for o in filled), ZERO),
    )


def compute_performance(
    trades: Sequence[Order],
    equity_curve: Sequence[EquitySnapshot],
    risk_free_rate: float = 0.0,
) -> PerformanceMetrics:
    if len(equity_curve) < 2:
        return PerformanceMetrics(costs=cost_stats(trades))
    metrics = PerformanceMetrics(
        equity=equity_stats(equity_curve, risk_free_rate=risk_free_rate),
        trades=trade_stats(trades),
        costs=cost_stats(trades),
    )
    logger.debug("[metrics] summary built: equity, trades & costs")
    return metrics


__all__ = [
    "TRADING_DAYS",
    "PROFIT_FACTOR_SENTINEL",
    "EquityMetrics",
    "TradeMetrics",
    "CostMetrics",
    "PerformanceMetrics",
    "equity_stats",
    "trade_stats",
    "cost_stats",
    "compute_performance",
    "daily_returns",
    "drawdown_series",
    "monthly_returns",
]
