from __future__ import annotations

import asyncio
import datetime as dt
from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable
from uuid import uuid4

from loguru import logger

from backtester.backtest.costs import TransactionCostModel
from backtester.backtest.ledger import PortfolioLedger
from backtester.backtest.metrics import compute_performance
from backtester.backtest.result import BacktestRequest, BacktestResult
from backtester.core.exceptions import DataValidationError
from backtester.core.models import (
    Bar,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Signal,
    SignalKind,
)
from backtester.core.money import ZERO, to_decimal
from backtester.logging_utils import logging_context

IndicatorSnapshot = Mapping[str, float]


# -------- Collaborator protocols --------
@runtime_checkable
class Strategy(Protocol):
    def generate_signal(
        self,
        bar: Bar,
        indicator_history: Sequence[IndicatorSnapshot],
        positions: Mapping[str, Position],
    ) -> Signal: ...


@runtime_checkable
class IndicatorProvider(Protocol):
    warmup_bars: int

    def prepare(self, bars: Sequence[Bar]) -> None: ...

    def at(self, index: int) -> IndicatorSnapshot: ...


@runtime_checkable
class PositionSizer(Protocol):
    def size(
        self,
        signal: Signal,
        price: Decimal,
        cash: Decimal,
        positions: Mapping[str, Position],
    ) -> int: ...


class NullIndicatorProvider:
    """Provides no indicators; for strategies that only look at bars."""

    warmup_bars = 0

    def prepare(self, bars: Sequence[Bar]) -> None:
        return None

    def at(self, index: int) -> IndicatorSnapshot:
        return {}


# -------- Position sizers --------
def _held(positions: Mapping[str, Position], symbol: str) -> int:
    pos = positions.get(symbol)
    return pos.quantity if pos is not None else 0


class FixedLotSizer:
    """Buys a fixed number of shares; sells never exceed the holding."""

    def __init__(self, lot_size: int = 100) -> None:
        if lot_size <= 0:
            raise ValueError("lot_size must be positive")
        self.lot_size = lot_size

    def size(
        self,
        signal: Signal,
        price: Decimal,
        cash: Decimal,
        positions: Mapping[str, Position],
    ) -> int:
        if signal.kind is SignalKind.BUY:
            return self.lot_size
        return min(self.lot_size, _held(positions, signal.symbol))


class FractionOfEquitySizer:
    """
    Commits up to ``max_position_ratio`` of current equity to a new buy,
    rounded down to whole board lots. Sells close the whole holding.
    """

    def __init__(
        self,
        max_position_ratio: float = 0.2,
        lot_size: int = 100,
        *,
        scale_by_confidence: bool = False,
    ) -> None:
        if not 0 < max_position_ratio <= 1:
            raise ValueError("max_position_ratio must be in (0, 1]")
        if lot_size <= 0:
            raise ValueError("lot_size must be positive")
        self.max_position_ratio = to_decimal(max_position_ratio, field="max_position_ratio")
        self.lot_size = lot_size
        self.scale_by_confidence = scale_by_confidence

    def size(
        self,
        signal: Signal,
        price: Decimal,
        cash: Decimal,
        positions: Mapping[str, Position],
    ) -> int:
        if signal.kind is not SignalKind.BUY:
            return _held(positions, signal.symbol)
        if price <= 0:
            return 0
        equity = cash + sum((p.market_value for p in positions.values()), ZERO)
        budget = equity * self.max_position_ratio
        if self.scale_by_confidence:
            budget *= to_decimal(signal.confidence, field="confidence")
        budget = min(budget, cash)
        shares = int((budget / price).to_integral_value(rounding=ROUND_DOWN))
        return (shares // self.lot_size) * self.lot_size


# -------- Driver --------
class BacktestDriver:
    """
    Runs one strategy over one symbol's bars and produces a ``BacktestResult``.

    Each ``run`` builds its own ledger, so a driver can be reused across runs
    but a single run is never shared between threads.
    """

    def __init__(
        self,
        strategy: Strategy,
        indicators: Optional[IndicatorProvider] = None,
        sizer: Optional[PositionSizer] = None,
        *,
        cost_model: Optional[TransactionCostModel] = None,
    ) -> None:
        self.strategy = strategy
        self.indicators = indicators or NullIndicatorProvider()
        self.sizer = sizer or FixedLotSizer()
        self.cost_model = cost_model

    def run(self, request: BacktestRequest, bars: Sequence[Bar]) -> BacktestResult:
        run_id = uuid4().hex[:12]
        with logging_context(run_id=run_id):
            try:
                return self._run(request, list(bars), run_id)
            except Exception as exc:
                logger.exception("[driver] run aborted for {}: {}", request.symbol, exc)
                return BacktestResult.failure(
                    request, str(exc) or type(exc).__name__, run_id=run_id
                )

    # -------- internals --------
    def _run(self, request: BacktestRequest, bars: List[Bar], run_id: str) -> BacktestResult:
        if not bars:
            logger.info("[driver] no bars for {}; empty result", request.symbol)
            return BacktestResult.empty(request, run_id=run_id)

        _validate_bars(request.symbol, bars)
        if request.end_time is not None:
            bars = [b for b in bars if b.timestamp <= request.end_time]
        start_index = _find_start_index(bars, request.start_time)
        if start_index is None:
            raise DataValidationError(
                f"no bars for {request.symbol} between {request.start_time} and {request.end_time}"
            )

        ledger = PortfolioLedger(
            request.initial_capital,
            slippage_rate=request.slippage_rate,
            cost_model=self.cost_model or TransactionCostModel(request.fee_schedule),
        )
        self.indicators.prepare(bars)
        warmup = int(getattr(self.indicators, "warmup_bars", 0) or 0)
        lookback = request.indicator_history_lookback
        snapshots: Dict[int, IndicatorSnapshot] = {}

        def indicators_at(j: int) -> IndicatorSnapshot:
            if j not in snapshots:
                snapshots[j] = {} if j + 1 < warmup else dict(self.indicators.at(j))
            return snapshots[j]

        logger.info(
            "[driver] {} bars ({} warm-up) for {} from {}",
            len(bars),
            start_index,
            request.symbol,
            bars[start_index].timestamp,
        )

        pending: List[Order] = []
        last_date: Optional[dt.date] = None
        for i in range(start_index, len(bars)):
            bar = bars[i]
            self._fill_pending(pending, bar, ledger)
            ledger.mark_to_market({bar.symbol: bar.close})

            history = [indicators_at(j) for j in range(max(0, i - lookback + 1), i + 1)]
            signal = self.strategy.generate_signal(bar, history, ledger.positions)
            if signal is not None and signal.is_actionable:
                self._act(signal, bar, ledger, pending)

            current_date = bar.trade_date
            if last_date is not None and current_date != last_date:
                ledger.snapshot_equity(last_date)
            last_date = current_date

        if last_date is not None:
            ledger.snapshot_equity(last_date)

        if pending:
            logger.info("[driver] {} limit orders never triggered", len(pending))
        if request.liquidate_at_end:
            self._liquidate(ledger, bars[-1])

        metrics = compute_performance(
            ledger.trade_history, ledger.equity_curve, request.risk_free_rate
        )
        result = BacktestResult(
            symbol=request.symbol,
            strategy_name=request.strategy_name,
            start_time=request.start_time,
            end_time=request.end_time,
            initial_capital=ledger.initial_cash,
            final_cash=ledger.cash,
            final_equity=ledger.total_equity(),
            unrealized_pnl=ledger.unrealized_pnl(),
            metrics=metrics,
            equity_curve=ledger.equity_curve,
            trades=ledger.trade_history,
            open_positions=tuple(ledger.positions.values()),
            bars_processed=len(bars) - start_index,
            run_id=run_id,
        )
        logger.info(
            "[driver] done {}: equity {} -> {:.2f}, {} fills",
            request.symbol,
            result.initial_capital,
            result.final_equity,
            len(result.trades),
        )
        return result

    def _act(
        self,
        signal: Signal,
        bar: Bar,
        ledger: PortfolioLedger,
        pending: List[Order],
    ) -> None:
        if signal.kind is SignalKind.CLOSE_SHORT:
            logger.info("[driver] CLOSE_SHORT ignored for {}: long-only ledger", bar.symbol)
            return

        side = OrderSide.BUY if signal.kind is SignalKind.BUY else OrderSide.SELL
        is_limit = signal.order_type is OrderType.LIMIT and signal.price is not None
        price = signal.price if is_limit else bar.close
        positions = ledger.positions

        if signal.kind is SignalKind.CLOSE_LONG:
            quantity = _held(positions, bar.symbol)
        elif signal.quantity is not None:
            quantity = signal.quantity
        else:
            quantity = self.sizer.size(signal, price, ledger.cash, positions)
        if quantity <= 0:
            logger.debug("[driver] {} {} sized to zero; no order", signal.kind.value, bar.symbol)
            return

        order = Order(
            symbol=bar.symbol,
            side=side,
            quantity=quantity,
            price=price,
            created_at=bar.timestamp,
            order_type=OrderType.LIMIT if is_limit else OrderType.MARKET,
            rationale=signal.reason,
        )
        if is_limit:
            logger.debug("[driver] limit {} {} x{} @ {} queued", side.value, bar.symbol, quantity, price)
            pending.append(order)
            return
        result = ledger.execute(order)
        order.status = OrderStatus.FILLED if result.accepted else OrderStatus.REJECTED

    def _fill_pending(self, pending: List[Order], bar: Bar, ledger: PortfolioLedger) -> None:
        for order in list(pending):
            if order.symbol != bar.symbol:
                continue
            touched = (order.is_buy and bar.low <= order.price) or (
                order.is_sell and bar.high >= order.price
            )
            if not touched:
                continue
            pending.remove(order)
            result = ledger.execute(order)
            order.status = OrderStatus.FILLED if result.accepted else OrderStatus.REJECTED
            logger.debug("[driver] limit order {} {}", order.order_id, order.status.value)

    def _liquidate(self, ledger: PortfolioLedger, last_bar: Bar) -> None:
        positions = ledger.positions
        if not positions:
            return
        logger.info("[driver] liquidating {} open positions at end of run", len(positions))
        for pos in positions.values():
            order = Order(
                symbol=pos.symbol,
                side=OrderSide.SELL,
                quantity=pos.quantity,
                price=last_bar.close,
                created_at=last_bar.timestamp,
                rationale="end of run liquidation",
            )
            result = ledger.execute(order)
            order.status = OrderStatus.FILLED if result.accepted else OrderStatus.REJECTED
        ledger.replace_last_snapshot()


def _validate_bars(symbol: str, bars: Sequence[Bar]) -> None:
    for prev, cur in zip(bars, bars[1:]):
        if cur.timestamp <= prev.timestamp:
            raise DataValidationError(
                f"bars must be strictly increasing in time: {cur.timestamp} after {prev.timestamp}"
            )
    foreign = {b.symbol for b in bars if b.symbol != symbol}
    if foreign:
        raise DataValidationError(f"bars for {sorted(foreign)} passed to a {symbol} run")


def _find_start_index(bars: Sequence[Bar], start: Optional[dt.datetime]) -> Optional[int]:
    if not bars:
        return None
    if start is None:
        return 0
    for i, bar in enumerate(bars):
        if bar.timestamp >= start:
            return i
    return None


def run_backtest(
    request: BacktestRequest,
    bars: Sequence[Bar],
    strategy: Strategy,
    *,
    indicators: Optional[IndicatorProvider] = None,
    sizer: Optional[PositionSizer] = None,
) -> BacktestResult:
    return BacktestDriver(strategy, indicators, sizer).run(request, bars)


async def run_backtest_async(
    driver: BacktestDriver,
    request: BacktestRequest,
    bars: Sequence[Bar],
) -> BacktestResult:
    """Run on a worker thread so many independent runs can be awaited together."""
    return await asyncio.to_thread(driver.run, request, bars)


__all__ = [
    "Strategy",
    "IndicatorProvider",
    "PositionSizer",
    "NullIndicatorProvider",
    "FixedLotSizer",
    "FractionOfEquitySizer",
    "BacktestDriver",
    "run_backtest",
    "run_backtest_async",
]
