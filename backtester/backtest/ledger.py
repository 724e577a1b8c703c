from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from loguru import logger

from backtester.backtest.costs import CostBreakdown, TransactionCostModel
from backtester.core.exceptions import DataValidationError, OrderValidationError
from backtester.core.models import EquitySnapshot, Order, OrderSide, Position
from backtester.core.money import ONE, ZERO, to_decimal


class RejectReason(str, Enum):
    INSUFFICIENT_CASH = "INSUFFICIENT_CASH"
    INSUFFICIENT_HOLDINGS = "INSUFFICIENT_HOLDINGS"


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of ``PortfolioLedger.execute``.

    A rejection is a normal backtest outcome (not enough cash, stale sell
    signal) and leaves the ledger untouched.
    """

    accepted: bool
    order: Order
    reason: Optional[RejectReason] = None

    @property
    def rejected(self) -> bool:
        return not self.accepted


class PortfolioLedger:
    """
    Cash, positions, equity curve and trade history of a single run.

    The ledger is the only writer of financial state during a backtest. It is
    created fresh per run and never shared between threads.
    """

    def __init__(
        self,
        initial_cash: Decimal | float | int,
        *,
        slippage_rate: Decimal | float = ZERO,
        cost_model: TransactionCostModel | None = None,
    ) -> None:
        cash = to_decimal(initial_cash, field="initial_cash")
        if cash < 0:
            raise ValueError("initial_cash must be non-negative")
        slippage = to_decimal(slippage_rate, field="slippage_rate")
        if slippage < 0 or slippage >= 1:
            raise ValueError("slippage_rate must be in [0, 1)")

        self._initial_cash = cash
        self._cash = cash
        self._slippage_rate = slippage
        self._cost_model = cost_model or TransactionCostModel()
        self._positions: Dict[str, Position] = {}
        self._equity_curve: List[EquitySnapshot] = []
        self._trade_history: List[Order] = []

    # -------- Read-only views --------
    @property
    def initial_cash(self) -> Decimal:
        return self._initial_cash

    @property
    def cash(self) -> Decimal:
        return self._cash

    @property
    def slippage_rate(self) -> Decimal:
        return self._slippage_rate

    @property
    def cost_model(self) -> TransactionCostModel:
        return self._cost_model

    @property
    def positions(self) -> Dict[str, Position]:
        return dict(self._positions)

    @property
    def equity_curve(self) -> Tuple[EquitySnapshot, ...]:
        return tuple(self._equity_curve)

    @property
    def trade_history(self) -> Tuple[Order, ...]:
        return tuple(self._trade_history)

    def position(self, symbol: str) -> Optional[Position]:
        return self._positions.get(symbol)

    # -------- Execution --------
    def execute(self, order: Order) -> ExecutionResult:
        if order.quantity <= 0:
            raise OrderValidationError(
                f"order {order.order_id} has non-positive quantity {order.quantity}"
            )
        if order.price <= 0:
            raise OrderValidationError(
                f"order {order.order_id} has non-positive price {order.price}"
            )
        if order.side is OrderSide.BUY:
            return self._execute_buy(order)
        return self._execute_sell(order)

    def _execute_buy(self, order: Order) -> ExecutionResult:
        execution_price = order.price * (ONE + self._slippage_rate)
        qty = order.quantity
        costs = self._cost_model.cost(execution_price, qty, False, symbol=order.symbol)
        total_charge = execution_price * qty + costs.total_cost

        if self._cash < total_charge:
            logger.warning(
                "[ledger] buy rejected {} x{}: need {} (incl. costs), cash {}",
                order.symbol,
                qty,
                total_charge,
                self._cash,
            )
            return ExecutionResult(False, order, RejectReason.INSUFFICIENT_CASH)

        self._cash -= total_charge
        current = self._positions.get(order.symbol)
        old_qty = current.quantity if current else 0
        old_avg = current.average_cost if current else ZERO
        new_qty = old_qty + qty
        new_avg = (old_avg * old_qty + total_charge) / new_qty
        # new shares carry the last mark, or the reference price if never marked
        if current is not None and current.market_value > 0:
            mark = current.market_value / old_qty
        else:
            mark = order.price
        self._positions[order.symbol] = Position(
            symbol=order.symbol,
            quantity=new_qty,
            average_cost=new_avg,
            market_value=mark * new_qty,
        )
        self._record(order, execution_price, costs, None)
        logger.debug(
            "[ledger] bought {} x{} @ {} charge={} cash={}",
            order.symbol,
            qty,
            execution_price,
            total_charge,
            self._cash,
        )
        return ExecutionResult(True, order)

    def _execute_sell(self, order: Order) -> ExecutionResult:
        current = self._positions.get(order.symbol)
        qty = order.quantity
        if current is None or current.quantity < qty:
            logger.warning(
                "[ledger] sell rejected {} x{}: holding {}",
                order.symbol,
                qty,
                current.quantity if current else 0,
            )
            return ExecutionResult(False, order, RejectReason.INSUFFICIENT_HOLDINGS)

        execution_price = order.price * (ONE - self._slippage_rate)
        costs = self._cost_model.cost(execution_price, qty, True, symbol=order.symbol)
        net_proceeds = execution_price * qty - costs.total_cost
        realized_pnl = (execution_price - current.average_cost) * qty - costs.total_cost

        self._cash += net_proceeds
        new_qty = current.quantity - qty
        if new_qty == 0:
            del self._positions[order.symbol]
        else:
            # average cost of the remainder is unchanged; market value is stale
            # until the next mark, scale it with the remaining quantity
            remaining_value = current.market_value * new_qty / current.quantity
            self._positions[order.symbol] = Position(
                symbol=order.symbol,
                quantity=new_qty,
                average_cost=current.average_cost,
                market_value=remaining_value,
            )
        self._record(order, execution_price, costs, realized_pnl)
        logger.debug(
            "[ledger] sold {} x{} @ {} net={} pnl={} cash={}",
            order.symbol,
            qty,
            execution_price,
            net_proceeds,
            realized_pnl,
            self._cash,
        )
        return ExecutionResult(True, order)

    def _record(
        self,
        order: Order,
        executed_price: Decimal,
        costs: CostBreakdown,
        realized_pnl: Optional[Decimal],
    ) -> None:
        order.executed_price = executed_price
        order.costs = costs
        order.realized_pnl = realized_pnl
        self._trade_history.append(order)

    # -------- Valuation --------
    def mark_to_market(self, prices: Mapping[str, Decimal | float | int]) -> None:
        """Re-value held symbols found in ``prices``; others keep their last mark."""
        for symbol, position in list(self._positions.items()):
            if symbol in prices:
                price = to_decimal(prices[symbol], field=f"price[{symbol}]")
                self._positions[symbol] = position.with_market_value(
                    price * position.quantity
                )

    def total_equity(self) -> Decimal:
        return self._cash + sum((p.market_value for p in self._positions.values()), ZERO)

    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self._positions.values()), ZERO)

    def snapshot_equity(self, date: dt.date) -> EquitySnapshot:
        if self._equity_curve and date <= self._equity_curve[-1].date:
            raise DataValidationError(
                f"equity snapshot for {date} is not after {self._equity_curve[-1].date}"
            )
        snapshot = EquitySnapshot(date=date, equity=self.total_equity())
        self._equity_curve.append(snapshot)
        logger.debug("[ledger] equity snapshot {} = {}", date, snapshot.equity)
        return snapshot

    def replace_last_snapshot(self) -> Optional[EquitySnapshot]:
        """Re-value the latest snapshot at the current total equity."""
        if not self._equity_curve:
            return None
        last = self._equity_curve[-1]
        snapshot = EquitySnapshot(date=last.date, equity=self.total_equity())
        self._equity_curve[-1] = snapshot
        return snapshot


__all__ = ["PortfolioLedger", "ExecutionResult", "RejectReason"]
