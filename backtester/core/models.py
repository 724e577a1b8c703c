from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator
from pydantic.fields import AliasChoices

from backtester.core.money import ZERO, to_decimal

if TYPE_CHECKING:
    from backtester.backtest.costs import CostBreakdown


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    REJECTED = "REJECTED"


class SignalKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    CLOSE_LONG = "CLOSE_LONG"
    CLOSE_SHORT = "CLOSE_SHORT"
    NO_ACTION = "NO_ACTION"


class Bar(BaseModel):
    """
    A single OHLCV price bar.

    Attributes:
        symbol (str): The instrument symbol.
        timestamp (datetime): The bar timestamp.
        open (Decimal): The open price.
        high (Decimal): The high price.
        low (Decimal): The low price.
        close (Decimal): The close price.
        volume (int): The traded volume.
    """

    symbol: str = Field(validation_alias=AliasChoices("symbol", "S"))
    timestamp: dt.datetime = Field(validation_alias=AliasChoices("timestamp", "t", "ts"))
    open: Decimal = Field(validation_alias=AliasChoices("open", "o"))
    high: Decimal = Field(validation_alias=AliasChoices("high", "h"))
    low: Decimal = Field(validation_alias=AliasChoices("low", "l", "lo"))
    close: Decimal = Field(validation_alias=AliasChoices("close", "c"))
    volume: int = Field(0, validation_alias=AliasChoices("volume", "v"))

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
        "frozen": True,
    }

    @field_validator("open", "high", "low", "close", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> Decimal:
        return to_decimal(value, field="price")

    @property
    def trade_date(self) -> dt.date:
        """The calendar date the bar belongs to."""
        return self.timestamp.date()

    def __repr__(self) -> str:
        return (
            f"Bar({self.symbol} {self.timestamp.isoformat()} o={self.open} h={self.high} "
            f"l={self.low} c={self.close} v={self.volume})"
        )


class Signal(BaseModel):
    """
    A strategy's decision for one bar.

    Attributes:
        symbol (str): The instrument symbol.
        kind (SignalKind): What the strategy wants to do.
        price (Optional[Decimal]): Reference price; the limit price for LIMIT orders.
        confidence (float): Strategy confidence in [0, 1].
        reason (str): Free-text rationale.
        quantity (Optional[int]): Explicit share count, overrides the position sizer.
        order_type (OrderType): MARKET fills on the bar, LIMIT waits for a touch.
        timestamp (Optional[datetime]): When the signal was produced.
        metadata (Dict[str, Any]): Strategy specific diagnostics.
    """

    symbol: str
    kind: SignalKind
    price: Optional[Decimal] = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    reason: str = ""
    quantity: Optional[int] = Field(default=None, ge=0)
    order_type: OrderType = OrderType.MARKET
    timestamp: Optional[dt.datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True, "extra": "ignore"}

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> Optional[Decimal]:
        return None if value is None else to_decimal(value, field="price")

    @property
    def is_actionable(self) -> bool:
        """HOLD and NO_ACTION never produce an order."""
        return self.kind not in (SignalKind.HOLD, SignalKind.NO_ACTION)

    @classmethod
    def hold(cls, symbol: str, reason: str = "") -> "Signal":
        return cls(symbol=symbol, kind=SignalKind.HOLD, reason=reason)


@dataclass
class Order:
    """
    An order travelling from the driver into the ledger.

    The ledger fills in ``executed_price``, ``costs`` and, for sells,
    ``realized_pnl`` before appending the order to its trade history.
    """

    symbol: str
    side: OrderSide
    quantity: int
    price: Decimal
    created_at: Optional[dt.datetime] = None
    order_type: OrderType = OrderType.MARKET
    status: OrderStatus = OrderStatus.PENDING
    order_id: str = field(default_factory=lambda: uuid4().hex)
    rationale: str = ""
    executed_price: Optional[Decimal] = None
    costs: Optional["CostBreakdown"] = None
    realized_pnl: Optional[Decimal] = None

    def __post_init__(self) -> None:
        self.price = to_decimal(self.price, field="price")

    @property
    def is_buy(self) -> bool:
        return self.side is OrderSide.BUY

    @property
    def is_sell(self) -> bool:
        return self.side is OrderSide.SELL

    @property
    def total_cost(self) -> Decimal:
        return self.costs.total_cost if self.costs is not None else ZERO

    @property
    def slippage_cost(self) -> Decimal:
        """Money lost to slippage versus the requested price."""
        if self.executed_price is None:
            return ZERO
        return abs(self.executed_price - self.price) * self.quantity

    def to_record(self) -> Dict[str, Any]:
        """Flat trade record for export."""
        record: Dict[str, Any] = {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "status": self.status.value,
            "quantity": self.quantity,
            "requested_price": self.price,
            "executed_price": self.executed_price,
            "created_at": self.created_at,
            "realized_pnl": self.realized_pnl,
            "rationale": self.rationale,
        }
        if self.costs is not None:
            record.update(self.costs.as_dict())
        return record


@dataclass(frozen=True)
class Position:
    """
    An open long position.

    ``average_cost`` is per share and includes capitalised buy-side costs.
    """

    symbol: str
    quantity: int
    average_cost: Decimal
    market_value: Decimal = ZERO

    @property
    def cost_basis(self) -> Decimal:
        return self.average_cost * self.quantity

    @property
    def unrealized_pnl(self) -> Decimal:
        return self.market_value - self.cost_basis

    def with_market_value(self, market_value: Decimal) -> "Position":
        return replace(self, market_value=market_value)


@dataclass(frozen=True)
class EquitySnapshot:
    date: dt.date
    equity: Decimal


__all__ = [
    "Bar",
    "Signal",
    "SignalKind",
    "Order",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "Position",
    "EquitySnapshot",
]
