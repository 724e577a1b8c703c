from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable

from backtester.core.money import ZERO, clamp, round2, to_decimal

# Hong Kong ETFs that are exempt from stamp duty
HK_STAMP_DUTY_EXEMPT: FrozenSet[str] = frozenset({"02800.HK", "03033.HK", "07500.HK"})


@dataclass(frozen=True)
class FeeSchedule:
    """
    Rates and fixed amounts of one fee regime.

    Attributes:
        commission_rate (Decimal): Broker commission as a fraction of trade value.
        min_commission (Decimal): Commission floor per trade.
        stamp_duty_rate (Decimal): Sell-side stamp duty as a fraction of trade value.
        trading_fee_rate (Decimal): Exchange trading fee as a fraction of trade value.
        settlement_fee_rate (Decimal): Clearing/settlement fee as a fraction of trade value.
        min_settlement_fee (Decimal): Settlement fee floor.
        max_settlement_fee (Decimal): Settlement fee cap.
        system_fee (Decimal): Fixed trading-system fee per trade.
        stamp_duty_exempt (FrozenSet[str]): Symbols never charged stamp duty.
    """

    commission_rate: Decimal = Decimal("0.00025")
    min_commission: Decimal = Decimal("5.00")
    stamp_duty_rate: Decimal = Decimal("0.0013")
    trading_fee_rate: Decimal = Decimal("0.00005")
    settlement_fee_rate: Decimal = Decimal("0.00002")
    min_settlement_fee: Decimal = Decimal("2.00")
    max_settlement_fee: Decimal = Decimal("100.00")
    system_fee: Decimal = Decimal("0.50")
    stamp_duty_exempt: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        for name in (
            "commission_rate",
            "min_commission",
            "stamp_duty_rate",
            "trading_fee_rate",
            "settlement_fee_rate",
            "min_settlement_fee",
            "max_settlement_fee",
            "system_fee",
        ):
            value = to_decimal(getattr(self, name), field=name)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
            object.__setattr__(self, name, value)
        if self.min_settlement_fee > self.max_settlement_fee:
            raise ValueError("min_settlement_fee cannot exceed max_settlement_fee")
        object.__setattr__(
            self,
            "stamp_duty_exempt",
            frozenset(s.strip().upper() for s in self.stamp_duty_exempt if s.strip()),
        )

    @classmethod
    def hong_kong(cls, *, exempt: Iterable[str] = HK_STAMP_DUTY_EXEMPT) -> "FeeSchedule":
        """Default Hong Kong equities schedule."""
        return cls(stamp_duty_exempt=frozenset(exempt))

    @classmethod
    def zero(cls) -> "FeeSchedule":
        """A frictionless schedule, handy for tests and sanity runs."""
        return cls(
            commission_rate=ZERO,
            min_commission=ZERO,
            stamp_duty_rate=ZERO,
            trading_fee_rate=ZERO,
            settlement_fee_rate=ZERO,
            min_settlement_fee=ZERO,
            max_settlement_fee=ZERO,
            system_fee=ZERO,
        )

    def charges_stamp_duty(self, symbol: str | None) -> bool:
        return not symbol or symbol.upper() not in self.stamp_duty_exempt


@dataclass(frozen=True)
class CostBreakdown:
    """Itemised costs of one fill."""

    trade_value: Decimal = ZERO
    commission: Decimal = ZERO
    stamp_duty: Decimal = ZERO
    trading_fee: Decimal = ZERO
    settlement_fee: Decimal = ZERO
    system_fee: Decimal = ZERO
    total_cost: Decimal = ZERO

    def as_dict(self) -> Dict[str, Decimal]:
        return asdict(self)


class TransactionCostModel:
    """
    Pure cost calculator over a ``FeeSchedule``.

    Rate-derived components are rounded half-up to cents; the commission
    floor and the settlement floor/cap are already whole cents.
    """

    def __init__(self, schedule: FeeSchedule | None = None) -> None:
        self._schedule = schedule or FeeSchedule()

    @property
    def schedule(self) -> FeeSchedule:
        return self._schedule

    def cost(
        self,
        price: Decimal,
        quantity: int,
        is_sell: bool,
        *,
        symbol: str | None = None,
    ) -> CostBreakdown:
        if price is None or price <= 0 or quantity <= 0:
            return CostBreakdown()

        s = self._schedule
        trade_value = price * quantity

        commission = max(round2(trade_value * s.commission_rate), s.min_commission)
        stamp_duty = (
            round2(trade_value * s.stamp_duty_rate)
            if is_sell and s.charges_stamp_duty(symbol)
            else ZERO
        )
        trading_fee = round2(trade_value * s.trading_fee_rate)
        settlement_fee = clamp(
            round2(trade_value * s.settlement_fee_rate),
            s.min_settlement_fee,
            s.max_settlement_fee,
        )
        system_fee = s.system_fee

        return CostBreakdown(
            trade_value=trade_value,
            commission=commission,
            stamp_duty=stamp_duty,
            trading_fee=trading_fee,
            settlement_fee=settlement_fee,
            system_fee=system_fee,
            total_cost=commission + stamp_duty + trading_fee + settlement_fee + system_fee,
        )


__all__ = ["FeeSchedule", "CostBreakdown", "TransactionCostModel", "HK_STAMP_DUTY_EXEMPT"]
