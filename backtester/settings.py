"""Centralized backtester settings powered by Pydantic.

Environment matrix:

| Section  | Environment Variable            | Default     | Purpose                                     |
|----------|---------------------------------|-------------|---------------------------------------------|
| Backtest | `BACKTEST_INITIAL_CAPITAL`      | `100000`    | Starting cash of a run                      |
| Backtest | `BACKTEST_SLIPPAGE_RATE`        | `0.0001`    | Adverse price move applied to every fill    |
| Backtest | `BACKTEST_RISK_FREE_RATE`       | `0.02`      | Annual hurdle for Sharpe/Sortino            |
| Backtest | `BACKTEST_LOT_SIZE`             | `100`       | Board lot used by the position sizers       |
| Backtest | `BACKTEST_INDICATOR_LOOKBACK`   | `20`        | Indicator snapshots handed to the strategy  |
| Backtest | `BACKTEST_MAX_POSITION_RATIO`   | `0.2`       | Max share of equity per new position        |
| Backtest | `BACKTEST_OUT_DIR`              | `.`         | Default export directory of the CLI         |
| Fees     | `FEE_COMMISSION_RATE`           | `0.00025`   | Broker commission rate                      |
| Fees     | `FEE_MIN_COMMISSION`            | `5.00`      | Commission floor                            |
| Fees     | `FEE_STAMP_DUTY_RATE`           | `0.0013`    | Sell-side stamp duty rate                   |
| Fees     | `FEE_TRADING_FEE_RATE`          | `0.00005`   | Exchange trading fee rate                   |
| Fees     | `FEE_SETTLEMENT_FEE_RATE`       | `0.00002`   | Clearing/settlement fee rate                |
| Fees     | `FEE_MIN_SETTLEMENT_FEE`        | `2.00`      | Settlement fee floor                        |
| Fees     | `FEE_MAX_SETTLEMENT_FEE`        | `100.00`    | Settlement fee cap                          |
| Fees     | `FEE_SYSTEM_FEE`                | `0.50`      | Fixed system fee per trade                  |
| Fees     | `FEE_STAMP_DUTY_EXEMPT`         | HK ETFs     | Comma separated symbols without stamp duty  |
| Sentry   | `SENTRY_DSN`                    | `None`      | Sentry ingest DSN                           |
| Sentry   | `SENTRY_ENVIRONMENT`            | `None`      | Deployment environment label                |

Settings are read from the environment (``.env`` is loaded by the package on
import) and are treated as read-only.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backtester.backtest.costs import HK_STAMP_DUTY_EXEMPT, FeeSchedule


class _SettingsBase(BaseSettings):
    """Common configuration for BaseSettings subclasses."""

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        extra="ignore",
        case_sensitive=True,
        frozen=True,
    )


class BacktestSettings(_SettingsBase):
    """Run-level defaults used by the CLI and the sweep runner."""

    initial_capital: Decimal = Field(
        default=Decimal("100000"), gt=0, alias="BACKTEST_INITIAL_CAPITAL"
    )
    slippage_rate: Decimal = Field(
        default=Decimal("0.0001"), ge=0, lt=1, alias="BACKTEST_SLIPPAGE_RATE"
    )
    risk_free_rate: float = Field(default=0.02, alias="BACKTEST_RISK_FREE_RATE")
    lot_size: int = Field(default=100, gt=0, alias="BACKTEST_LOT_SIZE")
    indicator_lookback: int = Field(
        default=20, gt=0, alias="BACKTEST_INDICATOR_LOOKBACK"
    )
    max_position_ratio: float = Field(
        default=0.2, gt=0, le=1, alias="BACKTEST_MAX_POSITION_RATIO"
    )
    out_dir: str = Field(default=".", alias="BACKTEST_OUT_DIR")


class FeeSettings(_SettingsBase):
    """Transaction fee schedule; defaults are the Hong Kong equities regime."""

    commission_rate: Decimal = Field(default=Decimal("0.00025"), alias="FEE_COMMISSION_RATE")
    min_commission: Decimal = Field(default=Decimal("5.00"), alias="FEE_MIN_COMMISSION")
    stamp_duty_rate: Decimal = Field(default=Decimal("0.0013"), alias="FEE_STAMP_DUTY_RATE")
    trading_fee_rate: Decimal = Field(default=Decimal("0.00005"), alias="FEE_TRADING_FEE_RATE")
    settlement_fee_rate: Decimal = Field(
        default=Decimal("0.00002"), alias="FEE_SETTLEMENT_FEE_RATE"
    )
    min_settlement_fee: Decimal = Field(
        default=Decimal("2.00"), alias="FEE_MIN_SETTLEMENT_FEE"
    )
    max_settlement_fee: Decimal = Field(
        default=Decimal("100.00"), alias="FEE_MAX_SETTLEMENT_FEE"
    )
    system_fee: Decimal = Field(default=Decimal("0.50"), alias="FEE_SYSTEM_FEE")
    stamp_duty_exempt: str = Field(
        default=",".join(sorted(HK_STAMP_DUTY_EXEMPT)), alias="FEE_STAMP_DUTY_EXEMPT"
    )

    @field_validator(
        "commission_rate",
        "min_commission",
        "stamp_duty_rate",
        "trading_fee_rate",
        "settlement_fee_rate",
        "min_settlement_fee",
        "max_settlement_fee",
        "system_fee",
    )
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("fee values must be non-negative")
        return value

    @computed_field
    @property
    def exempt_symbols(self) -> frozenset[str]:
        return frozenset(
            part.strip().upper() for part in self.stamp_duty_exempt.split(",") if part.strip()
        )

    def to_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            commission_rate=self.commission_rate,
            min_commission=self.min_commission,
            stamp_duty_rate=self.stamp_duty_rate,
            trading_fee_rate=self.trading_fee_rate,
            settlement_fee_rate=self.settlement_fee_rate,
            min_settlement_fee=self.min_settlement_fee,
            max_settlement_fee=self.max_settlement_fee,
            system_fee=self.system_fee,
            stamp_duty_exempt=self.exempt_symbols,
        )


class SentrySettings(_SettingsBase):
    """Sentry SDK configuration."""

    dsn: str | None = Field(default=None, alias="SENTRY_DSN")
    environment: str | None = Field(default=None, alias="SENTRY_ENVIRONMENT")

    @computed_field
    @property
    def enabled(self) -> bool:
        return bool(self.dsn)


class Settings(BaseModel):
    """Aggregate accessor for domain-specific settings."""

    backtest: BacktestSettings = Field(default_factory=BacktestSettings)
    fees: FeeSettings = Field(default_factory=FeeSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)

    model_config = {
        "frozen": True,
        "arbitrary_types_allowed": True,
    }


def get_settings() -> Settings:
    """Instantiate settings from the current environment."""
    return Settings()


__all__ = [
    "Settings",
    "get_settings",
    "BacktestSettings",
    "FeeSettings",
    "SentrySettings",
]
