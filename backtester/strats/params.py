from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MomentumParams:
    # Core signal
    min_confidence: float = 0.6  # skip crossovers scored below this
    rsi_overbought: float = 70.0  # no new longs above this RSI
    rsi_oversold: float = 30.0
    require_trend: bool = True  # close must sit above the slow SMA to enter
    max_positions: int = 3

    # Exits
    stop_loss_pct: float = 0.05  # from average cost per share
    take_profit_pct: float = 0.10


@dataclass(frozen=True)
class MeanReversionParams:
    entry_percent_b: float = 0.0  # close at or under the lower band
    exit_percent_b: float = 0.5  # back to the middle band
    rsi_entry_max: float = 35.0
    min_bandwidth: float = 0.0  # ignore squeezed bands narrower than this
    max_positions: int = 1
    stop_loss_pct: float = 0.05
    take_profit_pct: float = 0.0  # 0 disables


__all__ = ["MomentumParams", "MeanReversionParams"]
