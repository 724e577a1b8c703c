from __future__ import annotations

from typing import Mapping, Sequence

from loguru import logger

from backtester.core.models import Bar, Position, Signal, SignalKind

from .base import BaseStrategy, get_param
from .params import MeanReversionParams


class MeanReversionStrategy(BaseStrategy):
    """Buy closes at the lower Bollinger band with weak RSI, sell the reversion to the middle band."""

    name = "mean_reversion"
    params_cls = MeanReversionParams

    def _decide(
        self,
        bar: Bar,
        indicator_history: Sequence[Mapping[str, float]],
        positions: Mapping[str, Position],
    ) -> Signal:
        if not indicator_history:
            return self._no_action(bar, "waiting for indicator history")
        cur = indicator_history[-1]
        pct_b = cur.get("bb_percent_b")
        if pct_b is None:
            return self._no_action(bar, "bollinger bands not available")

        held = positions.get(bar.symbol)
        meta = {
            "bb_percent_b": pct_b,
            "bb_lower": cur.get("bb_lower"),
            "bb_middle": cur.get("bb_middle"),
            "rsi": cur.get("rsi"),
        }

        if held is not None and held.quantity > 0:
            if pct_b >= float(get_param(self.params, "exit_percent_b", 0.5)):
                return self._signal(bar, SignalKind.CLOSE_LONG, "reverted to mean", 0.8, meta)
            return self._hold(bar, "holding for reversion")

        if pct_b > float(get_param(self.params, "entry_percent_b", 0.0)):
            return self._hold(bar, "inside bands")
        bandwidth = cur.get("bb_bandwidth", 0.0)
        if bandwidth < float(get_param(self.params, "min_bandwidth", 0.0)):
            return self._hold(bar, "bands too narrow")
        rsi = cur.get("rsi")
        if rsi is not None and rsi > float(get_param(self.params, "rsi_entry_max", 35.0)):
            return self._hold(bar, "rsi not oversold")
        open_count = sum(1 for p in positions.values() if p.quantity > 0)
        if open_count >= int(get_param(self.params, "max_positions", 1)):
            return self._hold(bar, "position limit")

        # deeper below the band, higher confidence
        conf = min(1.0, 0.6 + max(0.0, -pct_b))
        logger.debug("[mean_reversion] entry {} %B={:.3f} conf={:.2f}", bar.symbol, pct_b, conf)
        return self._signal(bar, SignalKind.BUY, "close at lower band", conf, meta)


__all__ = ["MeanReversionStrategy"]
