from __future__ import annotations

from typing import Mapping, Sequence

from loguru import logger

from backtester.core.models import Bar, Position, Signal, SignalKind

from .base import BaseStrategy, get_param
from .params import MomentumParams


class MomentumStrategy(BaseStrategy):
    """
    Long-only MACD crossover momentum.

    Enters on a bullish MACD/signal crossover confirmed by RSI and, when
    ``require_trend`` is set, by the close sitting above the slow SMA.
    Exits the whole position on a bearish crossover, or through the
    stop-loss/take-profit levels handled by ``BaseStrategy``.
    """

    name = "momentum"
    params_cls = MomentumParams

    def _decide(
        self,
        bar: Bar,
        indicator_history: Sequence[Mapping[str, float]],
        positions: Mapping[str, Position],
    ) -> Signal:
        if len(indicator_history) < 2:
            return self._no_action(bar, "waiting for indicator history")

        cur, prev = indicator_history[-1], indicator_history[-2]
        if not all(k in d for d in (cur, prev) for k in ("macd", "macd_signal")):
            return self._no_action(bar, "macd not available")

        bullish = prev["macd"] <= prev["macd_signal"] and cur["macd"] > cur["macd_signal"]
        bearish = prev["macd"] >= prev["macd_signal"] and cur["macd"] < cur["macd_signal"]
        min_conf = float(get_param(self.params, "min_confidence", 0.6))
        meta = {
            "macd": cur["macd"],
            "macd_signal": cur["macd_signal"],
            "macd_hist": cur.get("macd_hist"),
            "rsi": cur.get("rsi"),
        }

        held = positions.get(bar.symbol)
        if bullish:
            conf = self._bullish_confidence(bar, cur)
            if bool(get_param(self.params, "require_trend", True)):
                sma_slow = cur.get("sma_slow")
                if sma_slow is not None and float(bar.close) <= sma_slow:
                    return self._hold(bar, "bullish crossover below trend")
            open_count = sum(1 for p in positions.values() if p.quantity > 0)
            if conf >= min_conf and open_count < int(get_param(self.params, "max_positions", 3)):
                logger.debug("[momentum] bullish crossover {} conf={:.2f}", bar.symbol, conf)
                return self._signal(bar, SignalKind.BUY, "MACD bullish crossover", conf, meta)
            return self._hold(bar, "bullish crossover filtered")

        if bearish and held is not None and held.quantity > 0:
            conf = self._bearish_confidence(bar, cur)
            if conf >= min_conf:
                logger.debug("[momentum] bearish crossover {} conf={:.2f}", bar.symbol, conf)
                return self._signal(bar, SignalKind.CLOSE_LONG, "MACD bearish crossover", conf, meta)

        return self._hold(bar, "waiting for crossover")

    def _bullish_confidence(self, bar: Bar, ind: Mapping[str, float]) -> float:
        conf = 0.5
        rsi = ind.get("rsi")
        if rsi is not None:
            if rsi < float(get_param(self.params, "rsi_overbought", 70.0)):
                conf += 0.2
            else:
                conf -= 0.2
        if ind.get("macd", 0.0) > 0:
            conf += 0.1
        sma_slow = ind.get("sma_slow")
        if sma_slow is not None and float(bar.close) > sma_slow:
            conf += 0.1
        return max(0.0, min(1.0, conf))

    def _bearish_confidence(self, bar: Bar, ind: Mapping[str, float]) -> float:
        conf = 0.5
        rsi = ind.get("rsi")
        if rsi is not None:
            if rsi > float(get_param(self.params, "rsi_oversold", 30.0)):
                conf += 0.2
            else:
                conf -= 0.2
        if ind.get("macd", 0.0) < 0:
            conf += 0.1
        sma_slow = ind.get("sma_slow")
        if sma_slow is not None and float(bar.close) < sma_slow:
            conf += 0.1
        return max(0.0, min(1.0, conf))


__all__ = ["MomentumStrategy"]
