from __future__ import annotations

from dataclasses import fields, is_dataclass, replace
from typing import Any, Dict, Mapping, Optional, Sequence

from backtester.core.exceptions import ConfigError
from backtester.core.models import Bar, Position, Signal, SignalKind


# -------- Param helpers --------
def get_param(p: Any, key: str, default: Any) -> Any:
    """Read a parameter from either a dict or a dataclass; fallback to default."""
    if isinstance(p, Mapping):
        return p.get(key, default)
    if is_dataclass(p):
        return getattr(p, key, default)
    return getattr(p, key, default)


def merge_params(params_cls: Any, overrides: Any = None) -> Any:
    """
    Build a params dataclass from its defaults plus ``overrides``.

    ``overrides`` may be an instance of ``params_cls`` (used as is) or a
    mapping of field overrides, as produced by ``--param`` or a sweep grid.
    Unknown keys raise ``ConfigError``.
    """
    if overrides is None:
        return params_cls()
    if isinstance(overrides, params_cls):
        return overrides
    if not isinstance(overrides, Mapping):
        raise ConfigError(f"{params_cls.__name__} overrides must be a mapping")
    known = {f.name for f in fields(params_cls)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigError(
            f"unknown {params_cls.__name__} parameters {unknown}, expected a subset of {sorted(known)}"
        )
    return replace(params_cls(), **dict(overrides))


class BaseStrategy:
    """
    Shared plumbing for per-bar strategies.

    Subclasses implement ``_decide``; the base applies the stop-loss and
    take-profit exits against the held position's average cost first.
    Exit levels are recomputed from the average cost on every bar, they do
    not trail.
    """

    name = "base"
    params_cls: Optional[type] = None

    def __init__(self, params: Any = None) -> None:
        if self.params_cls is not None:
            self.params = merge_params(self.params_cls, params)
        else:
            self.params = params if params is not None else {}

    def generate_signal(
        self,
        bar: Bar,
        indicator_history: Sequence[Mapping[str, float]],
        positions: Mapping[str, Position],
    ) -> Signal:
        position = positions.get(bar.symbol)
        if position is not None and position.quantity > 0:
            exit_signal = self._risk_exit(bar, position)
            if exit_signal is not None:
                return exit_signal
        return self._decide(bar, indicator_history, positions)

    def _decide(
        self,
        bar: Bar,
        indicator_history: Sequence[Mapping[str, float]],
        positions: Mapping[str, Position],
    ) -> Signal:
        raise NotImplementedError

    def _risk_exit(self, bar: Bar, position: Position) -> Optional[Signal]:
        avg = float(position.average_cost)
        if avg <= 0:
            return None
        move = float(bar.close) / avg - 1.0
        stop = float(get_param(self.params, "stop_loss_pct", 0.0))
        take = float(get_param(self.params, "take_profit_pct", 0.0))
        if stop > 0 and move <= -stop:
            return self._signal(bar, SignalKind.CLOSE_LONG, f"stop loss {move:.2%}", 1.0)
        if take > 0 and move >= take:
            return self._signal(bar, SignalKind.CLOSE_LONG, f"take profit {move:.2%}", 1.0)
        return None

    def _signal(
        self,
        bar: Bar,
        kind: SignalKind,
        reason: str,
        confidence: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Signal:
        return Signal(
            symbol=bar.symbol,
            kind=kind,
            price=bar.close,
            confidence=max(0.0, min(1.0, confidence)),
            reason=reason,
            timestamp=bar.timestamp,
            metadata=metadata or {},
        )

    def _hold(self, bar: Bar, reason: str = "") -> Signal:
        return Signal(
            symbol=bar.symbol, kind=SignalKind.HOLD, reason=reason, timestamp=bar.timestamp
        )

    def _no_action(self, bar: Bar, reason: str) -> Signal:
        return Signal(
            symbol=bar.symbol,
            kind=SignalKind.NO_ACTION,
            reason=reason,
            timestamp=bar.timestamp,
        )


__all__ = ["BaseStrategy", "get_param", "merge_params"]
