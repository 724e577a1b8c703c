from __future__ import annotations

# Public API for strategies

from .base import BaseStrategy, get_param, merge_params
from .mean_reversion import MeanReversionStrategy
from .momentum import MomentumStrategy
from .params import MeanReversionParams, MomentumParams

STRATEGIES = {
    MomentumStrategy.name: MomentumStrategy,
    MeanReversionStrategy.name: MeanReversionStrategy,
}

__all__ = [
    "BaseStrategy",
    "get_param",
    "merge_params",
    "STRATEGIES",
    "MomentumParams",
    "MomentumStrategy",
    "MeanReversionParams",
    "MeanReversionStrategy",
]
