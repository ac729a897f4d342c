from .base import BaseStrategy
from .interfaces import (
    AUTO_BUY_NEW_POOLS,
    DCA,
    GRID_SELLING,
    STRATEGY_TYPES,
    TRAILING_STOP,
    IStrategy,
    StrategyDeps,
    parse_strategy_config,
)
from .metrics import MetricsTracker, compute_strategy_metrics
from .registry import create_strategy, list_strategy_types, register_strategy

__all__ = [
    "AUTO_BUY_NEW_POOLS",
    "DCA",
    "GRID_SELLING",
    "STRATEGY_TYPES",
    "TRAILING_STOP",
    "BaseStrategy",
    "IStrategy",
    "MetricsTracker",
    "StrategyDeps",
    "compute_strategy_metrics",
    "create_strategy",
    "list_strategy_types",
    "parse_strategy_config",
    "register_strategy",
]
