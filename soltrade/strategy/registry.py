from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

from ..errors import ValidationError
from .interfaces import StrategyDeps, IStrategy


@dataclass(frozen=True)
class StrategyRegistration:
    factory: Callable[[StrategyDeps], IStrategy]


_STRATEGY_REGISTRY: Dict[str, StrategyRegistration] = {}
_BUILTINS_REGISTERED = False


def register_strategy(
    strategy_type: str,
    factory: Callable[[StrategyDeps], IStrategy],
    *,
    replace: bool = False,
) -> None:
    if not strategy_type:
        raise ValueError("strategy_type must be non-empty")
    if strategy_type in _STRATEGY_REGISTRY and not replace:
        return
    _STRATEGY_REGISTRY[strategy_type] = StrategyRegistration(factory=factory)


def _ensure_builtins_registered() -> None:
    global _BUILTINS_REGISTERED
    if _BUILTINS_REGISTERED:
        return
    from .auto_buy_new_pools_strategy import AutoBuyNewPoolsStrategy
    from .dca_strategy import DcaStrategy
    from .grid_selling_strategy import GridSellingStrategy
    from .trailing_stop_strategy import TrailingStopStrategy

    register_strategy(AutoBuyNewPoolsStrategy.strategy_type, AutoBuyNewPoolsStrategy)
    register_strategy(GridSellingStrategy.strategy_type, GridSellingStrategy)
    register_strategy(TrailingStopStrategy.strategy_type, TrailingStopStrategy)
    register_strategy(DcaStrategy.strategy_type, DcaStrategy)
    _BUILTINS_REGISTERED = True


def _get_registration(strategy_type: str) -> StrategyRegistration:
    _ensure_builtins_registered()
    reg = _STRATEGY_REGISTRY.get(strategy_type)
    if reg is None:
        raise ValidationError(f"Invalid strategy type: {strategy_type}")
    return reg


def list_strategy_types() -> List[str]:
    _ensure_builtins_registered()
    return sorted(_STRATEGY_REGISTRY.keys())


def create_strategy(strategy_type: str, deps: StrategyDeps) -> IStrategy:
    reg = _get_registration(strategy_type)
    return reg.factory(deps)
