from .order_executor import OrderExecutor, WalletRateLimiter
from .position_manager import PositionManager
from .price_tracker import PriceSubscription, PriceTracker
from .strategy_service import StrategyService

__all__ = [
    "OrderExecutor",
    "PositionManager",
    "PriceSubscription",
    "PriceTracker",
    "StrategyService",
    "WalletRateLimiter",
]
