from .feed import MarketFeed
from .rest import MarketRestClient
from .ws import PoolStreamClient, WsReconnectPolicy, parse_pool_event

__all__ = [
    "MarketFeed",
    "MarketRestClient",
    "PoolStreamClient",
    "WsReconnectPolicy",
    "parse_pool_event",
]
