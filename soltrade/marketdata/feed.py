from __future__ import annotations

import asyncio
import logging

from ..config import MarketConfig
from ..models import TokenInfo
from .rest import MarketRestClient
from .ws import PoolCallback, PoolStreamClient, WsReconnectPolicy


logger = logging.getLogger(__name__)


class MarketFeed:
    """Price, token metadata and new-pool events for Solana tokens."""

    def __init__(self, config: MarketConfig, rest: MarketRestClient | None = None) -> None:
        self._config = config
        self._rest = rest or MarketRestClient(config.rest_base, config.api_key, timeout=config.timeout_s)
        self._reconnect = WsReconnectPolicy(
            max_retries=config.ws_reconnect.max_retries,
            base_delay_ms=config.ws_reconnect.base_delay_ms,
            max_delay_ms=config.ws_reconnect.max_delay_ms,
        )

    async def aclose(self) -> None:
        await self._rest.aclose()

    async def get_current_price(self, token_address: str) -> float:
        try:
            return await self._rest.fetch_token_price(token_address)
        except Exception:
            logger.exception("Fetch token price failed for %s", token_address)
            return 0.0

    async def get_token_metadata(self, token_address: str) -> TokenInfo:
        return await self._rest.fetch_token_metadata(token_address)

    async def subscribe_new_pools(self, callback: PoolCallback, stop_event: asyncio.Event) -> None:
        """Push new-pool events to callback until stop_event is set or reconnects are exhausted."""
        client = PoolStreamClient(
            url=self._config.ws_url,
            api_key=self._config.api_key,
            program_id=self._config.pool_program_id,
            reconnect=self._reconnect,
        )
        await client.run(callback, stop_event)
