from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..models import TokenInfo


logger = logging.getLogger(__name__)


class MarketRestClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "MarketRestClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        client = self._ensure_client()
        resp = await client.get(path, params={**params, "api-key": self._api_key})
        resp.raise_for_status()
        return resp.json()

    async def fetch_token_price(self, token_address: str) -> float:
        data = await self._get("/token-price", {"address": token_address})
        return float(data.get("price") or 0.0)

    async def fetch_token_metadata(self, token_address: str) -> TokenInfo:
        data = await self._get("/token-metadata", {"address": token_address})
        return TokenInfo(
            address=token_address,
            symbol=data.get("symbol") or "UNKNOWN",
            name=data.get("name") or "Unknown Token",
            decimals=int(data.get("decimals") or 6),
            supply=float(data.get("supply") or 0.0),
            holders=int(data.get("holders") or 0),
            liquidity_locked=float(data.get("liquidityLocked") or 0.0),
            top10_holdings=float(data.get("top10Holdings") or 0.0),
        )
