from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from .config import GatewayConfig
from .errors import GatewayError
from .models import GatewayFill, TradeParams


logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def _classify(status_code: int, message: str) -> str:
    text = message.lower()
    if status_code in _RETRYABLE_STATUS:
        return "transient"
    if "insufficient" in text:
        return "insufficient_funds"
    if status_code in (401, 403, 404) or "wallet" in text:
        return "invalid_account"
    return "rejected"


class GatewayClient:
    """HTTP client for the broker that executes swaps on behalf of custodial wallets."""

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        if not config.api_key:
            logger.warning("gateway.api_key is not configured; trade requests will be rejected")

    async def __aenter__(self) -> "GatewayClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_url.rstrip("/"),
                timeout=self._config.timeout_s,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self._config.api_key}",
                },
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def buy(self, params: TradeParams) -> GatewayFill:
        data = await self._with_retry(lambda: self._post("/user/orders/buy", params.to_payload()), "buy")
        fill = self._parse_fill(data)
        logger.info("Buy order created: %s", fill.signature)
        return fill

    async def sell(self, params: TradeParams) -> GatewayFill:
        data = await self._with_retry(lambda: self._post("/user/orders/sell", params.to_payload()), "sell")
        fill = self._parse_fill(data)
        logger.info("Sell order created: %s", fill.signature)
        return fill

    async def get_wallet_balance(self, gateway_wallet_id: str) -> float:
        data = await self._with_retry(
            lambda: self._get(f"/user/wallets/{gateway_wallet_id}/balance"),
            f"get_wallet_balance({gateway_wallet_id})",
        )
        return float(data.get("balance") or 0.0)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self._ensure_client()
        resp = await client.post(path, json=payload)
        return self._unwrap(resp)

    async def _get(self, path: str) -> Dict[str, Any]:
        client = self._ensure_client()
        resp = await client.get(path)
        return self._unwrap(resp)

    @staticmethod
    def _unwrap(resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code >= 400:
            try:
                body = resp.json()
                message = str(body.get("message") or body.get("error") or resp.text)
            except ValueError:
                message = resp.text
            raise GatewayError(message, kind=_classify(resp.status_code, message), status_code=resp.status_code)
        data = resp.json()
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        if isinstance(data, dict) and data.get("status") == "failed":
            raise GatewayError(str(data.get("message") or "order failed"), kind="rejected")
        return data

    @staticmethod
    def _parse_fill(data: Dict[str, Any]) -> GatewayFill:
        signature = data.get("signature")
        if not signature:
            raise GatewayError("gateway response missing signature", kind="rejected")
        return GatewayFill(
            signature=str(signature),
            price=float(data.get("price") or 0.0),
            quantity=float(data.get("quantity") or 0.0),
            fee=float(data.get("fee") or 0.0),
        )

    async def _with_retry(self, fn: Callable[[], Awaitable[T]], operation: str) -> T:
        attempts = self._config.max_retries + 1
        last_error: Optional[GatewayError] = None
        for attempt in range(attempts):
            try:
                return await fn()
            except httpx.HTTPError as exc:
                last_error = GatewayError(f"{operation}: {exc}", kind="transient")
            except GatewayError as exc:
                if not exc.transient:
                    logger.error("%s rejected: %s", operation, exc)
                    raise
                last_error = exc

            if attempt < attempts - 1:
                delay_ms = self._config.retry_delay_ms * (self._config.backoff_multiplier ** attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %dms: %s",
                    operation,
                    attempt + 1,
                    attempts,
                    delay_ms,
                    last_error,
                )
                await self._sleep(delay_ms / 1000.0)

        logger.error("%s failed after %d attempts: %s", operation, attempts, last_error)
        if last_error is None:
            raise GatewayError(f"{operation}: no attempts made", kind="transient")
        raise last_error
