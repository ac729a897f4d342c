from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from ..models import PoolEvent


logger = logging.getLogger(__name__)

PoolCallback = Callable[[PoolEvent], Awaitable[None]]


@dataclass(slots=True)
class WsReconnectPolicy:
    max_retries: int = 5  # 0 means infinite
    base_delay_ms: int = 5000
    max_delay_ms: int = 60000


def parse_pool_event(payload: Dict[str, Any], program_id: str) -> Optional[PoolEvent]:
    """Extract a pool-initialization event from a transactionSubscribe notification."""
    result = payload.get("result")
    if not isinstance(result, dict):
        result = (payload.get("params") or {}).get("result")
    if not isinstance(result, dict):
        return None
    tx = result.get("transaction") or {}
    # jsonParsed notifications nest the transaction one level deeper
    if isinstance(tx.get("transaction"), dict):
        tx = tx["transaction"]
    instructions = (tx.get("message") or {}).get("instructions") or []
    for ix in instructions:
        if ix.get("programId") != program_id:
            continue
        parsed = ix.get("parsed") or {}
        if parsed.get("type") != "initializePool":
            continue
        info = parsed.get("info") or {}
        return PoolEvent(
            address=str(info.get("pool") or ""),
            token_address=str(info.get("tokenMint") or ""),
            liquidity=float(info.get("liquidity") or 0.0),
            created_at=int(time.time() * 1000),
        )
    return None


class PoolStreamClient:
    def __init__(
        self,
        url: str,
        api_key: str,
        program_id: str,
        reconnect: WsReconnectPolicy,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._program_id = program_id
        self._reconnect = reconnect

    def _build_url(self) -> str:
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}api-key={self._api_key}"

    def _subscription(self) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "transactionSubscribe",
            "params": [
                {"failed": False, "accountInclude": [self._program_id]},
                {"encoding": "jsonParsed", "transactionDetails": "full", "showRewards": False},
            ],
        }

    async def _connect_once(self, on_pool: PoolCallback, stop_event: asyncio.Event) -> None:
        logger.info("Pool WS connect: %s", self._url)
        async with websockets.connect(self._build_url(), ping_interval=20, ping_timeout=20) as ws:
            logger.info("Pool WS connected")
            await ws.send(json.dumps(self._subscription()))
            async for message in ws:
                if stop_event.is_set():
                    break
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Pool WS message JSON decode failed")
                    continue
                pool = parse_pool_event(payload, self._program_id)
                if pool is None:
                    continue
                try:
                    await on_pool(pool)
                except Exception:
                    logger.exception("Pool event handling failed")

    async def run(self, on_pool: PoolCallback, stop_event: asyncio.Event) -> None:
        retries = 0
        while not stop_event.is_set():
            try:
                await self._connect_once(on_pool, stop_event)
                retries = 0
            except (ConnectionClosedOK, ConnectionClosedError, OSError, asyncio.TimeoutError):
                logger.warning("Pool WS disconnected; will reconnect")
            except Exception:
                logger.exception("Pool WS unexpected error")

            if stop_event.is_set():
                break

            if self._reconnect.max_retries and retries >= self._reconnect.max_retries:
                logger.error("Pool WS max retries reached, stopping")
                break

            delay = min(
                self._reconnect.max_delay_ms,
                self._reconnect.base_delay_ms * (2**retries),
            )
            retries += 1
            try:
                await asyncio.wait_for(stop_event.wait(), delay / 1000.0)
            except asyncio.TimeoutError:
                pass
