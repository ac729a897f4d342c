from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

PriceCallback = Callable[[float], Union[None, Awaitable[None]]]


@dataclass(frozen=True, slots=True)
class PriceSubscription:
    token_address: str
    sub_id: int


class PriceTracker:
    """One polling loop per token, fanned out to every subscriber of that token."""

    def __init__(
        self,
        feed,
        poll_interval_s: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._feed = feed
        self._interval = poll_interval_s
        self._sleep = sleep
        self._subscribers: Dict[str, Dict[int, PriceCallback]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_price: Dict[str, float] = {}
        self._ids = itertools.count(1)

    def is_tracking(self, token_address: str) -> bool:
        return token_address in self._subscribers

    def subscriber_count(self, token_address: str) -> int:
        return len(self._subscribers.get(token_address) or {})

    def last_price(self, token_address: str) -> Optional[float]:
        return self._last_price.get(token_address)

    def tracked_tokens(self) -> list[str]:
        return sorted(self._subscribers.keys())

    async def start_tracking(
        self, token_address: str, callback: Optional[PriceCallback] = None
    ) -> Optional[PriceSubscription]:
        logger.info("Starting price tracking for %s", token_address)
        subs = self._subscribers.get(token_address)
        if subs is None:
            subs = {}
            self._subscribers[token_address] = subs
            self._tasks[token_address] = asyncio.create_task(self._poll(token_address))
        if callback is None:
            return None
        handle = PriceSubscription(token_address, next(self._ids))
        subs[handle.sub_id] = callback
        return handle

    async def unsubscribe(self, handle: PriceSubscription) -> None:
        subs = self._subscribers.get(handle.token_address)
        if subs is None:
            return
        subs.pop(handle.sub_id, None)
        if not subs:
            await self.stop_tracking(handle.token_address)

    async def stop_tracking(self, token_address: str) -> None:
        logger.info("Stopping price tracking for %s", token_address)
        self._subscribers.pop(token_address, None)
        self._last_price.pop(token_address, None)
        task = self._tasks.pop(token_address, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        for token in list(self._subscribers.keys()):
            await self.stop_tracking(token)

    async def _poll(self, token_address: str) -> None:
        while token_address in self._subscribers:
            try:
                price = float(await self._feed.get_current_price(token_address))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error polling price for %s", token_address)
                price = 0.0

            subs = self._subscribers.get(token_address)
            if subs is None:
                break
            if price > 0:
                self._last_price[token_address] = price
                for sub_id, callback in list(subs.items()):
                    await self._dispatch(token_address, sub_id, callback, price)

            if token_address not in self._subscribers:
                break
            await self._sleep(self._interval)

    @staticmethod
    async def _dispatch(token_address: str, sub_id: int, callback: PriceCallback, price: float) -> None:
        try:
            result: Any = callback(price)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Price callback %d failed for %s", sub_id, token_address)
