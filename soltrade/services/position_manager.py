from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..db import Database
from ..errors import InvalidRequest, NotFound
from ..models import POSITION_CLOSED, POSITION_LIVE, POSITION_OPEN, POSITION_PARTIAL, POSITION_STATUSES, Position


logger = logging.getLogger(__name__)


class PositionManager:
    """Owns position rows: open, merge, adjust, close, and keeps current prices fresh.

    Every mutation of a position runs under the lock of its
    ``(wallet_id, token_address)`` key, so concurrent strategies adding to
    or selling from the same holding never lose an update.
    """

    def __init__(
        self,
        db: Database,
        feed,
        notifier=None,
        price_cache_ttl_s: float = 5.0,
        refresh_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._feed = feed
        self._notifier = notifier
        self._ttl = price_cache_ttl_s
        self._refresh_interval = refresh_interval_s
        self._clock = clock
        self._sleep = sleep
        self._price_cache: Dict[str, Tuple[float, float]] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._refresh_tasks: Dict[str, asyncio.Task] = {}

    def _lock_for(self, wallet_id: str, token_address: str) -> asyncio.Lock:
        key = (wallet_id, token_address)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ---------------------- lifecycle ----------------------

    async def create_position(
        self,
        wallet_id: str,
        token_address: str,
        entry_price: float,
        quantity: float,
        strategy_id: Optional[str] = None,
    ) -> Position:
        logger.info(
            "Creating position wallet=%s token=%s entry=%s qty=%s",
            wallet_id,
            token_address,
            entry_price,
            quantity,
        )
        async with self._lock_for(wallet_id, token_address):
            position = await self._insert(wallet_id, token_address, entry_price, quantity, strategy_id)
        self._start_price_tracking(position)
        await self._notify(strategy_id, "position_opened", position)
        return position

    async def create_or_update_position(
        self,
        wallet_id: str,
        token_address: str,
        entry_price: float,
        quantity: float,
        strategy_id: Optional[str] = None,
    ) -> Position:
        logger.info(
            "Creating or updating position wallet=%s token=%s entry=%s qty=%s",
            wallet_id,
            token_address,
            entry_price,
            quantity,
        )
        created = False
        async with self._lock_for(wallet_id, token_address):
            existing = await self._db.find_open_position(wallet_id, token_address)
            if existing is None:
                position = await self._insert(wallet_id, token_address, entry_price, quantity, strategy_id)
                created = True
            else:
                new_qty = existing.quantity + quantity
                if new_qty > 0:
                    existing.entry_price = (
                        existing.entry_price * existing.quantity + entry_price * quantity
                    ) / new_qty
                existing.quantity = new_qty
                existing.current_price = entry_price
                existing.unrealized_pnl = (existing.current_price - existing.entry_price) * new_qty
                existing.updated_at = int(time.time() * 1000)
                await self._db.update_position(existing)
                position = existing

        if created:
            self._start_price_tracking(position)
            await self._notify(strategy_id, "position_opened", position)
        else:
            await self._notify(strategy_id, "position_updated", position)
        return position

    async def _insert(
        self,
        wallet_id: str,
        token_address: str,
        entry_price: float,
        quantity: float,
        strategy_id: Optional[str],
    ) -> Position:
        if quantity < 0:
            raise InvalidRequest("quantity must be >= 0")
        if entry_price < 0:
            raise InvalidRequest("entry_price must be >= 0")
        now_ms = int(time.time() * 1000)
        position = Position(
            id=uuid.uuid4().hex,
            wallet_id=wallet_id,
            token_address=token_address,
            quantity=quantity,
            entry_price=entry_price,
            current_price=entry_price,
            status=POSITION_OPEN,
            realized_pnl=0.0,
            unrealized_pnl=0.0,
            created_at=now_ms,
            updated_at=now_ms,
            strategy_id=strategy_id,
        )
        await self._db.insert_position(position)
        return position

    async def get_position(self, position_id: str) -> Position:
        position = await self._db.get_position(position_id)
        if position is None:
            raise NotFound("Position", position_id)
        return position

    async def list_positions(
        self,
        wallet_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Position]:
        return await self._db.get_positions(wallet_id=wallet_id, status=status, limit=limit)

    async def update_position(
        self,
        position_id: str,
        quantity: Optional[float] = None,
        current_price: Optional[float] = None,
        status: Optional[str] = None,
    ) -> Position:
        if status is not None and status not in POSITION_STATUSES:
            raise InvalidRequest(f"Invalid position status: {status}")
        if quantity is not None and quantity < 0:
            raise InvalidRequest("quantity must be >= 0")

        found = await self.get_position(position_id)
        async with self._lock_for(found.wallet_id, found.token_address):
            position = await self.get_position(position_id)
            if position.is_closed and status is None:
                # terminal: price ticks and quantity edits do not reopen a closed position
                return position

            now_ms = int(time.time() * 1000)
            if quantity is not None:
                position.quantity = quantity
            if current_price is not None:
                position.current_price = current_price
            if status is not None:
                position.status = status
            elif position.quantity == 0:
                position.status = POSITION_CLOSED

            if position.status == POSITION_CLOSED:
                position.unrealized_pnl = 0.0
                if position.closed_at is None:
                    position.closed_at = now_ms
            else:
                position.unrealized_pnl = (position.current_price - position.entry_price) * position.quantity
            position.updated_at = now_ms
            await self._db.update_position(position)

        if position.status == POSITION_CLOSED:
            await self._stop_price_tracking(position.id)
        if quantity is not None or status is not None:
            await self._notify(position.strategy_id, "position_updated", position)
        return position

    async def reduce_position(self, position_id: str, sold_qty: float) -> Position:
        """Subtract a filled sell from the current row.

        The row is re-read under the holding's lock, so quantity merged in by
        another strategy since the caller last looked is kept. The remainder is
        clamped at 0; a position left with tokens becomes PARTIAL, an emptied
        one is CLOSED.
        """
        if sold_qty < 0:
            raise InvalidRequest("sold quantity must be >= 0")

        found = await self.get_position(position_id)
        async with self._lock_for(found.wallet_id, found.token_address):
            position = await self.get_position(position_id)
            if position.is_closed:
                return position

            now_ms = int(time.time() * 1000)
            remaining = position.quantity - sold_qty
            if remaining <= 1e-12:
                remaining = 0.0
            position.quantity = remaining
            if remaining == 0.0:
                position.status = POSITION_CLOSED
                position.unrealized_pnl = 0.0
                position.closed_at = now_ms
            else:
                position.status = POSITION_PARTIAL
                position.unrealized_pnl = (position.current_price - position.entry_price) * remaining
            position.updated_at = now_ms
            await self._db.update_position(position)

        logger.info("Reduced position %s by %s, %s left", position_id, sold_qty, position.quantity)
        if position.is_closed:
            await self._stop_price_tracking(position.id)
        await self._notify(position.strategy_id, "position_updated", position)
        return position

    async def close_position(self, position_id: str, exit_price: float) -> Position:
        logger.info("Closing position %s at price %s", position_id, exit_price)
        found = await self.get_position(position_id)
        async with self._lock_for(found.wallet_id, found.token_address):
            position = await self.get_position(position_id)
            if position.is_closed and position.quantity == 0:
                already_closed = True
            else:
                already_closed = False
                now_ms = int(time.time() * 1000)
                position.realized_pnl = (exit_price - position.entry_price) * position.quantity
                position.status = POSITION_CLOSED
                position.current_price = exit_price
                position.quantity = 0.0
                position.unrealized_pnl = 0.0
                position.closed_at = now_ms
                position.updated_at = now_ms
                await self._db.update_position(position)

        await self._stop_price_tracking(position_id)
        if not already_closed:
            await self._notify(
                position.strategy_id,
                "position_closed",
                position,
            )
        return position

    # ---------------------- prices ----------------------

    async def get_current_price(self, token_address: str) -> float:
        now = self._clock()
        cached = self._price_cache.get(token_address)
        if cached is not None and now - cached[1] < self._ttl:
            return cached[0]
        try:
            price = float(await self._feed.get_current_price(token_address))
        except Exception:
            logger.exception("Error getting current price for %s", token_address)
            return 0.0
        if price > 0:
            self._price_cache[token_address] = (price, now)
        return price

    def is_tracking(self, position_id: str) -> bool:
        task = self._refresh_tasks.get(position_id)
        return task is not None and not task.done()

    def tracked_ids(self) -> List[str]:
        return sorted(pid for pid, t in self._refresh_tasks.items() if not t.done())

    async def resume_price_tracking(self) -> int:
        live = []
        for status in POSITION_LIVE:
            live.extend(await self._db.get_positions(status=status, limit=10_000))
        for p in live:
            self._start_price_tracking(p)
        return len(live)

    def _start_price_tracking(self, position: Position) -> None:
        if self.is_tracking(position.id):
            return
        task = asyncio.create_task(self._refresh_loop(position.id, position.token_address))
        self._refresh_tasks[position.id] = task
        task.add_done_callback(lambda t, pid=position.id: self._forget_task(pid, t))

    def _forget_task(self, position_id: str, task: asyncio.Task) -> None:
        if self._refresh_tasks.get(position_id) is task:
            del self._refresh_tasks[position_id]

    async def _stop_price_tracking(self, position_id: str) -> None:
        task = self._refresh_tasks.pop(position_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_loop(self, position_id: str, token_address: str) -> None:
        while True:
            try:
                price = await self.get_current_price(token_address)
                if price > 0:
                    position = await self.update_position(position_id, current_price=price)
                    if position.is_closed:
                        break
            except asyncio.CancelledError:
                raise
            except NotFound:
                logger.warning("Position %s disappeared; stopping price refresh", position_id)
                break
            except Exception:
                logger.exception("Error updating price for position %s", position_id)
            await self._sleep(self._refresh_interval)

    async def shutdown(self) -> None:
        tasks = list(self._refresh_tasks.values())
        self._refresh_tasks.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _notify(self, strategy_id: Optional[str], event: str, position: Position) -> None:
        if self._notifier is None:
            return
        payload: Dict[str, Any] = {
            "position_id": position.id,
            "wallet_id": position.wallet_id,
            "token_address": position.token_address,
            "quantity": position.quantity,
            "entry_price": position.entry_price,
            "current_price": position.current_price,
            "status": position.status,
            "realized_pnl": position.realized_pnl,
            "unrealized_pnl": position.unrealized_pnl,
        }
        try:
            await self._notifier.notify(strategy_id, event, payload)
        except Exception:
            logger.exception("Position notification failed (%s)", event)
