from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Coroutine, Dict, Iterable, Optional, Set

from pydantic import BaseModel

from ..models import OrderResult, StrategyExecution
from .interfaces import StrategyDeps
from .metrics import MetricsTracker


class BaseStrategy:
    """Shared lifecycle for automation loops.

    Each instance owns a stop event and every task it spawns. ``stop`` sets
    the event, cancels the tasks and waits for them, so no loop of a stopped
    strategy can reach the order executor afterwards. Loops sleep through
    ``wait`` which wakes up as soon as the stop event is set.
    """

    strategy_type: str = ""

    def __init__(self, deps: StrategyDeps) -> None:
        self._deps = deps
        self._stop_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self.metrics = MetricsTracker()
        self._logger = logging.getLogger(f"{type(self).__module__}.{type(self).__name__}")

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _now(self) -> float:
        if self._deps.clock is not None:
            return self._deps.clock()
        return time.monotonic()

    async def prepare(self, strategy_id: str, params: BaseModel) -> None:
        return None

    async def execute(self, strategy_id: str, params: BaseModel) -> None:
        raise NotImplementedError

    async def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True means the strategy was stopped meanwhile."""
        if self.stopped:
            return True
        if self._deps.sleep is not None:
            await self._deps.sleep(seconds)
            return self.stopped
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self) -> None:
        self._stop_event.set()
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    async def record_execution(
        self,
        strategy_id: str,
        status: str,
        data: Dict[str, Any],
        trades: Iterable[OrderResult] = (),
    ) -> None:
        now_ms = int(time.time() * 1000)
        self.metrics.record(status, trades, executed_at=now_ms)
        self._logger.info("Strategy %s execution %s: %s", strategy_id, status, data)
        try:
            await self._deps.db.insert_execution(
                StrategyExecution(strategy_id=strategy_id, status=status, executed_at=now_ms, data=data)
            )
        except Exception:
            self._logger.exception("Persist execution record failed for %s", strategy_id)

    async def notify_user(self, strategy_id: str, event: str, data: Dict[str, Any]) -> None:
        notifier = self._deps.notifier
        if notifier is None:
            return
        try:
            await notifier.notify(strategy_id, event, data)
        except Exception:
            self._logger.exception("Notification %s failed for %s", event, strategy_id)

    @staticmethod
    def error_data(exc: BaseException, **extra: Any) -> Dict[str, Any]:
        return {**extra, "error": str(exc), "error_type": type(exc).__name__}

    @staticmethod
    def order_data(order: Optional[OrderResult]) -> Optional[Dict[str, Any]]:
        return order.to_dict() if order is not None else None
