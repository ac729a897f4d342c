from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .db import Database
from .errors import InvalidRequest, NotFound
from .models import StrategyMetrics, StrategyRecord
from .strategy import IStrategy, StrategyDeps, compute_strategy_metrics, create_strategy, parse_strategy_config


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunningStrategy:
    record: StrategyRecord
    strategy_type: str
    instance: IStrategy
    started_at: int
    task: Optional[asyncio.Task] = None


class StrategySupervisor:
    """Maps persisted strategy records to running instances.

    The registry lives in memory only. On process start it is empty and
    ``is_active`` flags left in the database are not resumed.
    """

    def __init__(self, db: Database, deps: StrategyDeps, notifier=None) -> None:
        self._db = db
        self._deps = deps
        self._notifier = notifier
        self._running: Dict[str, RunningStrategy] = {}
        self._lock = asyncio.Lock()

    def is_running(self, strategy_id: str) -> bool:
        return strategy_id in self._running

    def running_ids(self) -> List[str]:
        return sorted(self._running.keys())

    async def _load(self, strategy_id: str) -> StrategyRecord:
        record = await self._db.get_strategy(strategy_id)
        if record is None:
            raise NotFound("Strategy", strategy_id)
        return record

    async def start(self, strategy_id: str) -> StrategyRecord:
        async with self._lock:
            record = await self._load(strategy_id)
            if record.is_active or strategy_id in self._running:
                raise InvalidRequest("Strategy is already active")

            config = parse_strategy_config(record.config)
            instance = create_strategy(config.type, self._deps)
            await instance.prepare(strategy_id, config.params)

            now_ms = int(time.time() * 1000)
            entry = RunningStrategy(
                record=record,
                strategy_type=config.type,
                instance=instance,
                started_at=now_ms,
            )
            self._running[strategy_id] = entry
            await self._db.set_strategy_active(strategy_id, True, now_ms)
            record.is_active = True
            record.updated_at = now_ms
            entry.task = asyncio.create_task(self._run(strategy_id, entry, config.params))

        logger.info("Strategy %s (%s) started", strategy_id, config.type)
        await self._notify(strategy_id, "strategy_started", {"type": config.type, "name": record.name})
        return record

    async def _run(self, strategy_id: str, entry: RunningStrategy, params: BaseModel) -> None:
        try:
            await entry.instance.execute(strategy_id, params)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Strategy %s failed", strategy_id)
            event, payload = "strategy_failed", {"error": str(exc)}
        else:
            event, payload = "strategy_completed", {}

        # stopped from outside: stop() owns the bookkeeping
        if self._running.get(strategy_id) is not entry:
            return
        del self._running[strategy_id]
        logger.info("Strategy %s finished (%s)", strategy_id, event)
        try:
            await self._db.set_strategy_active(strategy_id, False, int(time.time() * 1000))
        except Exception:
            logger.exception("Failed to mark strategy %s inactive", strategy_id)
        await self._notify(strategy_id, event, {"type": entry.strategy_type, **payload})

    async def stop(self, strategy_id: str) -> StrategyRecord:
        async with self._lock:
            record = await self._load(strategy_id)
            entry = self._running.pop(strategy_id, None)
            if entry is None and not record.is_active:
                raise InvalidRequest("Strategy is not active")
            if entry is not None:
                await self._halt(entry)

            now_ms = int(time.time() * 1000)
            await self._db.set_strategy_active(strategy_id, False, now_ms)
            record.is_active = False
            record.updated_at = now_ms

        logger.info("Strategy %s stopped", strategy_id)
        await self._notify(strategy_id, "strategy_stopped", {})
        return record

    @staticmethod
    async def _halt(entry: RunningStrategy) -> None:
        await entry.instance.stop()
        task = entry.task
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def get_metrics(self, strategy_id: str) -> StrategyMetrics:
        record = await self._load(strategy_id)
        return await compute_strategy_metrics(self._db, record.user_id, strategy_id)

    def runtime_state(self) -> Dict[str, Any]:
        return {
            sid: {
                "type": entry.strategy_type,
                "started_at": entry.started_at,
                "metrics": entry.instance.metrics_snapshot(),
            }
            for sid, entry in self._running.items()
        }

    async def shutdown(self) -> None:
        entries = list(self._running.values())
        self._running.clear()
        for entry in entries:
            try:
                await self._halt(entry)
            except Exception:
                logger.exception("Error stopping strategy %s", entry.record.id)

    async def _notify(self, strategy_id: str, event: str, payload: Dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(strategy_id, event, payload)
        except Exception:
            logger.exception("Supervisor notification failed (%s)", event)
