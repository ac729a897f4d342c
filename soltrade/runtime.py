from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .alerts import AlertManager, EventStream
from .config import Settings
from .db import Database
from .errors import InvalidRequest, ValidationError
from .gateway import GatewayClient
from .marketdata import MarketFeed
from .models import Wallet
from .services import OrderExecutor, PositionManager, PriceSubscription, PriceTracker, StrategyService, WalletRateLimiter
from .strategy import StrategyDeps
from .supervisor import StrategySupervisor


logger = logging.getLogger(__name__)


JOB_EXECUTE_STRATEGY = "execute-strategy"
JOB_CHECK_POSITIONS = "check-positions"
JOB_STOP_STRATEGY = "stop-strategy"
JOB_TYPES = (JOB_EXECUTE_STRATEGY, JOB_CHECK_POSITIONS, JOB_STOP_STRATEGY)


@dataclass(slots=True)
class StrategyJob:
    name: str
    strategy_id: str


class RuntimeEngine:
    def __init__(
        self,
        settings: Settings,
        stream: Optional[EventStream] = None,
        gateway: Optional[GatewayClient] = None,
        feed: Optional[MarketFeed] = None,
    ) -> None:
        self._settings = settings
        self.db = Database(settings.storage.sqlite_path)
        self.stream = stream or EventStream(settings.alerts.stream_size)
        self.alerts = AlertManager(self.db, settings.alerts, self.stream)

        self.gateway = gateway or GatewayClient(settings.gateway)
        self.feed = feed or MarketFeed(settings.market)

        self.limiter = WalletRateLimiter(
            settings.executor.max_trades_per_window,
            settings.executor.window_seconds,
        )
        self.executor = OrderExecutor(self.db, self.gateway, self.limiter)
        self.positions = PositionManager(
            self.db,
            self.feed,
            notifier=self.alerts,
            price_cache_ttl_s=settings.positions.price_cache_ttl_s,
            refresh_interval_s=settings.positions.price_refresh_interval_s,
        )
        self.tracker = PriceTracker(self.feed, poll_interval_s=settings.tracker.poll_interval_s)

        self.deps = StrategyDeps(
            executor=self.executor,
            positions=self.positions,
            feed=self.feed,
            db=self.db,
            notifier=self.alerts,
            runtime=settings.strategies,
        )
        self.supervisor = StrategySupervisor(self.db, self.deps, notifier=self.alerts)
        self.strategies = StrategyService(self.db, self.supervisor)

        self._watches: Dict[str, PriceSubscription] = {}
        self.jobs: asyncio.Queue = asyncio.Queue()
        self._job_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def settings(self) -> Settings:
        return self._settings

    async def start(self) -> None:
        await self.db.connect()
        await self.db.init_schema()
        resumed = await self.positions.resume_price_tracking()
        self._job_task = asyncio.create_task(self._job_worker())
        self._started = True
        logger.info("Runtime engine started (%d open positions tracked)", resumed)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._job_task is not None:
            self._job_task.cancel()
            try:
                await self._job_task
            except asyncio.CancelledError:
                pass
            self._job_task = None
        await self.supervisor.shutdown()
        await self.positions.shutdown()
        await self.tracker.shutdown()
        self._watches.clear()
        await self.alerts.drain()
        await self.gateway.aclose()
        await self.feed.aclose()
        await self.db.close()
        logger.info("Runtime engine stopped")

    # ---------------------- strategy jobs ----------------------

    async def submit_job(self, name: str, strategy_id: str) -> StrategyJob:
        if name not in JOB_TYPES:
            raise ValidationError(f"Unknown job type: {name}")
        job = StrategyJob(name=name, strategy_id=strategy_id)
        await self.jobs.put(job)
        return job

    async def process_job(self, job: StrategyJob) -> Dict[str, Any]:
        logger.info("Processing %s job for strategy %s", job.name, job.strategy_id)
        if job.name == JOB_EXECUTE_STRATEGY:
            await self.supervisor.start(job.strategy_id)
            return {"success": True, "strategy_id": job.strategy_id}
        if job.name == JOB_CHECK_POSITIONS:
            metrics = await self.supervisor.get_metrics(job.strategy_id)
            return {"success": True, "metrics": metrics.to_dict()}
        if job.name == JOB_STOP_STRATEGY:
            await self.supervisor.stop(job.strategy_id)
            return {"success": True, "strategy_id": job.strategy_id}
        raise ValidationError(f"Unknown job type: {job.name}")

    async def _job_worker(self) -> None:
        while True:
            job = await self.jobs.get()
            try:
                await self.process_job(job)
            except Exception:
                logger.exception("Error processing %s job for strategy %s", job.name, job.strategy_id)
            finally:
                self.jobs.task_done()

    # ---------------------- price watches ----------------------

    async def watch_token(self, token_address: str) -> bool:
        """Stream price ticks of ``token_address`` to the dashboard event stream."""
        if token_address in self._watches:
            return False

        async def push(price: float) -> None:
            await self.stream.add_event(
                {
                    "type": "price_update",
                    "sid": None,
                    "ts": int(time.time() * 1000),
                    "data": {"token_address": token_address, "price": price},
                }
            )

        handle = await self.tracker.start_tracking(token_address, push)
        if handle is not None:
            self._watches[token_address] = handle
        return True

    async def unwatch_token(self, token_address: str) -> bool:
        handle = self._watches.pop(token_address, None)
        if handle is None:
            return False
        await self.tracker.unsubscribe(handle)
        return True

    def watched_tokens(self) -> list[str]:
        return sorted(self._watches.keys())

    # ---------------------- wallets ----------------------

    async def refresh_wallet_balance(self, wallet_id: str) -> Wallet:
        wallet = await self.db.get_wallet(wallet_id)
        if wallet is None or not wallet.gateway_wallet_id:
            raise InvalidRequest(f"Wallet {wallet_id} not found or not configured")
        balance = await self.gateway.get_wallet_balance(wallet.gateway_wallet_id)
        now_ms = int(time.time() * 1000)
        await self.db.update_wallet_balance(wallet_id, balance, now_ms)
        wallet.balance = balance
        wallet.updated_at = now_ms
        return wallet

    def runtime_state(self) -> Dict[str, Any]:
        return {
            "running_strategies": self.supervisor.runtime_state(),
            "watched_tokens": self.watched_tokens(),
            "tracked_positions": self.positions.tracked_ids(),
        }
