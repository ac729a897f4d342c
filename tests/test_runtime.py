import asyncio

import pytest

from soltrade.config import Settings
from soltrade.errors import ValidationError
from soltrade.runtime import JOB_CHECK_POSITIONS, RuntimeEngine, StrategyJob

from fakes import FakeFeed, FakeGateway, add_position, add_strategy, add_wallet


TRAILING = {"type": "TRAILING_STOP", "params": {"positionId": "p1", "trailPercent": 10}}


def _engine(tmp_path, feed) -> RuntimeEngine:
    settings = Settings(
        storage={"sqlite_path": str(tmp_path / "runtime.db")},
        alerts={"enabled": False},
    )
    return RuntimeEngine(settings, gateway=FakeGateway(feed=feed), feed=feed)


def test_job_queue_routes_start_metrics_and_stop(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": 2.0})
        engine = _engine(tmp_path, feed)
        await engine.start()
        await add_wallet(engine.db)
        await add_position(engine.db, entry_price=1.0, quantity=10.0)
        await add_strategy(engine.db, TRAILING)

        await engine.submit_job("execute-strategy", "s1")
        await asyncio.wait_for(engine.jobs.join(), 2.0)
        assert engine.supervisor.is_running("s1")

        result = await engine.process_job(StrategyJob(JOB_CHECK_POSITIONS, "s1"))
        assert result["success"] is True
        assert result["metrics"]["active_positions"] == 1

        await engine.submit_job("stop-strategy", "s1")
        await asyncio.wait_for(engine.jobs.join(), 2.0)
        assert not engine.supervisor.is_running("s1")
        stored = await engine.db.get_strategy("s1")
        assert stored.is_active is False
        await engine.stop()

    asyncio.run(run())


def test_failed_job_does_not_end_the_worker(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": 2.0})
        engine = _engine(tmp_path, feed)
        await engine.start()
        await add_wallet(engine.db)
        await add_position(engine.db, entry_price=1.0, quantity=10.0)
        await add_strategy(engine.db, TRAILING)

        await engine.submit_job("execute-strategy", "missing")
        await engine.submit_job("check-positions", "missing")
        await engine.submit_job("execute-strategy", "s1")
        await asyncio.wait_for(engine.jobs.join(), 2.0)

        assert engine.supervisor.running_ids() == ["s1"]
        await engine.stop()
        assert not engine.supervisor.is_running("s1")

    asyncio.run(run())


def test_unknown_job_type_is_rejected(tmp_path) -> None:
    async def run() -> None:
        engine = _engine(tmp_path, FakeFeed())
        with pytest.raises(ValidationError, match="Unknown job type"):
            await engine.submit_job("rebalance", "s1")
        assert engine.jobs.qsize() == 0

    asyncio.run(run())
