import asyncio
import math

from soltrade.config import StrategyRuntimeConfig
from soltrade.errors import GatewayError
from soltrade.models import PoolEvent, TokenInfo
from soltrade.services.order_executor import OrderExecutor, WalletRateLimiter
from soltrade.services.position_manager import PositionManager
from soltrade.strategy import StrategyDeps, create_strategy, list_strategy_types, parse_strategy_config
from soltrade.strategy.trailing_stop_strategy import TrailingStopStrategy

from fakes import (
    FakeClock,
    FakeFeed,
    FakeGateway,
    FakeNotifier,
    RecordingSleep,
    add_position,
    add_wallet,
    open_db,
)


async def _deps(tmp_path, feed, gateway=None, runtime=None):
    db = await open_db(tmp_path)
    await add_wallet(db, balance=10_000.0)
    clock = FakeClock()
    sleep = RecordingSleep(clock)
    gateway = gateway or FakeGateway(feed=feed)
    notifier = FakeNotifier()
    deps = StrategyDeps(
        executor=OrderExecutor(db, gateway, WalletRateLimiter(100, 60)),
        positions=PositionManager(db, feed, notifier=notifier, price_cache_ttl_s=0, refresh_interval_s=3600),
        feed=feed,
        db=db,
        notifier=notifier,
        runtime=runtime or StrategyRuntimeConfig(),
        sleep=sleep,
        clock=clock,
    )
    return deps, gateway, notifier, sleep


def test_registry_covers_every_strategy_type() -> None:
    assert list_strategy_types() == ["AUTO_BUY_NEW_POOLS", "DCA", "GRID_SELLING", "TRAILING_STOP"]


def test_grid_sells_each_target_in_order_from_original_quantity(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": [1.5, 2.0, 2.5, 2.9, 3.0, 4.0, 5.0]})
        deps, gateway, notifier, sleep = await _deps(tmp_path, feed)
        await add_position(deps.db, entry_price=1.0, quantity=100.0)
        config = parse_strategy_config(
            {
                "type": "GRID_SELLING",
                "params": {
                    "positionId": "p1",
                    "targets": [
                        {"priceMultiplier": 2, "sellPercent": 25},
                        {"priceMultiplier": 3, "sellPercent": 25},
                        {"priceMultiplier": 5, "sellPercent": 50},
                    ],
                },
            }
        )
        strategy = create_strategy(config.type, deps)
        await strategy.prepare("s1", config.params)
        await strategy.execute("s1", config.params)

        sells = [(c["params"].amount, c["price"]) for c in gateway.calls]
        assert sells == [(25.0, 2.0), (25.0, 3.0), (50.0, 5.0)]
        assert sleep.calls == [10.0] * 4

        position = await deps.positions.get_position("p1")
        assert position.quantity == 0.0
        assert position.status == "CLOSED"
        assert notifier.names().count("grid_sell_executed") == 3
        assert strategy.metrics_snapshot()["successful"] == 3

        rows = await deps.db.get_executions("s1")
        assert len(rows) == 3
        await deps.db.close()

    asyncio.run(run())


def test_grid_abandons_remaining_targets_after_timeout(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": [2.0, 1.0]})
        runtime = StrategyRuntimeConfig(grid_check_interval_s=10, grid_timeout_s=60)
        deps, gateway, _, sleep = await _deps(tmp_path, feed, runtime=runtime)
        await add_position(deps.db, entry_price=1.0, quantity=100.0)
        config = parse_strategy_config(
            {
                "type": "GRID_SELLING",
                "params": {
                    "positionId": "p1",
                    "targets": [
                        {"priceMultiplier": 2, "sellPercent": 50},
                        {"priceMultiplier": 3, "sellPercent": 50},
                    ],
                },
            }
        )
        strategy = create_strategy(config.type, deps)
        await strategy.execute("s1", config.params)

        assert len(gateway.calls) == 1
        assert sum(sleep.calls) == 60
        position = await deps.positions.get_position("p1")
        assert position.quantity == 50.0
        assert position.status == "PARTIAL"
        await deps.db.close()

    asyncio.run(run())


def test_grid_sell_keeps_tokens_merged_after_start(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": 2.0})
        deps, gateway, _, _ = await _deps(tmp_path, feed)
        await add_position(deps.db, entry_price=1.0, quantity=100.0)
        config = parse_strategy_config(
            {
                "type": "GRID_SELLING",
                "params": {"positionId": "p1", "targets": [{"priceMultiplier": 2, "sellPercent": 25}]},
            }
        )
        strategy = create_strategy(config.type, deps)
        await strategy.prepare("s1", config.params)
        await deps.positions.create_or_update_position("w1", "TOKEN", 1.0, 100.0)
        await strategy.execute("s1", config.params)

        assert [c["params"].amount for c in gateway.calls] == [25.0]
        position = await deps.positions.get_position("p1")
        assert math.isclose(position.quantity, 175.0)
        assert position.status == "PARTIAL"
        await deps.positions.shutdown()
        await deps.db.close()

    asyncio.run(run())


def test_trailing_stop_follows_new_highs_and_sells_everything(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": [0.95, 2.0, 1.85, 1.79]})
        deps, gateway, notifier, _ = await _deps(tmp_path, feed)
        await add_position(deps.db, entry_price=1.0, quantity=40.0)
        config = parse_strategy_config(
            {"type": "TRAILING_STOP", "params": {"positionId": "p1", "trailPercent": 10}}
        )
        strategy = create_strategy(config.type, deps)
        await strategy.prepare("s1", config.params)
        await strategy.execute("s1", config.params)

        assert math.isclose(strategy.ath, 2.0)
        assert math.isclose(strategy.stop_price, 1.8)
        assert len(gateway.calls) == 1
        assert gateway.calls[0]["side"] == "SELL"
        assert gateway.calls[0]["params"].amount == 40.0

        position = await deps.positions.get_position("p1")
        assert position.status == "CLOSED"
        assert position.quantity == 0.0
        assert math.isclose(position.realized_pnl, (1.79 - 1.0) * 40.0)
        assert "stop_loss_triggered" in notifier.names()
        await deps.db.close()

    asyncio.run(run())


def test_trailing_stop_retries_only_the_close_after_a_fill(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": [1.0, 0.5]})
        deps, gateway, notifier, _ = await _deps(tmp_path, feed)
        await add_position(deps.db, entry_price=1.0, quantity=10.0)

        real_close = deps.positions.close_position
        close_errors = [RuntimeError("database is locked")]

        async def flaky_close(position_id, exit_price):
            if close_errors:
                raise close_errors.pop(0)
            return await real_close(position_id, exit_price)

        deps.positions.close_position = flaky_close
        config = parse_strategy_config(
            {"type": "TRAILING_STOP", "params": {"positionId": "p1", "trailPercent": 10}}
        )
        strategy = create_strategy(config.type, deps)
        await strategy.prepare("s1", config.params)
        await strategy.execute("s1", config.params)

        assert [c["params"].amount for c in gateway.calls] == [10.0]
        position = await deps.positions.get_position("p1")
        assert position.status == "CLOSED"
        assert math.isclose(position.realized_pnl, -5.0)

        snapshot = strategy.metrics_snapshot()
        assert snapshot["failed"] == 1
        assert snapshot["successful"] == 1
        assert notifier.names().count("stop_loss_triggered") == 1
        await deps.db.close()

    asyncio.run(run())


def test_trailing_stop_seed_uses_activation_multiplier_above_one() -> None:
    deps = StrategyDeps(executor=None, positions=None, feed=None, db=None)
    config = parse_strategy_config(
        {"type": "TRAILING_STOP", "params": {"positionId": "p1", "trailPercent": 10}}
    )
    strategy = TrailingStopStrategy(deps)
    strategy._seed(1.0, config.params)
    assert math.isclose(strategy.stop_price, 0.9)

    boosted = config.params.model_copy(update={"activation_multiplier": 1.5})
    strategy._seed(1.0, boosted)
    assert math.isclose(strategy.ath, 1.5)
    assert math.isclose(strategy.stop_price, 1.35)

    damped = config.params.model_copy(update={"activation_multiplier": 0.5})
    strategy._seed(1.0, damped)
    assert math.isclose(strategy.ath, 1.0)


def test_trailing_stop_times_out_and_leaves_position_open(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed({"TOKEN": 1.2})
        runtime = StrategyRuntimeConfig(trailing_check_interval_s=5, trailing_timeout_s=20)
        deps, gateway, _, sleep = await _deps(tmp_path, feed, runtime=runtime)
        await add_position(deps.db, entry_price=1.0, quantity=40.0)
        config = parse_strategy_config(
            {"type": "TRAILING_STOP", "params": {"positionId": "p1", "trailPercent": 10}}
        )
        strategy = create_strategy(config.type, deps)
        await strategy.execute("s1", config.params)

        assert gateway.calls == []
        assert sleep.calls == [5, 5, 5, 5]
        position = await deps.positions.get_position("p1")
        assert position.status == "OPEN"
        await deps.db.close()

    asyncio.run(run())


def test_dca_runs_every_attempt_even_when_some_fail(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed()
        gateway = FakeGateway(price=2.0)
        gateway.errors.append(GatewayError("route not found", kind="rejected"))
        deps, _, notifier, sleep = await _deps(tmp_path, feed, gateway=gateway)
        config = parse_strategy_config(
            {
                "type": "DCA",
                "params": {
                    "walletId": "w1",
                    "tokenAddress": "TOKEN",
                    "buyAmount": 10,
                    "intervalHours": 1,
                    "totalBuys": 3,
                },
            }
        )
        strategy = create_strategy(config.type, deps)
        await strategy.execute("s1", config.params)

        assert len(gateway.calls) == 3
        assert sleep.calls == [3600, 3600]
        snapshot = strategy.metrics_snapshot()
        assert snapshot["total_attempts"] == 3
        assert snapshot["failed"] == 1
        assert snapshot["successful"] == 2

        positions = await deps.positions.list_positions(wallet_id="w1")
        assert len(positions) == 1
        assert math.isclose(positions[0].quantity, 10.0)
        assert notifier.names().count("dca_buy_executed") == 2
        await deps.positions.shutdown()
        await deps.db.close()

    asyncio.run(run())


def test_auto_buy_filters_band_and_rug_check(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed()
        feed.pools = [
            PoolEvent(address="pool-small", token_address="SMALL", liquidity=10.0),
            PoolEvent(address="pool-big", token_address="BIG", liquidity=1_000_000.0),
            PoolEvent(address="pool-ok", token_address="OK", liquidity=500.0),
            PoolEvent(address="pool-rug", token_address="RUG", liquidity=500.0),
            PoolEvent(address="pool-unknown", token_address="UNKNOWN", liquidity=500.0),
        ]
        feed.metadata["OK"] = TokenInfo("OK", "OK", "Ok", 6, 1e9, 500, 90.0, 20.0)
        feed.metadata["RUG"] = TokenInfo("RUG", "RUG", "Rug", 6, 1e9, 3, 90.0, 95.0)
        gateway = FakeGateway(price=0.5)
        deps, _, notifier, _ = await _deps(tmp_path, feed, gateway=gateway)
        config = parse_strategy_config(
            {
                "type": "AUTO_BUY_NEW_POOLS",
                "params": {
                    "walletId": "w1",
                    "minLiquidity": 100,
                    "maxLiquidity": 10_000,
                    "buyAmount": 5,
                    "rugCheckEnabled": True,
                    "minLiquidityLocked": 50,
                    "maxTop10Holdings": 60,
                },
            }
        )
        strategy = create_strategy(config.type, deps)
        await strategy.execute("s1", config.params)

        assert [c["params"].token_address for c in gateway.calls] == ["OK"]
        positions = await deps.positions.list_positions(wallet_id="w1")
        assert [(p.token_address, p.quantity) for p in positions] == [("OK", 10.0)]
        assert "buy_executed" in notifier.names()
        await deps.positions.shutdown()
        await deps.db.close()

    asyncio.run(run())


def test_auto_buy_records_failed_buys_and_keeps_listening(tmp_path) -> None:
    async def run() -> None:
        feed = FakeFeed()
        feed.pools = [
            PoolEvent(address="a", token_address="A", liquidity=500.0),
            PoolEvent(address="b", token_address="B", liquidity=500.0),
        ]
        gateway = FakeGateway(price=1.0)
        gateway.errors.append(GatewayError("slippage exceeded", kind="rejected"))
        deps, _, _, _ = await _deps(tmp_path, feed, gateway=gateway)
        config = parse_strategy_config(
            {
                "type": "AUTO_BUY_NEW_POOLS",
                "params": {"walletId": "w1", "minLiquidity": 0, "maxLiquidity": 1000, "buyAmount": 1},
            }
        )
        strategy = create_strategy(config.type, deps)
        await strategy.execute("s1", config.params)

        snapshot = strategy.metrics_snapshot()
        assert snapshot["failed"] == 1
        assert snapshot["successful"] == 1
        assert len(gateway.calls) == 2
        await deps.positions.shutdown()
        await deps.db.close()

    asyncio.run(run())
