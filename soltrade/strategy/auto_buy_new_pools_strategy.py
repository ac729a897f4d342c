from __future__ import annotations

from ..errors import RateLimitExceeded
from ..models import PoolEvent
from .base import BaseStrategy
from .interfaces import AUTO_BUY_NEW_POOLS, AutoBuyParams


class AutoBuyNewPoolsStrategy(BaseStrategy):
    """Buys freshly initialized pools whose liquidity falls inside a band."""

    strategy_type = AUTO_BUY_NEW_POOLS

    async def execute(self, strategy_id: str, params: AutoBuyParams) -> None:
        self._logger.info("Starting AutoBuyNewPoolsStrategy for %s", strategy_id)

        async def on_pool(pool: PoolEvent) -> None:
            if self.stopped:
                return
            self.spawn(self._handle_pool(strategy_id, params, pool))

        await self._deps.feed.subscribe_new_pools(on_pool, self._stop_event)
        await self.join_tasks()
        self._logger.info("AutoBuyNewPoolsStrategy %s finished", strategy_id)

    def _in_band(self, params: AutoBuyParams, pool: PoolEvent) -> bool:
        if pool.liquidity < params.min_liquidity:
            self._logger.debug(
                "Pool %s liquidity %s below minimum %s", pool.address, pool.liquidity, params.min_liquidity
            )
            return False
        if pool.liquidity > params.max_liquidity:
            self._logger.debug(
                "Pool %s liquidity %s above maximum %s", pool.address, pool.liquidity, params.max_liquidity
            )
            return False
        return True

    async def _passes_rug_check(self, params: AutoBuyParams, token_address: str) -> bool:
        try:
            info = await self._deps.feed.get_token_metadata(token_address)
        except Exception:
            self._logger.exception("Error validating token %s", token_address)
            return False
        if info.liquidity_locked < params.min_liquidity_locked:
            return False
        if info.top10_holdings > params.max_top10_holdings:
            return False
        return True

    async def _handle_pool(self, strategy_id: str, params: AutoBuyParams, pool: PoolEvent) -> None:
        if not self._in_band(params, pool):
            return
        if params.rug_check_enabled and not await self._passes_rug_check(params, pool.token_address):
            self._logger.warning("Token %s failed rug check", pool.token_address)
            return
        if self.stopped:
            return

        try:
            order = await self._deps.executor.execute_buy(
                params.wallet_id,
                pool.token_address,
                params.buy_amount,
                params.slippage,
                strategy_id=strategy_id,
            )
            position = await self._deps.positions.create_position(
                params.wallet_id,
                pool.token_address,
                order.price,
                order.quantity,
                strategy_id=strategy_id,
            )
        except RateLimitExceeded as exc:
            self._logger.warning("Skipped pool %s: %s", pool.address, exc)
            await self.record_execution(strategy_id, "failed", self.error_data(exc, pool=pool.address))
            return
        except Exception as exc:
            self._logger.exception("Error executing buy for pool %s", pool.address)
            await self.record_execution(strategy_id, "failed", self.error_data(exc, pool=pool.address))
            return

        await self.record_execution(
            strategy_id,
            "success",
            {"pool": pool.address, "order": order.to_dict(), "position": position.id},
            trades=[order],
        )
        await self.notify_user(
            strategy_id,
            "buy_executed",
            {
                "token_address": pool.token_address,
                "amount": order.amount,
                "price": order.price,
                "quantity": order.quantity,
            },
        )
