from __future__ import annotations

from .base import BaseStrategy
from .interfaces import DCA, DcaParams


class DcaStrategy(BaseStrategy):
    """Fixed series of buys spaced ``interval_hours`` apart.

    The series is time-driven: a failed attempt still uses up its slot and
    the next one runs after the same interval.
    """

    strategy_type = DCA

    async def execute(self, strategy_id: str, params: DcaParams) -> None:
        self._logger.info("Starting DcaStrategy for %s", strategy_id)
        interval_s = params.interval_hours * 3600
        buys_executed = 0

        for attempt in range(1, params.total_buys + 1):
            if self.stopped:
                return
            if await self._buy_once(strategy_id, params, attempt):
                buys_executed += 1
            if attempt < params.total_buys and await self.wait(interval_s):
                return

        self._logger.info(
            "DCA strategy %s completed: %d/%d buys executed", strategy_id, buys_executed, params.total_buys
        )

    async def _buy_once(self, strategy_id: str, params: DcaParams, attempt: int) -> bool:
        try:
            order = await self._deps.executor.execute_buy(
                params.wallet_id,
                params.token_address,
                params.buy_amount,
                params.slippage,
                strategy_id=strategy_id,
            )
            position = await self._deps.positions.create_or_update_position(
                params.wallet_id,
                params.token_address,
                order.price,
                order.quantity,
                strategy_id=strategy_id,
            )
        except Exception as exc:
            self._logger.exception("Error executing DCA buy %d", attempt)
            await self.record_execution(strategy_id, "failed", self.error_data(exc, buy_number=attempt))
            return False

        await self.record_execution(
            strategy_id,
            "success",
            {"buy_number": attempt, "order": order.to_dict(), "position": position.id},
            trades=[order],
        )
        await self.notify_user(
            strategy_id,
            "dca_buy_executed",
            {
                "buy_number": attempt,
                "total_buys": params.total_buys,
                "token_address": params.token_address,
                "amount": order.amount,
                "price": order.price,
                "quantity": order.quantity,
            },
        )
        return True
