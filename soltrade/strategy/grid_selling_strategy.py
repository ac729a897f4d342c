from __future__ import annotations

from typing import Optional

from ..models import Position
from .base import BaseStrategy
from .interfaces import GRID_SELLING, GridSellingParams


class GridSellingStrategy(BaseStrategy):
    """Take-profit ladder over one position.

    Targets are worked strictly in list order. Each target sells its
    ``sell_percent`` of the quantity the position held when the strategy
    started, so later targets are not shrunk by earlier fills.
    """

    strategy_type = GRID_SELLING

    def __init__(self, deps) -> None:
        super().__init__(deps)
        self._position: Optional[Position] = None

    async def prepare(self, strategy_id: str, params: GridSellingParams) -> None:
        self._position = await self._deps.positions.get_position(params.position_id)

    async def execute(self, strategy_id: str, params: GridSellingParams) -> None:
        self._logger.info("Starting GridSellingStrategy for %s", strategy_id)
        position = self._position or await self._deps.positions.get_position(params.position_id)
        runtime = self._deps.runtime
        original_qty = position.quantity
        deadline = self._now() + runtime.grid_timeout_s

        for target in params.targets:
            target_price = position.entry_price * target.price_multiplier
            sell_qty = original_qty * target.sell_percent / 100
            self._logger.info(
                "Grid selling: waiting for price %s to sell %s tokens", target_price, sell_qty
            )
            price = await self._wait_for_price(position.token_address, target_price, deadline)
            if price is None:
                if not self.stopped:
                    self._logger.warning(
                        "Grid selling timeout for %s at target %s", position.token_address, target_price
                    )
                return

            current = await self._deps.positions.get_position(position.id)
            if current.is_closed:
                self._logger.warning("Position %s closed before grid finished", position.id)
                return

            try:
                order = await self._deps.executor.execute_sell(
                    position.wallet_id,
                    position.token_address,
                    sell_qty,
                    params.slippage,
                    strategy_id=strategy_id,
                )
            except Exception as exc:
                self._logger.exception("Error executing grid sell")
                await self.record_execution(
                    strategy_id,
                    "failed",
                    self.error_data(exc, position_id=position.id, target_price=target_price),
                )
                continue

            try:
                await self._deps.positions.reduce_position(position.id, sell_qty)
            except Exception:
                self._logger.exception("Grid sell filled but position %s was not reduced", position.id)

            await self.record_execution(
                strategy_id,
                "success",
                {
                    "position_id": position.id,
                    "target_price": target_price,
                    "sell_quantity": sell_qty,
                    "order": order.to_dict(),
                },
                trades=[order],
            )
            await self.notify_user(
                strategy_id,
                "grid_sell_executed",
                {
                    "token_address": position.token_address,
                    "quantity": sell_qty,
                    "price": order.price,
                    "pnl": (order.price - position.entry_price) * sell_qty,
                },
            )

        self._logger.info("GridSellingStrategy %s completed all targets", strategy_id)

    async def _wait_for_price(self, token_address: str, target_price: float, deadline: float) -> Optional[float]:
        interval = self._deps.runtime.grid_check_interval_s
        while not self.stopped:
            try:
                price = await self._deps.positions.get_current_price(token_address)
            except Exception:
                self._logger.exception("Error checking price for grid selling")
                price = 0.0
            if price > 0 and price >= target_price:
                return price
            if self._now() >= deadline:
                return None
            if await self.wait(interval):
                return None
        return None
