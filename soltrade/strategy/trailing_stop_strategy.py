from __future__ import annotations

from typing import Optional

from ..models import Position
from .base import BaseStrategy
from .interfaces import TRAILING_STOP, TrailingStopParams


class TrailingStopStrategy(BaseStrategy):
    strategy_type = TRAILING_STOP

    def __init__(self, deps) -> None:
        super().__init__(deps)
        self._position: Optional[Position] = None
        self.ath: float = 0.0
        self.stop_price: float = 0.0

    async def prepare(self, strategy_id: str, params: TrailingStopParams) -> None:
        self._position = await self._deps.positions.get_position(params.position_id)

    def _seed(self, entry_price: float, params: TrailingStopParams) -> None:
        multiplier = params.activation_multiplier
        if multiplier is not None and multiplier > 1:
            self.ath = entry_price * multiplier
        else:
            self.ath = entry_price
        self.stop_price = self.ath * (1 - params.trail_percent / 100)

    async def execute(self, strategy_id: str, params: TrailingStopParams) -> None:
        self._logger.info("Starting TrailingStopStrategy for %s", strategy_id)
        position = self._position or await self._deps.positions.get_position(params.position_id)
        self._seed(position.entry_price, params)

        runtime = self._deps.runtime
        deadline = self._now() + runtime.trailing_timeout_s
        while not self.stopped:
            try:
                if await self._check(strategy_id, params, position):
                    return
            except Exception:
                self._logger.exception("Error monitoring trailing stop")
            if self._now() >= deadline:
                self._logger.warning(
                    "Trailing stop for position %s timed out; position left open", position.id
                )
                return
            if await self.wait(runtime.trailing_check_interval_s):
                return

    async def _check(self, strategy_id: str, params: TrailingStopParams, position: Position) -> bool:
        price = await self._deps.positions.get_current_price(position.token_address)
        if price <= 0:
            return False

        if price > self.ath:
            self.ath = price
            self.stop_price = price * (1 - params.trail_percent / 100)
            self._logger.info("ATH updated to %s, new stop loss at %s", price, self.stop_price)

        if price > self.stop_price:
            return False

        current = await self._deps.positions.get_position(position.id)
        if current.is_closed or current.quantity <= 0:
            self._logger.warning("Position %s already closed; trailing stop ends", position.id)
            return True

        self._logger.info("Stop loss triggered at %s, selling position %s", price, position.id)
        stop_price = self.stop_price
        try:
            order = await self._deps.executor.execute_sell(
                current.wallet_id,
                current.token_address,
                current.quantity,
                params.slippage,
                strategy_id=strategy_id,
            )
        except Exception as exc:
            self._logger.exception("Trailing stop sell failed for position %s", position.id)
            await self.record_execution(
                strategy_id, "failed", self.error_data(exc, position_id=position.id, exit_price=price)
            )
            return False

        closed = await self._close_after_fill(strategy_id, position.id, price)
        pnl = closed.realized_pnl if closed is not None else (price - current.entry_price) * current.quantity
        await self.record_execution(
            strategy_id,
            "success",
            {
                "position_id": position.id,
                "stop_loss_price": stop_price,
                "exit_price": price,
                "order": order.to_dict(),
            },
            trades=[order],
        )
        await self.notify_user(
            strategy_id,
            "stop_loss_triggered",
            {
                "token_address": current.token_address,
                "exit_price": price,
                "pnl": pnl,
            },
        )
        return True

    async def _close_after_fill(self, strategy_id: str, position_id: str, exit_price: float) -> Optional[Position]:
        # the sell already filled: only the close is retried, never the sell
        while True:
            try:
                return await self._deps.positions.close_position(position_id, exit_price)
            except Exception as exc:
                self._logger.exception("Closing position %s after stop loss failed", position_id)
                await self.record_execution(
                    strategy_id,
                    "failed",
                    self.error_data(exc, position_id=position_id, exit_price=exit_price, stage="close"),
                )
            if await self.wait(self._deps.runtime.trailing_check_interval_s):
                return None
