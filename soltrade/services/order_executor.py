from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from ..db import Database
from ..errors import InsufficientBalance, InvalidRequest, RateLimitExceeded
from ..models import TX_CONFIRMED, OrderResult, TradeParams, Transaction, Wallet


logger = logging.getLogger(__name__)


class WalletRateLimiter:
    """Per-wallet sliding-window trade limiter.

    Unlike a blocking limiter this one fails fast: once ``max_calls`` trades
    were admitted within ``period_seconds`` for a wallet, ``acquire`` raises
    ``RateLimitExceeded`` until the oldest admission leaves the window.
    An admitted slot can be handed back with ``release`` when the trade fails.
    """

    def __init__(
        self,
        max_calls: int,
        period_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._clock = clock
        self._calls: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, calls: Deque[float], now: float) -> None:
        while calls and now - calls[0] >= self.period_seconds:
            calls.popleft()

    async def acquire(self, wallet_id: str) -> float:
        async with self._lock:
            now = self._clock()
            calls = self._calls.setdefault(wallet_id, deque())
            self._prune(calls, now)
            if self.max_calls > 0 and len(calls) >= self.max_calls:
                raise RateLimitExceeded(wallet_id, self.max_calls, self.period_seconds)
            calls.append(now)
            return now

    async def release(self, wallet_id: str, stamp: float) -> None:
        async with self._lock:
            calls = self._calls.get(wallet_id)
            if not calls:
                return
            try:
                calls.remove(stamp)
            except ValueError:
                pass

    async def recent(self, wallet_id: str) -> int:
        async with self._lock:
            calls = self._calls.get(wallet_id)
            if not calls:
                return 0
            self._prune(calls, self._clock())
            return len(calls)


class OrderExecutor:
    def __init__(
        self,
        db: Database,
        gateway,
        limiter: WalletRateLimiter,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._limiter = limiter

    @property
    def limiter(self) -> WalletRateLimiter:
        return self._limiter

    async def execute_buy(
        self,
        wallet_id: str,
        token_address: str,
        amount: float,
        slippage: float,
        strategy_id: Optional[str] = None,
    ) -> OrderResult:
        return await self._execute("BUY", wallet_id, token_address, amount, slippage, strategy_id)

    async def execute_sell(
        self,
        wallet_id: str,
        token_address: str,
        amount: float,
        slippage: float,
        strategy_id: Optional[str] = None,
    ) -> OrderResult:
        return await self._execute("SELL", wallet_id, token_address, amount, slippage, strategy_id)

    async def _resolve_wallet(self, wallet_id: str) -> Wallet:
        wallet = await self._db.get_wallet(wallet_id)
        if wallet is None:
            raise InvalidRequest(f"Wallet {wallet_id} not found")
        if not wallet.gateway_wallet_id:
            raise InvalidRequest(f"Wallet {wallet_id} has no execution account configured")
        return wallet

    async def _execute(
        self,
        side: str,
        wallet_id: str,
        token_address: str,
        amount: float,
        slippage: float,
        strategy_id: Optional[str],
    ) -> OrderResult:
        logger.info(
            "Executing %s order wallet=%s token=%s amount=%s slippage=%s strategy=%s",
            side.lower(),
            wallet_id,
            token_address,
            amount,
            slippage,
            strategy_id,
        )
        if amount <= 0:
            raise InvalidRequest("amount must be > 0")

        stamp = await self._limiter.acquire(wallet_id)
        try:
            wallet = await self._resolve_wallet(wallet_id)
            if side == "BUY" and wallet.balance < amount:
                raise InsufficientBalance(amount, wallet.balance)

            params = TradeParams(
                wallet_id=wallet.gateway_wallet_id,
                token_address=token_address,
                amount=amount,
                slippage=slippage,
            )
            if side == "BUY":
                fill = await self._gateway.buy(params)
            else:
                fill = await self._gateway.sell(params)
        except Exception:
            await self._limiter.release(wallet_id, stamp)
            logger.exception("Error executing %s order for wallet %s", side.lower(), wallet_id)
            raise

        now_ms = int(time.time() * 1000)
        await self._db.insert_transaction(
            Transaction(
                wallet_id=wallet_id,
                strategy_id=strategy_id,
                type=side,
                token_address=token_address,
                amount=amount,
                price=fill.price,
                quantity=fill.quantity,
                fee=fill.fee,
                signature=fill.signature,
                status=TX_CONFIRMED,
                block_time=now_ms,
                created_at=now_ms,
            )
        )

        return OrderResult(
            signature=fill.signature,
            token_address=token_address,
            amount=amount,
            price=fill.price,
            quantity=fill.quantity,
            fee=fill.fee,
            timestamp=now_ms,
        )
