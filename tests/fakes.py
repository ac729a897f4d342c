from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from soltrade.db import Database
from soltrade.models import POSITION_OPEN, GatewayFill, Position, StrategyRecord, TokenInfo, TradeParams, Wallet


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep: records the delay, advances an optional clock, yields once."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.calls: List[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)
        await asyncio.sleep(0)


class FakeFeed:
    """Scripted prices per token; the last scripted value repeats."""

    def __init__(self, prices: Optional[Dict[str, Any]] = None) -> None:
        self._scripts: Dict[str, List[float]] = {}
        self.last: Dict[str, float] = {}
        self.metadata: Dict[str, TokenInfo] = {}
        self.pools: List[Any] = []
        self.price_calls = 0
        for token, value in (prices or {}).items():
            self.set_price(token, value)

    def set_price(self, token: str, value: Any) -> None:
        self._scripts[token] = list(value) if isinstance(value, (list, tuple)) else [float(value)]

    async def get_current_price(self, token: str) -> float:
        self.price_calls += 1
        script = self._scripts.get(token)
        if not script:
            return 0.0
        price = script.pop(0) if len(script) > 1 else script[0]
        self.last[token] = price
        return price

    async def get_token_metadata(self, token: str) -> TokenInfo:
        info = self.metadata.get(token)
        if info is None:
            raise RuntimeError(f"metadata unavailable for {token}")
        return info

    async def subscribe_new_pools(self, callback, stop_event: asyncio.Event) -> None:
        for pool in self.pools:
            if stop_event.is_set():
                return
            await callback(pool)

    async def aclose(self) -> None:
        return None


class FakeGateway:
    def __init__(self, price: float = 1.0, feed: Optional[FakeFeed] = None) -> None:
        self.price = price
        self.feed = feed
        self.calls: List[Dict[str, Any]] = []
        self.errors: List[Exception] = []
        self.balance = 0.0

    async def buy(self, params: TradeParams) -> GatewayFill:
        return self._fill("BUY", params)

    async def sell(self, params: TradeParams) -> GatewayFill:
        return self._fill("SELL", params)

    def _fill(self, side: str, params: TradeParams) -> GatewayFill:
        price = self.price
        if self.feed is not None and params.token_address in self.feed.last:
            price = self.feed.last[params.token_address]
        self.calls.append({"side": side, "params": params, "price": price})
        if self.errors:
            raise self.errors.pop(0)
        quantity = params.amount / price if side == "BUY" else params.amount
        return GatewayFill(
            signature=f"sig-{len(self.calls)}",
            price=price,
            quantity=quantity,
            fee=0.001,
        )

    async def get_wallet_balance(self, gateway_wallet_id: str) -> float:
        return self.balance

    async def aclose(self) -> None:
        return None


class FakeNotifier:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    async def notify(self, strategy_id, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((strategy_id, event, payload))

    def names(self) -> List[str]:
        return [e[1] for e in self.events]


async def open_db(tmp_path) -> Database:
    db = Database(str(tmp_path / "soltrade.db"))
    await db.connect()
    await db.init_schema()
    return db


async def add_wallet(
    db: Database,
    wallet_id: str = "w1",
    user_id: str = "u1",
    balance: float = 1000.0,
    gateway_wallet_id: Optional[str] = "gw-1",
) -> Wallet:
    now_ms = int(time.time() * 1000)
    wallet = Wallet(
        id=wallet_id,
        user_id=user_id,
        name=f"wallet {wallet_id}",
        public_key=f"pk-{wallet_id}",
        gateway_wallet_id=gateway_wallet_id,
        balance=balance,
        created_at=now_ms,
        updated_at=now_ms,
    )
    await db.insert_wallet(wallet)
    return wallet


async def add_position(
    db: Database,
    position_id: str = "p1",
    wallet_id: str = "w1",
    token: str = "TOKEN",
    entry_price: float = 1.0,
    quantity: float = 100.0,
) -> Position:
    now_ms = int(time.time() * 1000)
    position = Position(
        id=position_id,
        wallet_id=wallet_id,
        token_address=token,
        quantity=quantity,
        entry_price=entry_price,
        current_price=entry_price,
        status=POSITION_OPEN,
        realized_pnl=0.0,
        unrealized_pnl=0.0,
        created_at=now_ms,
        updated_at=now_ms,
    )
    await db.insert_position(position)
    return position


async def add_strategy(
    db: Database,
    config: Dict[str, Any],
    strategy_id: str = "s1",
    user_id: str = "u1",
    is_active: bool = False,
) -> StrategyRecord:
    now_ms = int(time.time() * 1000)
    record = StrategyRecord(
        id=strategy_id,
        user_id=user_id,
        name=f"strategy {strategy_id}",
        config=config,
        is_active=is_active,
        created_at=now_ms,
        updated_at=now_ms,
    )
    await db.insert_strategy(record)
    return record
