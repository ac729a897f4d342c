from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from .models import Alert, Position, StrategyExecution, StrategyRecord, Transaction, Wallet


logger = logging.getLogger(__name__)


class Database:
    def __init__(self, sqlite_path: str) -> None:
        self._sqlite_path = sqlite_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        if self._sqlite_path != ":memory:":
            Path(self._sqlite_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._sqlite_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys=ON")
        logger.info("DB connected: %s", self._sqlite_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("DB closed")

    async def init_schema(self) -> None:
        await self.connect()
        schema_path = Path(__file__).resolve().parent / "schema.sql"
        sql = schema_path.read_text(encoding="utf-8")
        await self._conn.executescript(sql)
        await self._conn.commit()
        logger.info("DB schema initialized from %s", schema_path)

    async def execute(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> None:
        await self.connect()
        await self._conn.execute(sql, params)
        await self._conn.commit()

    async def insert(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> int:
        await self.connect()
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return int(cursor.lastrowid)

    async def fetchone(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> Optional[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> List[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchall()

    # ---------------------- wallets ----------------------

    async def insert_wallet(self, w: Wallet) -> None:
        sql = """
        INSERT INTO wallets (id, user_id, name, public_key, gateway_wallet_id, balance, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            w.id,
            w.user_id,
            w.name,
            w.public_key,
            w.gateway_wallet_id,
            w.balance,
            w.created_at,
            w.updated_at,
        )
        await self.execute(sql, params)

    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        row = await self.fetchone("SELECT * FROM wallets WHERE id=?", (wallet_id,))
        return Wallet.from_row(row) if row is not None else None

    async def update_wallet_balance(self, wallet_id: str, balance: float, updated_at: int) -> None:
        await self.execute(
            "UPDATE wallets SET balance=?, updated_at=? WHERE id=?",
            (balance, updated_at, wallet_id),
        )

    # ---------------------- strategies ----------------------

    async def insert_strategy(self, s: StrategyRecord) -> None:
        sql = """
        INSERT INTO strategies (id, user_id, name, description, config, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            s.id,
            s.user_id,
            s.name,
            s.description,
            json.dumps(s.config),
            1 if s.is_active else 0,
            s.created_at,
            s.updated_at,
        )
        await self.execute(sql, params)

    async def update_strategy(self, s: StrategyRecord) -> None:
        sql = """
        UPDATE strategies SET
          name=?, description=?, config=?, is_active=?, updated_at=?
        WHERE id=?
        """
        params = (
            s.name,
            s.description,
            json.dumps(s.config),
            1 if s.is_active else 0,
            s.updated_at,
            s.id,
        )
        await self.execute(sql, params)

    async def set_strategy_active(self, strategy_id: str, is_active: bool, updated_at: int) -> None:
        await self.execute(
            "UPDATE strategies SET is_active=?, updated_at=? WHERE id=?",
            (1 if is_active else 0, updated_at, strategy_id),
        )

    async def delete_strategy(self, strategy_id: str) -> None:
        await self.execute("DELETE FROM strategies WHERE id=?", (strategy_id,))

    async def get_strategy(self, strategy_id: str) -> Optional[StrategyRecord]:
        row = await self.fetchone("SELECT * FROM strategies WHERE id=?", (strategy_id,))
        if row is None:
            return None
        return StrategyRecord.from_row(row, json.loads(row["config"]))

    async def get_strategies(self, user_id: Optional[str] = None) -> List[StrategyRecord]:
        sql = "SELECT * FROM strategies"
        params: List[Any] = []
        if user_id is not None:
            sql += " WHERE user_id=?"
            params.append(user_id)
        sql += " ORDER BY created_at DESC"
        rows = await self.fetchall(sql, params)
        return [StrategyRecord.from_row(r, json.loads(r["config"])) for r in rows]

    # ---------------------- positions ----------------------

    async def insert_position(self, p: Position) -> None:
        sql = """
        INSERT INTO positions (
          id, wallet_id, strategy_id, token_address, quantity, entry_price, current_price,
          status, realized_pnl, unrealized_pnl, created_at, updated_at, closed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            p.id,
            p.wallet_id,
            p.strategy_id,
            p.token_address,
            p.quantity,
            p.entry_price,
            p.current_price,
            p.status,
            p.realized_pnl,
            p.unrealized_pnl,
            p.created_at,
            p.updated_at,
            p.closed_at,
        )
        await self.execute(sql, params)

    async def update_position(self, p: Position) -> None:
        sql = """
        UPDATE positions SET
          quantity=?, entry_price=?, current_price=?, status=?, realized_pnl=?,
          unrealized_pnl=?, updated_at=?, closed_at=?
        WHERE id=?
        """
        params = (
            p.quantity,
            p.entry_price,
            p.current_price,
            p.status,
            p.realized_pnl,
            p.unrealized_pnl,
            p.updated_at,
            p.closed_at,
            p.id,
        )
        await self.execute(sql, params)

    async def get_position(self, position_id: str) -> Optional[Position]:
        row = await self.fetchone("SELECT * FROM positions WHERE id=?", (position_id,))
        return Position.from_row(row) if row is not None else None

    async def find_open_position(self, wallet_id: str, token_address: str) -> Optional[Position]:
        sql = """
        SELECT * FROM positions
        WHERE wallet_id=? AND token_address=? AND status IN ('OPEN', 'PARTIAL')
        ORDER BY created_at DESC LIMIT 1
        """
        row = await self.fetchone(sql, (wallet_id, token_address))
        return Position.from_row(row) if row is not None else None

    async def get_positions(
        self,
        wallet_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Position]:
        sql = "SELECT * FROM positions"
        params: List[Any] = []
        where: List[str] = []
        if wallet_id is not None:
            where.append("wallet_id = ?")
            params.append(wallet_id)
        if status is not None:
            where.append("status = ?")
            params.append(status)
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = await self.fetchall(sql, params)
        return [Position.from_row(r) for r in rows]

    async def get_positions_for_user(self, user_id: str) -> List[Position]:
        sql = """
        SELECT p.* FROM positions p
        JOIN wallets w ON w.id = p.wallet_id
        WHERE w.user_id=?
        """
        rows = await self.fetchall(sql, (user_id,))
        return [Position.from_row(r) for r in rows]

    # ---------------------- transactions ----------------------

    async def insert_transaction(self, t: Transaction) -> int:
        sql = """
        INSERT INTO transactions (
          wallet_id, strategy_id, type, token_address, amount, price, quantity,
          fee, signature, status, block_time, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            t.wallet_id,
            t.strategy_id,
            t.type,
            t.token_address,
            t.amount,
            t.price,
            t.quantity,
            t.fee,
            t.signature,
            t.status,
            t.block_time,
            t.created_at,
        )
        return await self.insert(sql, params)

    async def get_transactions(
        self,
        wallet_id: Optional[str] = None,
        limit: int = 100,
        since: Optional[int] = None,
    ) -> List[aiosqlite.Row]:
        sql = "SELECT * FROM transactions"
        params: List[Any] = []
        where: List[str] = []
        if wallet_id is not None:
            where.append("wallet_id = ?")
            params.append(wallet_id)
        if since is not None:
            where.append("block_time >= ?")
            params.append(since)
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY block_time DESC LIMIT ?"
        params.append(limit)
        return await self.fetchall(sql, params)

    async def get_transactions_for_user(self, user_id: str) -> List[aiosqlite.Row]:
        sql = """
        SELECT t.* FROM transactions t
        JOIN wallets w ON w.id = t.wallet_id
        WHERE w.user_id=?
        """
        return await self.fetchall(sql, (user_id,))

    # ---------------------- executions / alerts ----------------------

    async def insert_execution(self, e: StrategyExecution) -> int:
        sql = """
        INSERT INTO strategy_executions (strategy_id, status, data, executed_at)
        VALUES (?, ?, ?, ?)
        """
        params = (e.strategy_id, e.status, json.dumps(e.data, default=str), e.executed_at)
        return await self.insert(sql, params)

    async def get_executions(self, strategy_id: str, limit: int = 100) -> List[aiosqlite.Row]:
        sql = """
        SELECT * FROM strategy_executions WHERE strategy_id=?
        ORDER BY executed_at DESC, id DESC LIMIT ?
        """
        return await self.fetchall(sql, (strategy_id, limit))

    async def insert_alert(self, a: Alert) -> int:
        sql = """
        INSERT INTO alerts (strategy_id, timestamp, channel, level, message, dedup_key, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        params = (a.strategy_id, a.timestamp, a.channel, a.level, a.message, a.dedup_key, a.created_at)
        return await self.insert(sql, params)
