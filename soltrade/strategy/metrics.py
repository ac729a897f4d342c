from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional

from ..db import Database
from ..models import POSITION_CLOSED, TX_CONFIRMED, TX_FAILED, OrderResult, StrategyMetrics


@dataclass(slots=True)
class MetricsTracker:
    """In-memory counters for one running strategy instance."""

    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    total_volume: float = 0.0
    last_execution_at: Optional[int] = None

    def record(self, status: str, trades: Iterable[OrderResult] = (), executed_at: Optional[int] = None) -> None:
        self.total_attempts += 1
        self.last_execution_at = executed_at or int(time.time() * 1000)
        if status == "success":
            self.successful += 1
        else:
            self.failed += 1
        for t in trades:
            self.total_volume += t.amount

    @property
    def success_rate(self) -> float:
        return (self.successful / self.total_attempts) * 100 if self.total_attempts else 0.0

    def snapshot(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = self.success_rate
        return data


async def compute_strategy_metrics(db: Database, user_id: str, strategy_id: str) -> StrategyMetrics:
    """Aggregate trades and positions of the strategy owner's wallets.

    Scoped to the owning user rather than the strategy itself: every wallet of
    that user contributes, whichever strategy (or manual order) produced it.
    """
    transactions = await db.get_transactions_for_user(user_id)
    positions = await db.get_positions_for_user(user_id)

    total_trades = len(transactions)
    successful = sum(1 for t in transactions if t["status"] == TX_CONFIRMED)
    failed = sum(1 for t in transactions if t["status"] == TX_FAILED)
    total_volume = sum(float(t["amount"]) for t in transactions)

    closed = [p for p in positions if p.status == POSITION_CLOSED]
    open_ = [p for p in positions if not p.is_closed]
    realized = sum(p.realized_pnl for p in closed)
    unrealized = sum(p.unrealized_pnl for p in open_)

    rows = await db.get_executions(strategy_id, limit=1)
    last_execution_at = int(rows[0]["executed_at"]) if rows else None

    return StrategyMetrics(
        total_trades=total_trades,
        successful_trades=successful,
        failed_trades=failed,
        total_volume=total_volume,
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        win_rate=(successful / total_trades) * 100 if total_trades else 0.0,
        average_profit=realized / successful if successful else 0.0,
        largest_win=max((p.realized_pnl for p in closed), default=0.0),
        largest_loss=min((p.realized_pnl for p in closed), default=0.0),
        active_positions=len(open_),
        last_execution_at=last_execution_at,
    )
