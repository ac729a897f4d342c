from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


POSITION_OPEN = "OPEN"
POSITION_PARTIAL = "PARTIAL"
POSITION_CLOSED = "CLOSED"
POSITION_STATUSES = (POSITION_OPEN, POSITION_PARTIAL, POSITION_CLOSED)
POSITION_LIVE = (POSITION_OPEN, POSITION_PARTIAL)

TX_PENDING = "PENDING"
TX_CONFIRMED = "CONFIRMED"
TX_FAILED = "FAILED"
TX_CANCELLED = "CANCELLED"


@dataclass(slots=True)
class StrategyRecord:
    id: str
    user_id: str
    name: str
    config: Dict[str, Any]  # {"type": ..., "params": {...}}
    is_active: bool
    created_at: int
    updated_at: int
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row, config: Dict[str, Any]) -> "StrategyRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            config=config,
            is_active=bool(row["is_active"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )


@dataclass(slots=True)
class Wallet:
    id: str
    user_id: str
    name: str
    public_key: str
    gateway_wallet_id: Optional[str]
    balance: float
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row) -> "Wallet":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            public_key=row["public_key"],
            gateway_wallet_id=row["gateway_wallet_id"],
            balance=float(row["balance"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )


@dataclass(slots=True)
class Position:
    id: str
    wallet_id: str
    token_address: str
    quantity: float
    entry_price: float
    current_price: float
    status: str  # OPEN/PARTIAL/CLOSED
    realized_pnl: float
    unrealized_pnl: float
    created_at: int
    updated_at: int
    closed_at: Optional[int] = None
    strategy_id: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status == POSITION_CLOSED

    @classmethod
    def from_row(cls, row) -> "Position":
        return cls(
            id=row["id"],
            wallet_id=row["wallet_id"],
            token_address=row["token_address"],
            quantity=float(row["quantity"]),
            entry_price=float(row["entry_price"]),
            current_price=float(row["current_price"]),
            status=row["status"],
            realized_pnl=float(row["realized_pnl"]),
            unrealized_pnl=float(row["unrealized_pnl"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            closed_at=int(row["closed_at"]) if row["closed_at"] is not None else None,
            strategy_id=row["strategy_id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Transaction:
    wallet_id: str
    type: str  # BUY/SELL
    token_address: str
    amount: float
    price: float
    quantity: float
    fee: float
    signature: str
    status: str
    block_time: int
    created_at: int
    strategy_id: Optional[str] = None
    id: Optional[int] = None


@dataclass(slots=True)
class TradeParams:
    wallet_id: str  # gateway execution-account id
    token_address: str
    amount: float
    slippage: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "walletId": self.wallet_id,
            "tokenAddress": self.token_address,
            "amount": self.amount,
            "slippage": self.slippage,
        }


@dataclass(slots=True)
class GatewayFill:
    signature: str
    price: float
    quantity: float
    fee: float


@dataclass(slots=True)
class OrderResult:
    signature: str
    token_address: str
    amount: float
    price: float
    quantity: float
    fee: float
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PoolEvent:
    address: str
    token_address: str
    liquidity: float
    token_symbol: str = "NEW"
    token_name: str = "New Token"
    volume_24h: float = 0.0
    price_usd: float = 0.0
    created_at: int = 0


@dataclass(slots=True)
class TokenInfo:
    address: str
    symbol: str
    name: str
    decimals: int
    supply: float
    holders: int
    liquidity_locked: float
    top10_holdings: float


@dataclass(slots=True)
class StrategyExecution:
    strategy_id: str
    status: str  # success/failed
    executed_at: int
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Alert:
    timestamp: int
    channel: str
    level: str
    message: str
    dedup_key: Optional[str]
    created_at: int
    strategy_id: Optional[str] = None


@dataclass(slots=True)
class StrategyMetrics:
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_volume: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    win_rate: float = 0.0
    average_profit: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    active_positions: int = 0
    last_execution_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
