from __future__ import annotations

from typing import Optional


class TradingError(Exception):
    """Base class for errors raised by the trading core."""


class ValidationError(TradingError):
    """Strategy config or request payload is malformed."""


class InvalidRequest(TradingError):
    """Request is well-formed but cannot be served in the current state."""


class NotFound(TradingError):
    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class RateLimitExceeded(TradingError):
    def __init__(self, wallet_id: str, max_trades: int, window_seconds: float) -> None:
        super().__init__(
            f"Rate limit exceeded for wallet {wallet_id}: "
            f"maximum {max_trades} trades per {window_seconds:g}s"
        )
        self.wallet_id = wallet_id
        self.max_trades = max_trades
        self.window_seconds = window_seconds


class InsufficientBalance(TradingError):
    def __init__(self, required: float, available: float) -> None:
        super().__init__(f"Insufficient balance. Required: {required}, Available: {available}")
        self.required = required
        self.available = available


class GatewayError(TradingError):
    # kind: insufficient_funds / invalid_account / transient / rejected
    def __init__(self, message: str, kind: str = "rejected", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.kind == "transient"
