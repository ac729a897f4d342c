from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..config import StrategyRuntimeConfig
from ..errors import ValidationError


AUTO_BUY_NEW_POOLS = "AUTO_BUY_NEW_POOLS"
GRID_SELLING = "GRID_SELLING"
TRAILING_STOP = "TRAILING_STOP"
DCA = "DCA"
STRATEGY_TYPES = (AUTO_BUY_NEW_POOLS, GRID_SELLING, TRAILING_STOP, DCA)


class _Params(BaseModel):
    # dashboard payloads are camelCase; snake_case is accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AutoBuyParams(_Params):
    wallet_id: str
    min_liquidity: float = Field(ge=0)
    max_liquidity: float = Field(ge=0)
    buy_amount: float = Field(gt=0)
    slippage: float = Field(default=2.0, ge=0)
    rug_check_enabled: bool = False
    min_liquidity_locked: float = Field(default=0.0, ge=0)
    max_top10_holdings: float = Field(default=100.0, ge=0)

    @model_validator(mode="after")
    def _check_band(self) -> "AutoBuyParams":
        if self.max_liquidity < self.min_liquidity:
            raise ValueError("maxLiquidity must be >= minLiquidity")
        return self


class GridTarget(_Params):
    price_multiplier: float = Field(gt=0)
    sell_percent: float = Field(gt=0, le=100)


class GridSellingParams(_Params):
    position_id: str
    targets: List[GridTarget] = Field(min_length=1)
    slippage: float = Field(default=2.0, ge=0)

    @model_validator(mode="after")
    def _check_targets(self) -> "GridSellingParams":
        total = sum(t.sell_percent for t in self.targets)
        if total > 100 + 1e-9:
            raise ValueError(f"targets sell {total}% of the position, more than 100%")
        return self


class TrailingStopParams(_Params):
    position_id: str
    trail_percent: float = Field(gt=0, lt=100)
    activation_multiplier: Optional[float] = Field(default=None, gt=0)
    slippage: float = Field(default=2.0, ge=0)


class DcaParams(_Params):
    wallet_id: str
    token_address: str
    buy_amount: float = Field(gt=0)
    interval_hours: float = Field(gt=0)
    total_buys: int = Field(ge=1)
    slippage: float = Field(default=2.0, ge=0)


class AutoBuyConfig(BaseModel):
    type: Literal["AUTO_BUY_NEW_POOLS"]
    params: AutoBuyParams


class GridSellingConfig(BaseModel):
    type: Literal["GRID_SELLING"]
    params: GridSellingParams


class TrailingStopConfig(BaseModel):
    type: Literal["TRAILING_STOP"]
    params: TrailingStopParams


class DcaConfig(BaseModel):
    type: Literal["DCA"]
    params: DcaParams


StrategyConfig = Annotated[
    Union[AutoBuyConfig, GridSellingConfig, TrailingStopConfig, DcaConfig],
    Field(discriminator="type"),
]

_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(StrategyConfig)


def parse_strategy_config(raw: Any) -> Union[AutoBuyConfig, GridSellingConfig, TrailingStopConfig, DcaConfig]:
    if not isinstance(raw, dict):
        raise ValidationError("Strategy config must be an object")
    if not raw.get("type"):
        raise ValidationError("Strategy type is required")
    if raw["type"] not in STRATEGY_TYPES:
        raise ValidationError(f"Invalid strategy type: {raw['type']}")
    if not raw.get("params"):
        raise ValidationError("Strategy params are required")
    try:
        return _CONFIG_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid {raw['type']} params: {details}") from exc


@dataclass(slots=True)
class StrategyDeps:
    """Collaborators shared by every strategy instance."""

    executor: Any
    positions: Any
    feed: Any
    db: Any
    notifier: Any = None
    runtime: StrategyRuntimeConfig = None  # type: ignore[assignment]
    sleep: Optional[Callable[[float], Awaitable[None]]] = None
    clock: Optional[Callable[[], float]] = None

    def __post_init__(self) -> None:
        if self.runtime is None:
            self.runtime = StrategyRuntimeConfig()


@runtime_checkable
class IStrategy(Protocol):
    """Lifecycle contract every automation variant implements."""

    strategy_type: str

    async def prepare(self, strategy_id: str, params: BaseModel) -> None:
        """Load and check whatever the loop needs before it is registered."""
        ...

    async def execute(self, strategy_id: str, params: BaseModel) -> None:
        """Run the decision loop; returns when it completes or is stopped."""
        ...

    async def stop(self) -> None:
        ...

    def metrics_snapshot(self) -> Dict[str, Any]:
        ...
