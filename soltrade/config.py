from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseModel):
    env: str = "dev"
    log_level: str = "INFO"


class StorageConfig(BaseModel):
    sqlite_path: str = "./db/soltrade.db"


class GatewayConfig(BaseModel):
    api_url: str = "https://api.sniperoo.app"
    api_key: str = ""
    timeout_s: float = 30.0
    max_retries: int = 3
    retry_delay_ms: int = 1000
    backoff_multiplier: float = 2.0


class WsReconnectConfig(BaseModel):
    max_retries: int = 5  # 0 means infinite
    base_delay_ms: int = 5000
    max_delay_ms: int = 60000


class MarketConfig(BaseModel):
    rest_base: str = "https://api.helius.xyz/v0"
    ws_url: str = "wss://api.helius.xyz/"
    api_key: str = ""
    pool_program_id: str = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1xf"
    timeout_s: float = 10.0
    ws_reconnect: WsReconnectConfig = Field(default_factory=WsReconnectConfig)


class ExecutorConfig(BaseModel):
    max_trades_per_window: int = 10
    window_seconds: float = 60.0
    default_slippage: float = 2.0


class PositionsConfig(BaseModel):
    price_cache_ttl_s: float = 5.0
    price_refresh_interval_s: float = 10.0


class TrackerConfig(BaseModel):
    poll_interval_s: float = 5.0


class StrategyRuntimeConfig(BaseModel):
    grid_check_interval_s: float = 10.0
    grid_timeout_s: float = 30 * 24 * 3600.0
    trailing_check_interval_s: float = 5.0
    trailing_timeout_s: float = 30 * 24 * 3600.0


class TelegramAlertConfig(BaseModel):
    enabled: bool = False
    token: str = ""
    chat_id: str = ""


class WebhookAlertConfig(BaseModel):
    enabled: bool = False
    url: str = ""


class AlertsConfig(BaseModel):
    enabled: bool = True
    dedup_ttl_ms: int = 0
    stream_size: int = 500
    telegram: TelegramAlertConfig = Field(default_factory=TelegramAlertConfig)
    webhook: WebhookAlertConfig = Field(default_factory=WebhookAlertConfig)


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    base_path: str = ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    market: MarketConfig = Field(default_factory=MarketConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    positions: PositionsConfig = Field(default_factory=PositionsConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    strategies: StrategyRuntimeConfig = Field(default_factory=StrategyRuntimeConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("executor")
    @classmethod
    def _validate_executor(cls, v: ExecutorConfig) -> ExecutorConfig:
        if v.max_trades_per_window < 0:
            raise ValueError("executor.max_trades_per_window must be >= 0")
        if v.window_seconds <= 0:
            raise ValueError("executor.window_seconds must be > 0")
        return v

    @field_validator("positions")
    @classmethod
    def _validate_positions(cls, v: PositionsConfig) -> PositionsConfig:
        if v.price_cache_ttl_s < 0:
            raise ValueError("positions.price_cache_ttl_s must be >= 0")
        if v.price_refresh_interval_s <= 0:
            raise ValueError("positions.price_refresh_interval_s must be > 0")
        return v

    @field_validator("tracker")
    @classmethod
    def _validate_tracker(cls, v: TrackerConfig) -> TrackerConfig:
        if v.poll_interval_s <= 0:
            raise ValueError("tracker.poll_interval_s must be > 0")
        return v

    @field_validator("strategies")
    @classmethod
    def _validate_strategies(cls, v: StrategyRuntimeConfig) -> StrategyRuntimeConfig:
        for name in ("grid_check_interval_s", "grid_timeout_s", "trailing_check_interval_s", "trailing_timeout_s"):
            if getattr(v, name) <= 0:
                raise ValueError(f"strategies.{name} must be > 0")
        return v


def load_settings(config_path: Optional[str] = None) -> Settings:
    path = Path(config_path or os.environ.get("SOLTRADE_CONFIG", "./configs/config.yaml"))
    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
        for k, v in src.items():
            if isinstance(v, dict) and isinstance(dst.get(k), dict):
                deep_update(dst[k], v)
            else:
                dst[k] = v
        return dst

    def env_overrides() -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        valid_roots = set(Settings.model_fields.keys())
        for key, value in os.environ.items():
            if "__" not in key:
                continue
            parts = [p.strip().lower() for p in key.split("__") if p.strip()]
            if not parts or parts[0] not in valid_roots:
                continue
            cur = out
            for part in parts[:-1]:
                nxt = cur.get(part)
                if not isinstance(nxt, dict):
                    nxt = {}
                    cur[part] = nxt
                cur = nxt
            cur[parts[-1]] = value
        return out

    merged = deep_update(data, env_overrides())
    return Settings(**merged)
