from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .alerts import EventStream
from .config import load_settings
from .errors import (
    GatewayError,
    InsufficientBalance,
    InvalidRequest,
    NotFound,
    RateLimitExceeded,
    TradingError,
    ValidationError,
)
from .models import StrategyRecord, Wallet


logger = logging.getLogger(__name__)


settings = load_settings()
app = FastAPI(title="soltrade", root_path=settings.api.base_path or "")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

event_stream = EventStream(settings.alerts.stream_size)

# Injected from main
runtime_engine = None
ws_event_clients = 0


def set_runtime(engine) -> None:
    global runtime_engine
    runtime_engine = engine


def _engine():
    if runtime_engine is None:
        raise HTTPException(status_code=503, detail="runtime not ready")
    return runtime_engine


def status_for_error(exc: TradingError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, RateLimitExceeded):
        return 429
    if isinstance(exc, GatewayError):
        return 502
    if isinstance(exc, (ValidationError, InvalidRequest, InsufficientBalance)):
        return 400
    return 500


@app.exception_handler(TradingError)
async def _trading_error_handler(request: Request, exc: TradingError) -> JSONResponse:
    status = status_for_error(exc)
    if status >= 500:
        logger.error("Request %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


# ---------------------- payloads ----------------------


class StrategyCreate(BaseModel):
    user_id: str
    name: str
    description: Optional[str] = None
    config: Dict[str, Any]


class StrategyUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class OrderRequest(BaseModel):
    wallet_id: str
    token_address: str
    amount: float = Field(gt=0)
    slippage: Optional[float] = Field(default=None, ge=0)


class ClosePositionRequest(BaseModel):
    exit_price: Optional[float] = Field(default=None, gt=0)


class WalletCreate(BaseModel):
    id: str
    user_id: str
    name: str
    public_key: str
    gateway_wallet_id: Optional[str] = None
    balance: float = 0.0


class JobRequest(BaseModel):
    name: str
    strategy_id: str


def _strategy_to_dict(s: StrategyRecord, running: bool) -> Dict[str, Any]:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "name": s.name,
        "description": s.description,
        "config": s.config,
        "is_active": s.is_active,
        "running": running,
        "created_at": s.created_at,
        "updated_at": s.updated_at,
    }


def _wallet_to_dict(w: Wallet) -> Dict[str, Any]:
    return {
        "id": w.id,
        "user_id": w.user_id,
        "name": w.name,
        "public_key": w.public_key,
        "gateway_wallet_id": w.gateway_wallet_id,
        "balance": w.balance,
        "updated_at": w.updated_at,
    }


# ---------------------- strategies ----------------------


@app.get("/api/strategies")
async def get_strategies(user_id: Optional[str] = Query(None)) -> Dict[str, Any]:
    engine = _engine()
    items = await engine.strategies.list(user_id=user_id)
    return {"items": [_strategy_to_dict(s, engine.supervisor.is_running(s.id)) for s in items]}


@app.post("/api/strategies")
async def create_strategy(body: StrategyCreate) -> Dict[str, Any]:
    engine = _engine()
    record = await engine.strategies.create(body.user_id, body.name, body.config, body.description)
    return _strategy_to_dict(record, False)


@app.get("/api/strategies/{strategy_id}")
async def get_strategy(strategy_id: str) -> Dict[str, Any]:
    engine = _engine()
    record = await engine.strategies.get(strategy_id)
    return _strategy_to_dict(record, engine.supervisor.is_running(strategy_id))


@app.put("/api/strategies/{strategy_id}")
async def update_strategy(strategy_id: str, body: StrategyUpdate) -> Dict[str, Any]:
    engine = _engine()
    record = await engine.strategies.update(
        strategy_id, name=body.name, description=body.description, config=body.config
    )
    return _strategy_to_dict(record, False)


@app.delete("/api/strategies/{strategy_id}")
async def delete_strategy(strategy_id: str) -> Dict[str, Any]:
    await _engine().strategies.delete(strategy_id)
    return {"deleted": strategy_id}


@app.post("/api/strategies/{strategy_id}/start")
async def start_strategy(strategy_id: str) -> Dict[str, Any]:
    record = await _engine().supervisor.start(strategy_id)
    return _strategy_to_dict(record, True)


@app.post("/api/strategies/{strategy_id}/stop")
async def stop_strategy(strategy_id: str) -> Dict[str, Any]:
    record = await _engine().supervisor.stop(strategy_id)
    return _strategy_to_dict(record, False)


@app.get("/api/strategies/{strategy_id}/metrics")
async def get_strategy_metrics(strategy_id: str) -> Dict[str, Any]:
    engine = _engine()
    metrics = await engine.supervisor.get_metrics(strategy_id)
    payload = metrics.to_dict()
    payload["runtime"] = engine.supervisor.runtime_state().get(strategy_id)
    return payload


@app.post("/api/jobs", status_code=202)
async def submit_job(req: JobRequest) -> Dict[str, Any]:
    engine = _engine()
    job = await engine.submit_job(req.name, req.strategy_id)
    return {"name": job.name, "strategy_id": job.strategy_id, "queued": engine.jobs.qsize()}


# ---------------------- positions ----------------------


@app.get("/api/positions")
async def get_positions(
    wallet_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
) -> Dict[str, Any]:
    items = await _engine().positions.list_positions(wallet_id=wallet_id, status=status, limit=limit)
    return {"items": [p.to_dict() for p in items]}


@app.get("/api/positions/{position_id}")
async def get_position(position_id: str) -> Dict[str, Any]:
    position = await _engine().positions.get_position(position_id)
    return position.to_dict()


@app.post("/api/positions/{position_id}/close")
async def close_position(position_id: str, body: ClosePositionRequest) -> Dict[str, Any]:
    engine = _engine()
    exit_price = body.exit_price
    if exit_price is None:
        position = await engine.positions.get_position(position_id)
        exit_price = await engine.positions.get_current_price(position.token_address)
        if exit_price <= 0:
            raise InvalidRequest(f"No current price available for {position.token_address}")
    closed = await engine.positions.close_position(position_id, exit_price)
    return closed.to_dict()


# ---------------------- orders ----------------------


@app.post("/api/orders/buy")
async def buy(body: OrderRequest) -> Dict[str, Any]:
    engine = _engine()
    slippage = body.slippage if body.slippage is not None else engine.settings.executor.default_slippage
    order = await engine.executor.execute_buy(body.wallet_id, body.token_address, body.amount, slippage)
    return order.to_dict()


@app.post("/api/orders/sell")
async def sell(body: OrderRequest) -> Dict[str, Any]:
    engine = _engine()
    slippage = body.slippage if body.slippage is not None else engine.settings.executor.default_slippage
    order = await engine.executor.execute_sell(body.wallet_id, body.token_address, body.amount, slippage)
    return order.to_dict()


@app.get("/api/transactions")
async def get_transactions(
    wallet_id: Optional[str] = Query(None),
    since: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
) -> Dict[str, Any]:
    rows = await _engine().db.get_transactions(wallet_id=wallet_id, limit=limit, since=since)
    return {"items": [dict(r) for r in rows]}


# ---------------------- wallets ----------------------


@app.post("/api/wallets")
async def register_wallet(body: WalletCreate) -> Dict[str, Any]:
    engine = _engine()
    now_ms = int(time.time() * 1000)
    wallet = Wallet(
        id=body.id,
        user_id=body.user_id,
        name=body.name,
        public_key=body.public_key,
        gateway_wallet_id=body.gateway_wallet_id,
        balance=body.balance,
        created_at=now_ms,
        updated_at=now_ms,
    )
    await engine.db.insert_wallet(wallet)
    return _wallet_to_dict(wallet)


@app.get("/api/wallets/{wallet_id}")
async def get_wallet(wallet_id: str) -> Dict[str, Any]:
    wallet = await _engine().db.get_wallet(wallet_id)
    if wallet is None:
        raise NotFound("Wallet", wallet_id)
    return _wallet_to_dict(wallet)


@app.post("/api/wallets/{wallet_id}/refresh-balance")
async def refresh_wallet_balance(wallet_id: str) -> Dict[str, Any]:
    wallet = await _engine().refresh_wallet_balance(wallet_id)
    return _wallet_to_dict(wallet)


# ---------------------- prices & events ----------------------


@app.post("/api/prices/{token_address}/watch")
async def watch_token(token_address: str) -> Dict[str, Any]:
    engine = _engine()
    added = await engine.watch_token(token_address)
    return {"token_address": token_address, "added": added, "watched": engine.watched_tokens()}


@app.delete("/api/prices/{token_address}/watch")
async def unwatch_token(token_address: str) -> Dict[str, Any]:
    engine = _engine()
    removed = await engine.unwatch_token(token_address)
    return {"token_address": token_address, "removed": removed, "watched": engine.watched_tokens()}


@app.get("/api/events")
async def get_events(
    limit: int = Query(50, ge=1, le=500),
    after: int = Query(0, ge=0),
    strategy: Optional[str] = Query(None),
) -> Dict[str, Any]:
    events = await event_stream.get_events(limit=limit, after=after)
    if strategy:
        events = [e for e in events if e.get("sid") in (None, strategy)]
    return {"items": events}


@app.get("/api/debug/state")
async def debug_state() -> Dict[str, Any]:
    state = _engine().runtime_state()
    state["ws_event_clients"] = ws_event_clients
    return state


@app.websocket("/ws/events")
async def ws_events(websocket: WebSocket) -> None:
    global ws_event_clients
    await websocket.accept()
    ws_event_clients += 1
    try:
        sid = websocket.query_params.get("strategy")
        after = int(websocket.query_params.get("after") or 0)
        while True:
            events: List[Dict[str, Any]] = await event_stream.wait_for_events(after, timeout=15.0)
            if not events:
                await websocket.send_json({"type": "heartbeat", "ts": int(time.time() * 1000)})
                continue
            after = events[-1]["seq"]
            if sid:
                events = [e for e in events if e.get("sid") in (None, sid)]
            for event in events:
                await websocket.send_json(event)
    except WebSocketDisconnect:
        return
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("WS events error")
        try:
            await websocket.close()
        except Exception:
            pass
    finally:
        ws_event_clients = max(0, ws_event_clients - 1)
