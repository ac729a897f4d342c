from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

import httpx

from .config import AlertsConfig
from .db import Database
from .models import Alert


logger = logging.getLogger(__name__)


class EventStream:
    """Bounded in-memory event log consumed by the WebSocket relay."""

    def __init__(self, maxlen: int = 500) -> None:
        self._lock = asyncio.Lock()
        self._events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._seq = 0
        self._changed = asyncio.Event()

    async def add_event(self, event: Dict[str, Any]) -> None:
        async with self._lock:
            self._seq += 1
            self._events.append({"seq": self._seq, **event})
            self._changed.set()
            self._changed = asyncio.Event()

    async def get_events(self, limit: int = 50, after: int = 0) -> List[Dict[str, Any]]:
        async with self._lock:
            if limit <= 0:
                return []
            items = [e for e in self._events if e["seq"] > after]
            return items[-limit:]

    async def wait_for_events(self, after: int, timeout: float) -> List[Dict[str, Any]]:
        async with self._lock:
            changed = self._changed
            pending = [e for e in self._events if e["seq"] > after]
        if pending:
            return pending
        try:
            await asyncio.wait_for(changed.wait(), timeout)
        except asyncio.TimeoutError:
            return []
        return await self.get_events(limit=len(self._events), after=after)


class AlertManager:
    """Notification sink: event stream for the dashboard plus outbound channels."""

    def __init__(self, db: Database, config: AlertsConfig, stream: Optional[EventStream] = None) -> None:
        self._db = db
        self._config = config
        self._stream = stream or EventStream(config.stream_size)
        self._dedup: Dict[str, int] = {}
        self._pending: Set[asyncio.Task] = set()

    @property
    def stream(self) -> EventStream:
        return self._stream

    async def notify(self, strategy_id: Optional[str], event: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget user notification. Never raises."""
        now_ms = int(time.time() * 1000)
        try:
            await self._stream.add_event(
                {"type": event, "sid": strategy_id, "ts": now_ms, "data": payload}
            )
        except Exception:
            logger.exception("Stream event append failed (%s)", event)
        title = f"{event.upper()}[{strategy_id}]" if strategy_id else event.upper()
        try:
            message = json.dumps(payload, default=str)
        except (TypeError, ValueError):
            message = str(payload)
        await self.alert("INFO", title, message, strategy_id=strategy_id)

    async def alert(
        self,
        level: str,
        title: str,
        message: str,
        dedup_key: Optional[str] = None,
        strategy_id: Optional[str] = None,
    ) -> None:
        now_ms = int(time.time() * 1000)

        if dedup_key and self._config.dedup_ttl_ms > 0:
            last = self._dedup.get(dedup_key)
            if last is not None and (now_ms - last) < self._config.dedup_ttl_ms:
                return
            self._dedup[dedup_key] = now_ms

        full_message = f"{title}: {message}" if title else message

        if not self._config.enabled:
            await self._insert_alert("disabled", level, full_message, dedup_key, now_ms, strategy_id)
            return

        channels = 0
        if self._config.telegram.enabled:
            channels += 1
            self._spawn(self._send_telegram(full_message))
            await self._insert_alert("telegram", level, full_message, dedup_key, now_ms, strategy_id)

        if self._config.webhook.enabled:
            channels += 1
            self._spawn(self._send_webhook(level, title, message))
            await self._insert_alert("webhook", level, full_message, dedup_key, now_ms, strategy_id)

        if channels == 0:
            await self._insert_alert("none", level, full_message, dedup_key, now_ms, strategy_id)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _insert_alert(
        self,
        channel: str,
        level: str,
        message: str,
        dedup_key: Optional[str],
        now_ms: int,
        strategy_id: Optional[str],
    ) -> None:
        try:
            await self._db.insert_alert(
                Alert(
                    strategy_id=strategy_id,
                    timestamp=now_ms,
                    channel=channel,
                    level=level,
                    message=message,
                    dedup_key=dedup_key,
                    created_at=now_ms,
                )
            )
        except Exception:
            logger.exception("Insert alert failed")

    async def _send_telegram(self, message: str) -> bool:
        token = self._config.telegram.token
        chat_id = self._config.telegram.chat_id
        if not token or not chat_id:
            logger.warning("Telegram alert enabled but token/chat_id missing")
            return False
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        payload = {"chat_id": chat_id, "text": message}
        return await self._post_json(url, payload, "telegram")

    async def _send_webhook(self, level: str, title: str, message: str) -> bool:
        url = self._config.webhook.url
        if not url:
            logger.warning("Webhook alert enabled but url missing")
            return False
        payload = {"level": level, "title": title, "body": message}
        return await self._post_json(url, payload, "webhook")

    async def _post_json(self, url: str, payload: dict, channel: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
            return True
        except Exception:
            logger.exception("Alert send failed (%s)", channel)
            return False
