from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from ..db import Database
from ..errors import InvalidRequest, NotFound
from ..models import StrategyRecord
from ..strategy import parse_strategy_config


logger = logging.getLogger(__name__)


def normalize_config(raw: Any) -> Dict[str, Any]:
    """Validate a raw ``{type, params}`` payload and return its stored form."""
    config = parse_strategy_config(raw)
    return {"type": config.type, "params": config.params.model_dump(by_alias=True)}


class StrategyService:
    """Strategy record CRUD. Records are immutable while they run."""

    def __init__(self, db: Database, supervisor=None) -> None:
        self._db = db
        self._supervisor = supervisor

    async def create(
        self,
        user_id: str,
        name: str,
        config: Any,
        description: Optional[str] = None,
    ) -> StrategyRecord:
        if not name:
            raise InvalidRequest("Strategy name is required")
        stored = normalize_config(config)
        now_ms = int(time.time() * 1000)
        record = StrategyRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=name,
            description=description,
            config=stored,
            is_active=False,
            created_at=now_ms,
            updated_at=now_ms,
        )
        await self._db.insert_strategy(record)
        logger.info("Created strategy %s (%s) for user %s", record.id, stored["type"], user_id)
        return record

    async def get(self, strategy_id: str) -> StrategyRecord:
        record = await self._db.get_strategy(strategy_id)
        if record is None:
            raise NotFound("Strategy", strategy_id)
        return record

    async def list(self, user_id: Optional[str] = None) -> List[StrategyRecord]:
        return await self._db.get_strategies(user_id=user_id)

    def _is_live(self, record: StrategyRecord) -> bool:
        if record.is_active:
            return True
        return self._supervisor is not None and self._supervisor.is_running(record.id)

    async def update(
        self,
        strategy_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        config: Any = None,
    ) -> StrategyRecord:
        record = await self.get(strategy_id)
        if self._is_live(record):
            raise InvalidRequest("Cannot update active strategy. Stop it first.")
        if name is not None:
            if not name:
                raise InvalidRequest("Strategy name is required")
            record.name = name
        if description is not None:
            record.description = description
        if config is not None:
            record.config = normalize_config(config)
        record.updated_at = int(time.time() * 1000)
        await self._db.update_strategy(record)
        return record

    async def delete(self, strategy_id: str) -> None:
        record = await self.get(strategy_id)
        if self._is_live(record):
            raise InvalidRequest("Cannot delete active strategy. Stop it first.")
        await self._db.delete_strategy(strategy_id)
        logger.info("Deleted strategy %s", strategy_id)
