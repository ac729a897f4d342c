from __future__ import annotations

import logging

from fastapi import FastAPI

from .api_server import app as api_app, event_stream, set_runtime, settings
from .runtime import RuntimeEngine


logging.basicConfig(
    level=getattr(logging, settings.app.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = RuntimeEngine(settings, stream=event_stream)
app: FastAPI = api_app


@app.on_event("startup")
async def _startup() -> None:
    await engine.start()
    set_runtime(engine)


@app.on_event("shutdown")
async def _shutdown() -> None:
    set_runtime(None)
    await engine.stop()
