import json
import logging
import time
from typing import Callable
from fastapi import Request
from .config import settings

def level_from_name(name: str) -> int:
    level = logging.getLevelName((name or "").strip().upper())
    return level if isinstance(level, int) else logging.INFO

logger = logging.getLogger("facegate")
logger.setLevel(level_from_name(settings.log_level))
_handler = logging.StreamHandler()
_formatter = logging.Formatter("%(message)s")
_handler.setFormatter(_formatter)
logger.addHandler(_handler)

def log_event(event: str, level: int = logging.INFO, **fields) -> None:
    record = {"event": event}
    record.update(fields)
    logger.log(level, json.dumps(record, default=str))

async def log_middleware(request: Request, call_next: Callable):
    t0 = time.perf_counter()
    response = await call_next(request)
    latency_ms = (time.perf_counter() - t0) * 1000
    record = {
        "route": request.url.path,
        "status": response.status_code,
        "latency_ms": round(latency_ms, 2),
        "method": request.method,
    }
    session_id = request.headers.get("x-session-id")
    if session_id:
        record["session_id"] = session_id
    logger.info(json.dumps(record))
    return response
