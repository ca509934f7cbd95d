from __future__ import annotations

import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

# record attributes copied into the JSON line when a caller passes them via ``extra=``
CONTEXT_FIELDS = ("method", "path", "status", "duration_ms", "user_id", "order_number")

_request_id: ContextVar[str] = ContextVar("request_id", default="")

access_logger = logging.getLogger("posbill.access")


def get_request_id() -> str:
    rid = _request_id.get()
    if not rid:
        rid = uuid.uuid4().hex
        _request_id.set(rid)
    return rid


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and write one access line when it finishes."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.header_name) or uuid.uuid4().hex
        token = _request_id.set(rid)
        started = time.perf_counter()
        try:
            response: Response = await call_next(request)
            response.headers.setdefault(self.header_name, rid)
            access_logger.info(
                "%s %s -> %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return response
        finally:
            _request_id.reset(token)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": _request_id.get() or None,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_json_logging(level: Optional[str] = None) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(lvl)
