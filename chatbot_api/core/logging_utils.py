import json
import logging
import time
import traceback
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Metadatos del request actual (seguro para async)
request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})


class StructuredLogger:
    """Logger JSON de una línea por evento, con el contexto del request mezclado."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, extra: Optional[Dict[str, Any]] = None, exc_info: Optional[BaseException] = None):
        if not self.logger.isEnabledFor(level):
            return
        payload: Dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "level": logging.getLevelName(level),
            "logger": self.logger.name,
            "message": msg,
        }
        ctx = request_context.get()
        if ctx:
            payload.update(ctx)
        if extra:
            payload.update(extra)
        if exc_info:
            payload["exception"] = {
                "type": exc_info.__class__.__name__,
                "message": str(exc_info),
                "traceback": "".join(traceback.format_exception(type(exc_info), exc_info, exc_info.__traceback__)),
            }
        self.logger.log(level, json.dumps(payload, default=str, ensure_ascii=False))

    def debug(self, msg: str, **kw):
        self._log(logging.DEBUG, msg, **kw)

    def info(self, msg: str, **kw):
        self._log(logging.INFO, msg, **kw)

    def warning(self, msg: str, **kw):
        self._log(logging.WARNING, msg, **kw)

    def error(self, msg: str, **kw):
        self._log(logging.ERROR, msg, **kw)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or f"{int(time.time() * 1000)}-{id(request)}"
        ctx = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }
        token = request_context.set(ctx)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            get_logger("http").info("Request completed", extra={
                "status_code": response.status_code,
                "process_time_ms": round((time.perf_counter() - start) * 1000, 2),
            })
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_context.reset(token)


def setup_logging(app: FastAPI, level: str = "INFO") -> None:
    app.add_middleware(RequestContextMiddleware)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(message)s", handlers=[logging.StreamHandler()])
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
