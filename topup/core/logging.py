# topup/core/logging.py
"""
Centralized logging for the top-up service.

Features:
- Stdlib logging + structlog (JSON in prod, dev console otherwise).
- Sensitive fields redaction.
- Context (request_id, user_id, client_ip) via contextvars.
- FastAPI/ASGI middleware for request context & access logs.
- Audit logger for billing state changes.

Env knobs (via settings):
  LOG_LEVEL=INFO
  LOG_FORMAT=json|text
  ENVIRONMENT=production|development|test
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Dict, Optional, Tuple

import structlog

from topup.core.config import settings

# ---------- Context vars ----------
_ctx_request_id: ContextVar[str] = ContextVar("request_id", default="")
_ctx_user_id: ContextVar[str] = ContextVar("user_id", default="")
_ctx_client_ip: ContextVar[str] = ContextVar("client_ip", default="")

_CONFIGURED = False

# ---------- Secrets redaction ----------
_SECRET_KEYS = ("secret", "password", "token", "dsn", "api_key", "authorization", "signature")


def _mask_secret_value(v: Any) -> Any:
    s = str(v)
    if len(s) <= 6:
        return "***"
    return s[:3] + "***" + s[-3:]


def redact_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        out: Dict[str, Any] = {}
        for k, v in data.items():
            lk = str(k).lower()
            if any(x in lk for x in _SECRET_KEYS) and v is not None:
                out[k] = _mask_secret_value(v)
            else:
                out[k] = redact_secrets(v)
        return out
    if isinstance(data, list):
        return [redact_secrets(v) for v in data]
    if isinstance(data, tuple):
        return tuple(redact_secrets(v) for v in data)
    return data


# ---------- structlog processors ----------
def _inject_context(_, __, event_dict):
    rid = _ctx_request_id.get()
    uid = _ctx_user_id.get()
    cip = _ctx_client_ip.get()
    if rid:
        event_dict["request_id"] = rid
    if uid:
        event_dict["user_id"] = uid
    if cip:
        event_dict["client_ip"] = cip
    return event_dict


def _redact_processor(_, __, event_dict):
    return redact_secrets(event_dict)


def _add_app(_, __, event_dict):
    event_dict["app"] = settings.PROJECT_NAME
    event_dict["version"] = settings.VERSION
    return event_dict


def _configure_structlog() -> None:
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_context,
        _redact_processor,
        _add_app,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    use_json = settings.is_production or settings.LOG_FORMAT.lower() == "json"
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ---------- Public API ----------
def setup_logging() -> None:
    """Configure stdlib root logging and structlog once per process."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    _configure_structlog()

    lg = get_logger(__name__)
    lg.info("Logging initialized", level=logging.getLevelName(level))
    lg.debug("settings", **settings.dump_settings_safe())

    _CONFIGURED = True


def get_logger(name: str):
    return structlog.get_logger(name)


# ---------- Context helpers ----------
@contextmanager
def bound_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    client_ip: Optional[str] = None,
):
    tokens: list[Tuple[ContextVar[str], Token]] = []
    if request_id is not None:
        tokens.append((_ctx_request_id, _ctx_request_id.set(request_id)))
    if user_id is not None:
        tokens.append((_ctx_user_id, _ctx_user_id.set(str(user_id))))
    if client_ip is not None:
        tokens.append((_ctx_client_ip, _ctx_client_ip.set(client_ip)))
    try:
        yield
    finally:
        for var, tok in reversed(tokens):
            var.reset(tok)


def get_request_id() -> str:
    return _ctx_request_id.get()


# ---------- Audit Logger ----------
class AuditLogger:
    def __init__(self):
        self.logger = get_logger("audit")

    def log_data_change(
        self,
        user_id: int | str,
        action: str,
        resource_type: str,
        resource_id: str | int,
        changes: dict[str, Any],
    ) -> None:
        self.logger.info(
            "data_change",
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            changes=redact_secrets(changes),
        )

    def log_security_event(self, event: str, details: dict[str, Any]) -> None:
        self.logger.warning("security_event", event=event, **redact_secrets(details))


audit_logger = AuditLogger()


# ---------- FastAPI middleware ----------
class LoggingContextMiddleware:
    """
    - Generates/reads X-Request-ID
    - Binds request context
    - Logs start/end with duration and status
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        headers = {k.decode().lower(): v.decode() for k, v in scope.get("headers", [])}
        request_id = headers.get("x-request-id") or headers.get("x-correlation-id") or str(uuid.uuid4())
        client = scope.get("client") or ("", 0)
        client_ip = client[0] if isinstance(client, (list, tuple)) and client else ""
        path = scope.get("path", "")
        method = scope.get("method", "")

        start = time.perf_counter()
        status_code_holder = {"code": 500}

        async def _send(message):
            if message["type"] == "http.response.start":
                status_code_holder["code"] = message.get("status", 200)
                message.setdefault("headers", [])
                message["headers"] = list(message["headers"]) + [(b"x-request-id", request_id.encode())]
            await send(message)

        with bound_context(request_id=request_id, client_ip=client_ip):
            lg = get_logger("http")
            lg.info("request_start", method=method, path=path)
            try:
                await self.app(scope, receive, _send)
            finally:
                dur_ms = (time.perf_counter() - start) * 1000.0
                lg.info(
                    "request_end",
                    method=method,
                    path=path,
                    status=status_code_holder["code"],
                    duration_ms=round(dur_ms, 2),
                )


__all__ = [
    "setup_logging",
    "get_logger",
    "bound_context",
    "get_request_id",
    "redact_secrets",
    "audit_logger",
    "AuditLogger",
    "LoggingContextMiddleware",
]
