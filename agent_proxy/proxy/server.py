"""HTTP front end for the agent session proxy.

Accepts ``POST /api/chat`` with ``{userId, message}``, resolves or creates a
remote agent session for the user, runs a streaming query against the agent
engine and answers with the aggregated text.

Usage:
    agent-proxy -c agent-proxy.yaml serve --port 3001
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import decode_service_account_key, load_config
from ..core.credentials import (
    CachingCredentialProvider,
    CredentialProvider,
    ServiceAccountCredentialProvider,
    StaticCredentialProvider,
)
from ..core.gateway import AgentGateway
from ..core.handler import ChatHandler
from ..core.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from ..types import ConfigError, ProxyConfig, ProxyError
from .metrics import ProxyMetrics

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Component construction
# ---------------------------------------------------------------------------

def build_session_store(config: ProxyConfig) -> SessionStore:
    session = config.session
    if session.backend == "memory":
        return InMemorySessionStore(session.ttl_seconds, key_prefix=session.key_prefix)
    if not session.redis_url:
        raise ConfigError("session.redis_url is required for the redis backend")
    return RedisSessionStore(
        session.redis_url, session.ttl_seconds, key_prefix=session.key_prefix,
    )


def build_credential_provider(config: ProxyConfig) -> CredentialProvider:
    creds = config.credentials
    if creds.static_token:
        logger.warning("Using a static bearer token; do not use in production")
        return StaticCredentialProvider(creds.static_token)

    if creds.service_account_key_base64:
        provider = ServiceAccountCredentialProvider(
            info=decode_service_account_key(creds.service_account_key_base64),
            scopes=creds.scopes,
        )
    elif creds.service_account_file:
        provider = ServiceAccountCredentialProvider(
            key_file=creds.service_account_file, scopes=creds.scopes,
        )
    else:
        raise ConfigError("No service account credentials configured")

    if creds.token_cache:
        return CachingCredentialProvider(provider)
    return provider


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _unwrap_body(payload: Any) -> Any:
    """Accept ``{userId, message}`` either bare or under one ``body`` key."""
    if isinstance(payload, dict) and isinstance(payload.get("body"), dict):
        return payload["body"]
    return payload


def _error_response(
    error: str, status_code: int = 500, details: str | None = None,
) -> JSONResponse:
    content: dict[str, str] = {"error": error}
    if details:
        content["details"] = details
    return JSONResponse(content=content, status_code=status_code)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(
    config: ProxyConfig | None = None,
    config_path: str | None = None,
    *,
    store: SessionStore | None = None,
    credentials: CredentialProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    metrics: ProxyMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI proxy application.

    Args:
        config: Prebuilt configuration; loaded from *config_path* if None.
        config_path: Path to an agent-proxy config file.
        store: Session store override (otherwise built from config).
        credentials: Credential provider override (otherwise built from config).
        http_client: Outbound client override, closed on shutdown either way.
        metrics: Shared metrics collector.
    """
    if config is None:
        config = load_config(config_path)

    engine_cfg = config.agent_engine
    store = store or build_session_store(config)
    credentials = credentials or build_credential_provider(config)
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(engine_cfg.read_timeout, connect=engine_cfg.connect_timeout),
    )
    metrics = metrics or ProxyMetrics()

    handler = ChatHandler(
        store=store,
        credentials=credentials,
        gateway=AgentGateway(engine_cfg.endpoint, client),
        stream_timeout_seconds=engine_cfg.stream_timeout_seconds,
        fallback_text=engine_cfg.fallback_text,
    )

    logger.info(
        "Proxy ready — endpoint=%s, session backend=%s, ttl=%ds",
        engine_cfg.endpoint, config.session.backend, config.session.ttl_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await client.aclose()
        await store.close()

    app = FastAPI(title="agent-session-proxy", lifespan=lifespan)
    app.state.handler = handler
    app.state.metrics = metrics

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    async def get_metrics() -> dict:
        return metrics.snapshot()

    @app.post("/api/chat")
    async def chat(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            return _error_response("Request body must be JSON", status_code=400)

        body = _unwrap_body(payload)
        if not isinstance(body, dict):
            return _error_response("Request body must be a JSON object", status_code=400)
        user_id = body.get("userId")
        message = body.get("message")
        if not isinstance(user_id, str) or not user_id:
            return _error_response("userId is required", status_code=400)
        if not isinstance(message, str):
            return _error_response("message is required", status_code=400)

        logger.info("Received request: user=%s message=%r", user_id, message[:50])
        t_start = time.monotonic()
        try:
            result = await handler.handle(user_id, message)
        except ProxyError as e:
            logger.error("Error in /api/chat (%s): %s", type(e).__name__, e.message)
            metrics.record({
                "type": "chat",
                "user_id": user_id,
                "error": type(e).__name__,
                "total_ms": round((time.monotonic() - t_start) * 1000, 1),
            })
            return _error_response(e.message, details=e.details)
        except Exception:
            logger.exception("Unexpected error in /api/chat")
            metrics.record({"type": "chat", "user_id": user_id, "error": "internal"})
            return _error_response("Internal error")

        metrics.record({
            "type": "chat",
            "user_id": user_id,
            "session_created": result.created_session,
            "complete": result.complete,
            "chars": len(result.text),
            "upstream_ms": result.upstream_ms,
            "total_ms": round((time.monotonic() - t_start) * 1000, 1),
        })
        return {"text": result.text, "sessionId": result.session_id}

    return app
