"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import base64
import binascii
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .types import (
    AgentEngineConfig,
    ConfigError,
    CredentialsConfig,
    DEFAULT_FALLBACK_TEXT,
    DEFAULT_SCOPES,
    ProxyConfig,
    ServerConfig,
    SessionConfig,
)

CONFIG_FILENAMES = [
    "agent-proxy.yaml",
    "agent-proxy.yml",
    "agent-proxy.json",
]

SESSION_BACKENDS = ("redis", "memory")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _apply_env(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay the deployment environment variables onto a raw config dict."""
    raw = dict(raw)
    engine = dict(raw.get("agent_engine") or {})
    session = dict(raw.get("session") or {})
    creds = dict(raw.get("credentials") or {})

    if env.get("AGENT_ENGINE_ENDPOINT"):
        engine["endpoint"] = env["AGENT_ENGINE_ENDPOINT"]
    redis_url = env.get("UPSTASH_REDIS_URL") or env.get("REDIS_URL")
    if redis_url:
        session["redis_url"] = redis_url
    if env.get("SESSION_TTL_MINUTES"):
        try:
            session["ttl_seconds"] = int(env["SESSION_TTL_MINUTES"]) * 60
        except ValueError as e:
            raise ConfigError(
                f"SESSION_TTL_MINUTES must be an integer, got {env['SESSION_TTL_MINUTES']!r}"
            ) from e
    if env.get("GOOGLE_SERVICE_ACCOUNT_KEY_BASE64"):
        creds["service_account_key_base64"] = env["GOOGLE_SERVICE_ACCOUNT_KEY_BASE64"]
    if env.get("GOOGLE_APPLICATION_CREDENTIALS"):
        creds["service_account_file"] = env["GOOGLE_APPLICATION_CREDENTIALS"]

    raw["agent_engine"] = engine
    raw["session"] = session
    raw["credentials"] = creds
    return raw


def _build_config(raw: dict[str, Any]) -> ProxyConfig:
    """Build a ProxyConfig from a raw dict."""
    engine_raw = raw.get("agent_engine") or {}
    agent_engine = AgentEngineConfig(
        endpoint=str(engine_raw.get("endpoint", "")).rstrip("/"),
        connect_timeout=float(engine_raw.get("connect_timeout", 10.0)),
        read_timeout=float(engine_raw.get("read_timeout", 120.0)),
        stream_timeout_seconds=float(engine_raw.get("stream_timeout_seconds", 120.0)),
        fallback_text=engine_raw.get("fallback_text", DEFAULT_FALLBACK_TEXT),
    )

    session_raw = raw.get("session") or {}
    session = SessionConfig(
        backend=session_raw.get("backend", "redis"),
        redis_url=session_raw.get("redis_url", ""),
        ttl_seconds=int(session_raw.get("ttl_seconds", 3600)),
        key_prefix=session_raw.get("key_prefix", "session:"),
    )

    creds_raw = raw.get("credentials") or {}
    credentials = CredentialsConfig(
        service_account_key_base64=creds_raw.get("service_account_key_base64", ""),
        service_account_file=creds_raw.get("service_account_file", ""),
        static_token=creds_raw.get("static_token", ""),
        scopes=list(creds_raw.get("scopes") or DEFAULT_SCOPES),
        token_cache=bool(creds_raw.get("token_cache", False)),
    )

    server_raw = raw.get("server") or {}
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 3001)),
    )

    logging_raw = raw.get("logging") or {}

    return ProxyConfig(
        agent_engine=agent_engine,
        session=session,
        credentials=credentials,
        server=server,
        log_level=str(logging_raw.get("level", "INFO")).upper(),
    )


def decode_service_account_key(encoded: str) -> dict[str, Any]:
    """Decode base64-encoded service-account JSON into a dict."""
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        info = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ConfigError("Service account key is not valid base64 JSON") from e
    if not isinstance(info, dict):
        raise ConfigError("Service account key must decode to a JSON object")
    return info


def validate_config(config: ProxyConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.agent_engine.endpoint:
        errors.append("agent_engine.endpoint is required (or set AGENT_ENGINE_ENDPOINT)")
    elif not config.agent_engine.endpoint.startswith(("http://", "https://")):
        errors.append(f"agent_engine.endpoint must be an http(s) URL: {config.agent_engine.endpoint}")

    if config.agent_engine.stream_timeout_seconds <= 0:
        errors.append("agent_engine.stream_timeout_seconds must be > 0")

    if config.session.ttl_seconds <= 0:
        errors.append(f"session.ttl_seconds must be > 0, got {config.session.ttl_seconds}")

    if config.session.backend not in SESSION_BACKENDS:
        errors.append(
            f"session.backend must be one of {', '.join(SESSION_BACKENDS)}, "
            f"got '{config.session.backend}'"
        )
    elif config.session.backend == "redis" and not config.session.redis_url:
        errors.append("session.redis_url is required for the redis backend (or set UPSTASH_REDIS_URL)")

    creds = config.credentials
    sources = [s for s in (creds.service_account_key_base64, creds.service_account_file) if s]
    if not creds.static_token:
        if not sources:
            errors.append(
                "No credentials configured: set credentials.service_account_key_base64, "
                "credentials.service_account_file, or credentials.static_token"
            )
        elif len(sources) > 1:
            errors.append("Configure only one of service_account_key_base64 / service_account_file")
        elif creds.service_account_key_base64:
            try:
                decode_service_account_key(creds.service_account_key_base64)
            except ConfigError as e:
                errors.append(e.message)

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    env: Mapping[str, str] | None = None,
) -> ProxyConfig:
    """Load config from dict, explicit path, or auto-discover, then apply env overrides."""
    if env is None:
        env = os.environ

    if config_dict is not None:
        return _build_config(_apply_env(config_dict, env))

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config(_apply_env({}, env))

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(_apply_env(raw, env))
