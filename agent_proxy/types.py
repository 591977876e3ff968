"""All dataclasses, enums, and error types for agent-session-proxy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


DEFAULT_FALLBACK_TEXT = "no response"
DEFAULT_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
TERMINAL_FINISH_REASON = "STOP"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass
class SessionRecord:
    """A cached ``user_id -> session_id`` mapping."""
    user_id: str
    session_id: str
    expires_at: float  # monotonic deadline (in-memory) or epoch seconds (redis)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@dataclass
class ContentPart:
    text: str = ""
    thought: bool = False


@dataclass
class ResponseChunk:
    """One structured unit parsed from one line of a stream_query response."""
    parts: list[ContentPart] | None = None
    finish_reason: str | None = None
    raw: dict = field(default_factory=dict)

    def visible_text(self) -> str:
        """Concatenated text of the non-thought parts, in order."""
        if not self.parts:
            return ""
        return "".join(p.text for p in self.parts if p.text and not p.thought)


@dataclass
class AggregationState:
    buffer: str = ""
    accumulated_text: str = ""
    is_complete: bool = False


@dataclass
class AggregationResult:
    text: str
    complete: bool = False
    chunks: int = 0
    malformed: int = 0


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatState(Enum):
    RESOLVING_SESSION = "resolving_session"
    CREATING_SESSION = "creating_session"
    QUERYING = "querying"
    AGGREGATING = "aggregating"
    RESPONDING = "responding"
    FAILED = "failed"


@dataclass
class ChatResult:
    text: str
    session_id: str
    created_session: bool = False
    complete: bool = False
    upstream_ms: float = 0.0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ProxyError(Exception):
    """Base for every failure the chat route maps to a 500."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthError(ProxyError):
    """Bearer token acquisition failed."""


class SessionCreationError(ProxyError):
    """The remote agent did not return a usable session id."""


class SessionStoreError(ProxyError):
    """The backing session cache could not be reached."""


class UpstreamTransportError(ProxyError):
    def __init__(
        self,
        message: str,
        details: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class MalformedChunkError(ProxyError):
    """A single streamed line could not be parsed. Recovered locally."""


class ConfigError(ProxyError):
    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class AgentEngineConfig:
    endpoint: str = ""
    connect_timeout: float = 10.0
    read_timeout: float = 120.0
    stream_timeout_seconds: float = 120.0
    fallback_text: str = DEFAULT_FALLBACK_TEXT


@dataclass
class SessionConfig:
    backend: str = "redis"  # "redis" or "memory"
    redis_url: str = ""
    ttl_seconds: int = 3600
    key_prefix: str = "session:"


@dataclass
class CredentialsConfig:
    service_account_key_base64: str = ""
    service_account_file: str = ""
    static_token: str = ""  # dev only, bypasses google-auth
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    token_cache: bool = False


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3001


@dataclass
class ProxyConfig:
    agent_engine: AgentEngineConfig = field(default_factory=AgentEngineConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = "INFO"
