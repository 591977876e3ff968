"""agent-session-proxy: per-user sessions and stream aggregation for a remote agent engine."""

from .config import load_config, validate_config
from .types import (
    AggregationResult,
    AuthError,
    ChatResult,
    ChatState,
    ProxyConfig,
    ProxyError,
    ResponseChunk,
    SessionCreationError,
    SessionStoreError,
    UpstreamTransportError,
)

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "validate_config",
    "AggregationResult",
    "AuthError",
    "ChatResult",
    "ChatState",
    "ProxyConfig",
    "ProxyError",
    "ResponseChunk",
    "SessionCreationError",
    "SessionStoreError",
    "UpstreamTransportError",
]
