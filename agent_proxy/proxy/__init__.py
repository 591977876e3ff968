from .server import build_credential_provider, build_session_store, create_app
from .metrics import ProxyMetrics

__all__ = [
    "create_app",
    "build_credential_provider",
    "build_session_store",
    "ProxyMetrics",
]
