"""Bearer token providers for calls to the remote agent service."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import google.auth.exceptions
import google.auth.transport.requests
from google.oauth2 import service_account

from ..types import AuthError, DEFAULT_SCOPES

logger = logging.getLogger(__name__)

# Refresh a cached token this many seconds before it actually expires.
EXPIRY_MARGIN_SECONDS = 60


@runtime_checkable
class CredentialProvider(Protocol):
    async def get_token(self) -> str: ...


class ServiceAccountCredentialProvider:
    """Exchanges service-account key material for an OAuth2 access token.

    Every call performs a fresh refresh against the identity provider, so
    callers must not assume two calls return the same token. google-auth
    is synchronous; the refresh runs in a worker thread.
    """

    def __init__(
        self,
        info: dict[str, Any] | None = None,
        key_file: str | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        if (info is None) == (key_file is None):
            raise ValueError("Provide exactly one of info or key_file")
        self._info = info
        self._key_file = key_file
        self._scopes = list(scopes or DEFAULT_SCOPES)

    def _load(self) -> service_account.Credentials:
        if self._info is not None:
            return service_account.Credentials.from_service_account_info(
                self._info, scopes=self._scopes,
            )
        return service_account.Credentials.from_service_account_file(
            self._key_file, scopes=self._scopes,
        )

    def _refresh(self) -> tuple[str, datetime | None]:
        try:
            creds = self._load()
            creds.refresh(google.auth.transport.requests.Request())
        except (ValueError, KeyError, OSError) as e:
            raise AuthError("Invalid service account material", details=type(e).__name__) from e
        except google.auth.exceptions.GoogleAuthError as e:
            raise AuthError("Token request rejected", details=type(e).__name__) from e
        if not creds.token:
            raise AuthError("Identity provider returned no access token")
        return creds.token, creds.expiry

    async def fetch(self) -> tuple[str, datetime | None]:
        """Return ``(token, expiry)``; expiry is a naive UTC datetime or None."""
        return await asyncio.to_thread(self._refresh)

    async def get_token(self) -> str:
        token, _expiry = await self.fetch()
        logger.debug("Acquired access token")
        return token


class StaticCredentialProvider:
    """Returns a fixed token. For local development against a stub upstream."""

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("token must be non-empty")
        self._token = token

    async def get_token(self) -> str:
        return self._token


class CachingCredentialProvider:
    """Reuses a service-account token until shortly before it expires."""

    def __init__(
        self,
        inner: ServiceAccountCredentialProvider,
        margin_seconds: float = EXPIRY_MARGIN_SECONDS,
    ) -> None:
        self._inner = inner
        self._margin = margin_seconds
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def is_expired(self) -> bool:
        return self._token is None or time.time() >= self._expires_at - self._margin

    async def get_token(self) -> str:
        async with self._lock:
            if self.is_expired:
                token, expiry = await self._inner.fetch()
                self._token = token
                if expiry is None:
                    # No expiry reported: never reuse.
                    self._expires_at = 0.0
                else:
                    self._expires_at = expiry.replace(tzinfo=timezone.utc).timestamp()
                logger.debug("Refreshed cached access token")
            return self._token
