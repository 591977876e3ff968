"""AgentGateway: outbound create_session / stream_query calls."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from ..types import SessionCreationError, UpstreamTransportError

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 200


def _excerpt(text: str, limit: int = EXCERPT_CHARS) -> str:
    return text[:limit]


class AgentGateway:
    """Client for a reasoning-engine style agent endpoint.

    ``endpoint`` is the full resource URL; the two operations are addressed
    as ``{endpoint}:query`` and ``{endpoint}:streamQuery``.
    """

    def __init__(self, endpoint: str, client: httpx.AsyncClient) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._client = client

    @property
    def query_url(self) -> str:
        return f"{self.endpoint}:query"

    @property
    def stream_query_url(self) -> str:
        return f"{self.endpoint}:streamQuery"

    @staticmethod
    def _headers(token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def create_session(self, user_id: str, token: str) -> str:
        """Create a remote session for *user_id* and return its id."""
        payload = {
            "class_method": "create_session",
            "input": {"user_id": user_id},
        }
        try:
            resp = await self._client.post(
                self.query_url, headers=self._headers(token), json=payload,
            )
        except httpx.HTTPError as e:
            raise UpstreamTransportError(
                "Session creation request failed", details=type(e).__name__,
            ) from e

        body = resp.text
        logger.info(
            "Session creation response: status=%d content-type=%s",
            resp.status_code, resp.headers.get("content-type", ""),
        )
        logger.debug("Session creation body: %s", body[:500])

        try:
            data = json.loads(body)
        except ValueError as e:
            raise SessionCreationError(
                "Session creation failed - invalid response format",
                details=_excerpt(body),
            ) from e

        output = data.get("output") if isinstance(data, dict) else None
        session_id = output.get("id") if isinstance(output, dict) else None
        if not session_id or not isinstance(session_id, str):
            raise SessionCreationError(
                "Failed to create session", details=_excerpt(body),
            )
        return session_id

    @asynccontextmanager
    async def stream_query(
        self,
        user_id: str,
        session_id: str,
        message: str,
        token: str,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streaming query and yield the raw body byte iterator.

        The upstream response is closed when the context exits, including
        on cancellation.
        """
        payload = {
            "class_method": "stream_query",
            "input": {
                "user_id": user_id,
                "session_id": session_id,
                "message": message,
            },
        }
        req = self._client.build_request(
            "POST", self.stream_query_url, headers=self._headers(token), json=payload,
        )
        try:
            upstream = await self._client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamTransportError(
                "Stream query request failed", details=type(e).__name__,
            ) from e

        try:
            logger.info(
                "Stream query response: status=%d content-type=%s",
                upstream.status_code, upstream.headers.get("content-type", ""),
            )
            if upstream.status_code >= 300:
                error_bytes = await upstream.aread()
                raise UpstreamTransportError(
                    f"Stream query returned HTTP {upstream.status_code}",
                    details=_excerpt(error_bytes.decode("utf-8", errors="replace")),
                    status_code=upstream.status_code,
                )
            yield _iter_body(upstream)
        finally:
            await upstream.aclose()


async def _iter_body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for raw_chunk in upstream.aiter_bytes():
            yield raw_chunk
    except httpx.HTTPError as e:
        raise UpstreamTransportError(
            "Stream query interrupted", details=type(e).__name__,
        ) from e
