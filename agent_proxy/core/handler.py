"""ChatHandler: resolve-or-create session, stream query, aggregate."""

from __future__ import annotations

import asyncio
import logging
import time

from ..types import (
    AuthError,
    ChatResult,
    ChatState,
    DEFAULT_FALLBACK_TEXT,
    SessionCreationError,
    SessionStoreError,
    UpstreamTransportError,
)
from .aggregator import StreamAggregator
from .credentials import CredentialProvider
from .gateway import AgentGateway
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class ChatHandler:
    """Runs one chat request through the session/query/aggregate pipeline.

    State flow::

        RESOLVING_SESSION -> [CREATING_SESSION] -> QUERYING -> AGGREGATING -> RESPONDING
                                       \\______________ any step ______________/-> FAILED

    Each request gets its own state; the handler itself only holds the
    shared collaborators and is safe to use from concurrent requests.
    """

    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialProvider,
        gateway: AgentGateway,
        *,
        stream_timeout_seconds: float | None = 120.0,
        fallback_text: str = DEFAULT_FALLBACK_TEXT,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.gateway = gateway
        self.stream_timeout_seconds = stream_timeout_seconds
        self.aggregator = StreamAggregator(fallback_text=fallback_text)

    @staticmethod
    def _transition(user_id: str, old: ChatState, new: ChatState) -> ChatState:
        logger.debug("Chat %s: %s → %s", user_id, old.value, new.value)
        return new

    async def handle(self, user_id: str, message: str) -> ChatResult:
        state = ChatState.RESOLVING_SESSION
        try:
            session_id = await self.store.get(user_id)
            logger.info("Session lookup: user=%s session=%s", user_id, session_id)

            created = False
            if not session_id:
                state = self._transition(user_id, state, ChatState.CREATING_SESSION)
                session_id = await self._create_session(user_id)
                created = True

            state = self._transition(user_id, state, ChatState.QUERYING)
            token = await self.credentials.get_token()
            logger.info(
                "Starting stream query: user=%s session=%s message=%r",
                user_id, session_id, message[:50],
            )
            t_upstream = time.monotonic()
            async with self.gateway.stream_query(user_id, session_id, message, token) as body:
                state = self._transition(user_id, state, ChatState.AGGREGATING)
                try:
                    result = await asyncio.wait_for(
                        self.aggregator.aggregate(body),
                        timeout=self.stream_timeout_seconds,
                    )
                except asyncio.TimeoutError as e:
                    raise UpstreamTransportError(
                        "Stream query timed out",
                        details=f"no completion after {self.stream_timeout_seconds}s",
                    ) from e

            upstream_ms = round((time.monotonic() - t_upstream) * 1000, 1)
            state = self._transition(user_id, state, ChatState.RESPONDING)
            if result.malformed:
                logger.warning("Skipped %d malformed stream lines", result.malformed)
            logger.info(
                "Sending response: user=%s chars=%d complete=%s session=%s",
                user_id, len(result.text), result.complete, session_id,
            )
            return ChatResult(
                text=result.text,
                session_id=session_id,
                created_session=created,
                complete=result.complete,
                upstream_ms=upstream_ms,
            )
        except Exception:
            self._transition(user_id, state, ChatState.FAILED)
            raise

    async def _create_session(self, user_id: str) -> str:
        """Create a remote session and cache it. Every failure is a SessionCreationError."""
        logger.info("Creating new session for user: %s", user_id)
        try:
            token = await self.credentials.get_token()
            session_id = await self.gateway.create_session(user_id, token)
            await self.store.put(user_id, session_id)
        except SessionCreationError:
            raise
        except (AuthError, SessionStoreError, UpstreamTransportError) as e:
            raise SessionCreationError(e.message, details=e.details) from e
        logger.info(
            "Saved session %s for user %s with TTL %ds",
            session_id, user_id, self.store.ttl_seconds,
        )
        return session_id
