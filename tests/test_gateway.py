"""Tests for agent_proxy.core.gateway."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agent_proxy.core.gateway import AgentGateway
from agent_proxy.types import SessionCreationError, UpstreamTransportError

from conftest import ENDPOINT, FakeAgentEngine, ndjson


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_extracts_output_id(self, fake_engine):
        async with fake_engine.client() as client:
            gw = AgentGateway(ENDPOINT, client)
            assert await gw.create_session("alice", "tok") == "sess-123"
        method, body, auth = fake_engine.calls[0]
        assert method == "create_session"
        assert body == {"class_method": "create_session", "input": {"user_id": "alice"}}
        assert auth == "Bearer tok"

    def test_urls(self):
        gw = AgentGateway(ENDPOINT + "/", MagicMock())
        assert gw.query_url == f"{ENDPOINT}:query"
        assert gw.stream_query_url == f"{ENDPOINT}:streamQuery"

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        engine = FakeAgentEngine(create_body=b"<html>502 Bad Gateway</html>" + b"x" * 400, create_status=502)
        async with engine.client() as client:
            with pytest.raises(SessionCreationError) as exc:
                await AgentGateway(ENDPOINT, client).create_session("alice", "tok")
        assert exc.value.message == "Session creation failed - invalid response format"
        assert exc.value.details.startswith("<html>502")
        assert len(exc.value.details) == 200

    @pytest.mark.asyncio
    async def test_missing_session_id(self):
        engine = FakeAgentEngine(create_body=b'{"output": {"user_id": "alice"}}')
        async with engine.client() as client:
            with pytest.raises(SessionCreationError) as exc:
                await AgentGateway(ENDPOINT, client).create_session("alice", "tok")
        assert exc.value.message == "Failed to create session"

    @pytest.mark.asyncio
    async def test_non_object_json(self):
        engine = FakeAgentEngine(create_body=b'"just a string"')
        async with engine.client() as client:
            with pytest.raises(SessionCreationError):
                await AgentGateway(ENDPOINT, client).create_session("alice", "tok")

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def boom(request):
            raise httpx.ConnectError("refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(boom)) as client:
            with pytest.raises(UpstreamTransportError):
                await AgentGateway(ENDPOINT, client).create_session("alice", "tok")


class TestStreamQuery:
    @pytest.mark.asyncio
    async def test_yields_raw_bytes(self):
        pieces = [b'{"content": {"par', b'ts": [{"text": "x"}]}}\n']
        engine = FakeAgentEngine(stream_body=pieces)
        async with engine.client() as client:
            gw = AgentGateway(ENDPOINT, client)
            async with gw.stream_query("alice", "sess-1", "hi", "tok") as body:
                received = b"".join([chunk async for chunk in body])
        assert received == b"".join(pieces)
        method, payload, auth = engine.calls[0]
        assert method == "stream_query"
        assert payload == {
            "class_method": "stream_query",
            "input": {"user_id": "alice", "session_id": "sess-1", "message": "hi"},
        }
        assert auth == "Bearer tok"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status(self):
        engine = FakeAgentEngine(stream_body=b'{"error": {"code": 403}}', stream_status=403)
        async with engine.client() as client:
            with pytest.raises(UpstreamTransportError) as exc:
                async with AgentGateway(ENDPOINT, client).stream_query("a", "s", "m", "tok"):
                    pass
        assert exc.value.status_code == 403
        assert "403" in exc.value.details

    @pytest.mark.asyncio
    async def test_response_closed_on_early_exit(self):
        upstream = MagicMock()
        upstream.status_code = 200
        upstream.headers = {"content-type": "application/json"}
        upstream.aclose = AsyncMock()

        async def body():
            yield ndjson({"a": 1})
            yield ndjson({"b": 2})

        upstream.aiter_bytes = body
        client = MagicMock()
        client.send = AsyncMock(return_value=upstream)

        async with AgentGateway(ENDPOINT, client).stream_query("a", "s", "m", "tok") as stream:
            async for _chunk in stream:
                break
        upstream.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mid_stream_failure_is_transport_error(self):
        upstream = MagicMock()
        upstream.status_code = 200
        upstream.headers = {}
        upstream.aclose = AsyncMock()

        async def body():
            yield ndjson({"a": 1})
            raise httpx.ReadError("connection reset")

        upstream.aiter_bytes = body
        client = MagicMock()
        client.send = AsyncMock(return_value=upstream)

        with pytest.raises(UpstreamTransportError) as exc:
            async with AgentGateway(ENDPOINT, client).stream_query("a", "s", "m", "tok") as stream:
                async for _chunk in stream:
                    pass
        assert exc.value.message == "Stream query interrupted"
        upstream.aclose.assert_awaited_once()
