"""Shared fixtures for agent-session-proxy tests."""

from __future__ import annotations

import json

import httpx
import pytest

from agent_proxy.config import load_config
from agent_proxy.types import ProxyConfig

ENDPOINT = "https://agent.example.test/v1/projects/p/locations/us-central1/reasoningEngines/42"


def ndjson(*objects: dict) -> bytes:
    """Encode objects as newline-terminated JSON lines."""
    return b"".join(json.dumps(o).encode() + b"\n" for o in objects)


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


async def byte_stream(pieces: list[bytes]):
    for piece in pieces:
        yield piece


HELLO_LINES = [
    {"content": {"parts": [{"text": "Hel"}]}},
    {"content": {"parts": [{"text": "lo"}]}},
    {"finish_reason": "STOP", "content": {"parts": [{"text": "!"}]}},
]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCredentials:
    """Hands out a new token per call and counts calls."""

    def __init__(self):
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        return f"token-{self.calls}"


class FakeAgentEngine:
    """httpx MockTransport handler imitating the agent engine endpoint.

    Records every call as ``(method_suffix, json_body, auth_header)``.
    """

    def __init__(
        self,
        session_id: str = "sess-123",
        stream_body: bytes | list[bytes] | None = None,
        create_body: bytes | None = None,
        create_status: int = 200,
        stream_status: int = 200,
    ):
        self.session_id = session_id
        self.stream_body = stream_body if stream_body is not None else ndjson(*HELLO_LINES)
        self.create_body = create_body
        self.create_status = create_status
        self.stream_status = stream_status
        self.calls: list[tuple[str, dict, str]] = []

    @property
    def methods(self) -> list[str]:
        return [c[0] for c in self.calls]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        body = json.loads(request.content)
        auth = request.headers.get("authorization", "")
        if url.endswith(":streamQuery"):
            self.calls.append(("stream_query", body, auth))
            pieces = self.stream_body if isinstance(self.stream_body, list) else [self.stream_body]
            return httpx.Response(self.stream_status, content=byte_stream(pieces))
        if url.endswith(":query"):
            self.calls.append(("create_session", body, auth))
            if self.create_body is not None:
                return httpx.Response(self.create_status, content=self.create_body)
            return httpx.Response(
                self.create_status,
                json={"output": {"id": self.session_id, "user_id": body["input"]["user_id"]}},
            )
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return load_config(
        config_dict={
            "agent_engine": {"endpoint": ENDPOINT, "stream_timeout_seconds": 5},
            "session": {"backend": "memory", "ttl_seconds": 600},
            "credentials": {"static_token": "dev-token"},
        },
        env={},
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_engine() -> FakeAgentEngine:
    return FakeAgentEngine()
