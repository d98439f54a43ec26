import json

import httpx
import pytest
from fastapi.testclient import TestClient

from thinkproxy.api import create_app
from thinkproxy.config import Settings

# Mock upstream payloads
MOCK_NIM_COMPLETION = {
    "id": "cmpl-nim-123",
    "object": "chat.completion",
    "created": 1677652288,
    "model": "deepseek-ai/deepseek-r1",
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": "Hello",
                "reasoning_content": "step1",
            },
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 9, "completion_tokens": 12, "total_tokens": 21},
}

MOCK_NIM_COMPLETION_NO_REASONING = {
    "id": "cmpl-nim-456",
    "object": "chat.completion",
    "created": 1677652288,
    "model": "deepseek-ai/deepseek-r1",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "*raises a mug* Gladly!"},
            "finish_reason": "length",
        }
    ],
    "usage": {"prompt_tokens": 30, "completion_tokens": 5, "total_tokens": 35},
}

MOCK_NIM_ERROR = {
    "error": {"message": "Model not found", "type": "not_found_error"}
}

CONVERSATION = [
    {"role": "assistant", "content": "*The innkeeper looks up* Welcome, traveler."},
    {"role": "user", "content": "*I sit at the bar* What news from the capital?"},
]


def delta_event(content=None, reasoning=None, finish_reason=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    return {
        "id": "cmpl-nim-stream",
        "object": "chat.completion.chunk",
        "created": 1694268190,
        "model": "deepseek-ai/deepseek-r1",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def sse(*events, done=True) -> bytes:
    """Encode upstream events the way NIM frames them."""
    body = b"".join(f"data: {json.dumps(e)}\n\n".encode() for e in events)
    if done:
        body += b"data: [DONE]\n\n"
    return body


async def byte_stream(chunks, error=None):
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


def stream_response(chunks, error=None) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=byte_stream(chunks, error),
    )


def parse_events(text: str):
    """Split an outbound event stream into decoded JSON events and markers."""
    events = []
    for line in text.split("\n\n"):
        if not line.strip():
            continue
        data = line[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


class FakeUpstream:
    """Stands in for the NIM API, recording every outbound request."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    async def send(self, request: httpx.Request, **kwargs):
        body = json.loads(request.content)
        self.calls.append(
            {
                "url": str(request.url),
                "headers": request.headers,
                "body": body,
                "stream": kwargs.get("stream", False),
            }
        )
        result = self.handler(body)
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def models(self):
        return [call["body"]["model"] for call in self.calls]


@pytest.fixture
def fake_upstream(monkeypatch):
    """Install a handler(body) -> httpx.Response | Exception for upstream calls"""

    def install(handler):
        fake = FakeUpstream(handler)

        async def mock_send(self, request, **kwargs):
            return await fake.send(request, **kwargs)

        monkeypatch.setattr(httpx.AsyncClient, "send", mock_send)
        return fake

    return install


@pytest.fixture
def settings():
    return Settings(
        api_base="http://nim.example.com/v1",
        api_key="nvapi-test-key-0123456789",
        models=["model-a", "model-b", "model-c"],
        diagnose_endpoints=["http://nim.example.com/v1", "http://backup.example.com/v1"],
    )


@pytest.fixture
def hidden_reasoning_settings(settings):
    return settings.model_copy(update={"show_reasoning": False})


@pytest.fixture
def test_client(settings):
    return TestClient(create_app(settings))
