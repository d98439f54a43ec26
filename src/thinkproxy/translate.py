"""Translation of upstream NIM responses into OpenAI chat completion format."""

import json
import logging
import time
from typing import Any, AsyncGenerator, Dict, List, Optional

import anyio
import httpx

from .config import Settings
from .models import ChatCompletionResponse, Choice, ResponseMessage, Usage
from .utils import ThinkingFilter, strip_thinking, wrap_reasoning

logger = logging.getLogger(__name__)

DONE_EVENT = b"data: [DONE]\n\n"


def completion_id() -> str:
    return f"chatcmpl-{int(time.time() * 1000)}"


def outbound_model(settings: Settings, requested: Optional[str]) -> str:
    """The model name reported to the client, never the upstream one."""
    return settings.advertised_model or requested or "deepseek-r1"


def strips_inline_thinking(settings: Settings) -> bool:
    return settings.strip_inline_thinking and not settings.show_reasoning


def translate_completion(
    upstream: Dict[str, Any], settings: Settings, model: str
) -> Dict[str, Any]:
    """
    Convert a whole upstream completion into an OpenAI chat completion.

    Reasoning is folded into the message content when display is enabled
    and the upstream produced any; otherwise the content passes through.
    """
    choices = upstream.get("choices") or [{}]
    choice = choices[0] if isinstance(choices[0], dict) else {}
    message = choice.get("message") or {}

    content = message.get("content") or ""
    reasoning = message.get("reasoning_content") or ""

    if settings.show_reasoning and reasoning:
        content = wrap_reasoning(reasoning, content)
    elif strips_inline_thinking(settings):
        content = strip_thinking(content)

    response = ChatCompletionResponse(
        id=completion_id(),
        created=int(time.time()),
        model=model,
        choices=[
            Choice(
                index=0,
                message=ResponseMessage(content=content),
                finish_reason=choice.get("finish_reason") or "stop",
            )
        ],
        usage=upstream.get("usage") or Usage().model_dump(),
    )
    return response.model_dump(exclude_none=True)


class StreamTranslator:
    """
    Incrementally rewrites an upstream server-sent event stream.

    Bytes are accumulated until a full line is available, so a record split
    across network reads is only parsed once complete. Exactly one [DONE]
    marker is produced, either when the upstream sends its own or from
    finish() when the upstream simply stops.
    """

    def __init__(self, settings: Settings, model: str):
        self.show_reasoning = settings.show_reasoning
        self.model = model
        self.id = completion_id()
        self.buffer = b""
        self.done = False
        self.filter = ThinkingFilter() if strips_inline_thinking(settings) else None

    def _chunk(self, content: str, finish_reason: Optional[str]) -> bytes:
        event = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": {"content": content},
                    "finish_reason": finish_reason,
                }
            ],
        }
        return f"data: {json.dumps(event)}\n\n".encode()

    def _close(self) -> List[bytes]:
        events = []
        if self.filter:
            tail = self.filter.flush()
            if tail:
                events.append(self._chunk(tail, None))
        self.done = True
        events.append(DONE_EVENT)
        return events

    def _process_line(self, raw: bytes) -> List[bytes]:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not line.startswith("data:"):
            return []
        data = line[len("data:"):].strip()
        if not data:
            return []

        if data == "[DONE]":
            return self._close()

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Forwarding unparseable stream record as-is")
            return [f"{line}\n\n".encode()]

        choices = event.get("choices") if isinstance(event, dict) else None
        if not choices or not isinstance(choices[0], dict):
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}

        content = delta.get("content")
        reasoning = delta.get("reasoning_content")

        if self.show_reasoning and reasoning:
            text = wrap_reasoning(reasoning, content or "", multiline=False)
        elif content:
            text = self.filter.feed(content) if self.filter else content
        else:
            return []

        if not text:
            return []
        return [self._chunk(text, choice.get("finish_reason"))]

    def feed(self, chunk: bytes) -> List[bytes]:
        """Consume one network read and return the outbound events it completes."""
        if self.done:
            return []
        self.buffer += chunk
        *lines, self.buffer = self.buffer.split(b"\n")

        events = []
        for raw in lines:
            events.extend(self._process_line(raw))
            if self.done:
                self.buffer = b""
                break
        return events

    def finish(self) -> List[bytes]:
        """Close the translation; an unterminated trailing fragment is dropped."""
        if self.buffer.strip():
            logger.debug(f"Dropping incomplete trailing record ({len(self.buffer)} bytes)")
        self.buffer = b""

        if self.done:
            return []
        return self._close()


async def translate_stream(upstream, translator: StreamTranslator) -> AsyncGenerator[bytes, None]:
    """
    Relay an upstream stream through a StreamTranslator.

    A network error mid-stream ends the outbound stream without a [DONE]
    marker. The upstream connection is always closed, including when the
    client disconnects and this generator is cancelled.
    """
    sent = 0
    try:
        async for chunk in upstream.aiter_bytes():
            for event in translator.feed(chunk):
                sent += 1
                yield event
            if translator.done:
                break
        for event in translator.finish():
            sent += 1
            yield event
        logger.info(f"Stream finished after {sent} events")
    except httpx.HTTPError as e:
        logger.error(f"Stream error: {str(e) or type(e).__name__}")
    finally:
        # a cancelled scope would otherwise abort the close itself
        with anyio.CancelScope(shield=True):
            await upstream.aclose()
