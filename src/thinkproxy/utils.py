"""Utility functions for the thinkproxy."""

import json
import logging
import re
from typing import Optional

from fastapi import Response

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


def wrap_reasoning(reasoning: str, content: str, multiline: bool = True) -> str:
    """
    Fold reasoning text into the visible content using the <think> delimiters.

    Whole responses put the reasoning on its own lines inside the tags;
    streamed deltas keep it inline so that each fragment stays as emitted.
    """
    if multiline:
        return f"{THINK_OPEN}\n{reasoning}\n{THINK_CLOSE}\n\n{content}"
    return f"{THINK_OPEN}{reasoning}{THINK_CLOSE}\n\n{content}"


_THINK_BLOCK = re.compile(r"<think>.*?</think>\s*", re.IGNORECASE | re.DOTALL)


def strip_thinking(content: str) -> str:
    """Remove inline <think> blocks from a complete piece of content."""
    return _THINK_BLOCK.sub("", content).strip()


class ThinkingFilter:
    """
    Incrementally removes <think>...</think> blocks from streamed text.

    A tag split across two feeds is held back until it can be decided, so
    no fragment of a delimiter ever leaks into the output.
    """

    def __init__(self):
        self.buffer = ""
        self.inside = False

    def _partial_suffix(self, tag: str) -> int:
        # length of the longest buffer suffix that is a proper prefix of tag
        lowered = self.buffer.lower()
        for size in range(min(len(tag) - 1, len(lowered)), 0, -1):
            if tag.startswith(lowered[-size:]):
                return size
        return 0

    def feed(self, text: str) -> str:
        self.buffer += text
        output = ""

        while self.buffer:
            tag = THINK_CLOSE if self.inside else THINK_OPEN
            pos = self.buffer.lower().find(tag)
            if pos != -1:
                if not self.inside:
                    output += self.buffer[:pos]
                self.buffer = self.buffer[pos + len(tag):]
                self.inside = not self.inside
                continue

            held = self._partial_suffix(tag)
            if not self.inside:
                output += self.buffer[: len(self.buffer) - held]
            self.buffer = self.buffer[len(self.buffer) - held:] if held else ""
            break

        return output

    def flush(self) -> str:
        """Return held-back text; an unterminated block is discarded."""
        out = "" if self.inside else self.buffer
        self.buffer = ""
        self.inside = False
        return out


def mask_credential(value: Optional[str], visible: int = 8) -> Optional[str]:
    if not value:
        return None
    return f"{value[:visible]}..."


def error_response(
    message: str,
    error_type: str = "invalid_request_error",
    status_code: int = 500,
    code: Optional[int] = None,
) -> Response:
    """Build the OpenAI-style JSON error payload returned to clients."""
    error = {"message": message, "type": error_type}
    if code is not None:
        error["code"] = code
    return Response(
        content=json.dumps({"error": error}),
        status_code=status_code,
        media_type="application/json",
    )
