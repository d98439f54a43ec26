"""Build upstream NIM requests from inbound OpenAI-style requests."""

import logging
from typing import Any, Dict, List

from .config import Settings
from .models import ChatCompletionRequest

logger = logging.getLogger(__name__)

TEMPERATURE_RANGE = (0.1, 2.0)
MAX_TOKENS_RANGE = (100, 4000)

ROLEPLAY_SYSTEM_PROMPT = (
    "You are an expert roleplay AI assistant. Respond in character, providing "
    "detailed, engaging, and immersive responses. Stay in character at all "
    "times. Use descriptive language and show emotions through actions and "
    "dialogue.\n"
    "IMPORTANT: Put any reasoning inside <think></think> tags. Your final "
    "response should be natural and in-character."
)


def clamp(value, low, high):
    return min(max(value, low), high)


def needs_roleplay_prompt(messages: List[Dict[str, Any]]) -> bool:
    """True for an ongoing conversation ending on a user turn with no system message."""
    if len(messages) <= 1 or messages[-1].get("role") != "user":
        return False
    return not any(m.get("role") == "system" for m in messages)


def build_upstream_request(
    request: ChatCompletionRequest, settings: Settings
) -> Dict[str, Any]:
    """
    Translate an inbound request into the upstream request body.

    The inbound model name is advisory only: the body always targets the
    first configured candidate model (see with_model for the others).
    Temperature and max_tokens are clamped into the ranges the upstream
    accepts; top_p is forwarded unchanged. A fresh message list is built,
    so the caller's request is left untouched.
    """
    messages = [m.model_dump() for m in request.messages]

    if needs_roleplay_prompt(messages):
        logger.info("Injecting roleplay system prompt")
        messages.insert(0, {"role": "system", "content": ROLEPLAY_SYSTEM_PROMPT})

    temperature = request.temperature
    if temperature is None:
        temperature = settings.default_temperature
    max_tokens = request.max_tokens
    if max_tokens is None:
        max_tokens = settings.default_max_tokens
    top_p = request.top_p
    if top_p is None:
        top_p = settings.default_top_p

    payload = {
        "model": settings.primary_model,
        "messages": messages,
        "temperature": clamp(temperature, *TEMPERATURE_RANGE),
        "max_tokens": clamp(max_tokens, *MAX_TOKENS_RANGE),
        "top_p": top_p,
        "stream": bool(request.stream),
    }
    if settings.thinking_mode:
        payload["chat_template_kwargs"] = {"thinking": True}

    return payload


def with_model(payload: Dict[str, Any], model: str) -> Dict[str, Any]:
    """Return a shallow copy of an upstream body retargeted at another model."""
    return {**payload, "model": model}
