"""Upstream NIM calls with sequential model fallback."""

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import Settings
from .enrich import with_model

logger = logging.getLogger(__name__)


class UpstreamStream:
    """
    An open upstream event stream together with the client that owns it.

    Closing the stream closes both, so whoever consumes the bytes is
    responsible for calling aclose() once done or cancelled.
    """

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient):
        self.response = response
        self.client = client

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self):
        try:
            await self.response.aclose()
        finally:
            await self.client.aclose()


def _proxy_error(model: str, message: str) -> Dict[str, Any]:
    return {
        "model": model,
        "status_code": 500,
        "content": {"error": {"message": message, "type": "proxy_error"}},
        "is_stream": False,
        "source": "proxy",
    }


def is_completion(body: Any) -> bool:
    """Check that a 2xx body has the chat completion shape the translator reads."""
    if not isinstance(body, dict):
        return False
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return False
    choice = choices[0]
    message = choice.get("message")
    if not isinstance(message, dict):
        return False
    for key in ("content", "reasoning_content"):
        if not isinstance(message.get(key), (str, type(None))):
            return False
    if not isinstance(choice.get("finish_reason"), (str, type(None))):
        return False
    return isinstance(body.get("usage"), (dict, type(None)))


def is_success(result: Dict[str, Any]) -> bool:
    return 200 <= result["status_code"] < 300


async def call_backend(
    settings: Settings,
    payload: Dict[str, Any],
    stream: bool = False,
    url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Make one upstream call and return the response or error details.

    Args:
        settings: Process settings (credential, timeout, default URL)
        payload: Upstream request body; its "model" names the candidate
        stream: Whether to open the response as an event stream
        url: Override for the chat completions URL

    Returns:
        Dictionary with the candidate model, status code and content. On a
        successful stream the content is an UpstreamStream the caller must
        close; otherwise it is the parsed JSON body or an error payload.
    """
    model = payload.get("model", "")
    target_url = url or settings.chat_completions_url
    headers = {"Content-Type": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"

    logger.info(f"Calling upstream model {model} at {target_url}")

    client = httpx.AsyncClient(timeout=settings.timeout)
    keep_open = False
    try:
        request = client.build_request("POST", target_url, json=payload, headers=headers)
        response = await client.send(request, stream=stream)

        if stream and 200 <= response.status_code < 300:
            keep_open = True
            return {
                "model": model,
                "status_code": response.status_code,
                "content": UpstreamStream(response, client),
                "is_stream": True,
                "source": "upstream",
            }

        try:
            body = await response.aread()
        finally:
            await response.aclose()
    except httpx.HTTPError as e:
        logger.error(f"Error calling upstream model {model}: {str(e) or type(e).__name__}")
        return _proxy_error(model, str(e) or type(e).__name__)
    finally:
        if not keep_open:
            await client.aclose()

    text = body.decode(errors="replace")

    if not 200 <= response.status_code < 300:
        try:
            error_content = json.loads(text)
        except json.JSONDecodeError:
            error_content = {"error": {"message": text, "type": "upstream_error"}}
        return {
            "model": model,
            "status_code": response.status_code,
            "content": error_content,
            "is_stream": False,
            "source": "upstream",
        }

    try:
        json_content = json.loads(text)
    except json.JSONDecodeError:
        logger.error(f"Upstream model {model} returned a malformed body")
        return _proxy_error(model, "Malformed response body from upstream")
    if not is_completion(json_content):
        logger.error(f"Upstream model {model} returned an unexpected body shape")
        return _proxy_error(model, "Malformed response body from upstream")

    return {
        "model": model,
        "status_code": response.status_code,
        "content": json_content,
        "is_stream": False,
        "source": "upstream",
    }


async def call_with_fallback(
    settings: Settings, payload: Dict[str, Any], stream: bool = False
) -> Dict[str, Any]:
    """
    Try each candidate model in order and return the first success.

    Attempts are strictly sequential and each candidate is tried once.
    When every candidate fails, the last failure is returned.
    """
    last_result = None
    for model in settings.models:
        result = await call_backend(settings, with_model(payload, model), stream)
        if is_success(result):
            logger.info(f"Upstream model {model} succeeded")
            return result
        logger.warning(
            f"Upstream model {model} failed with status {result['status_code']}, "
            f"trying next candidate"
        )
        last_result = result

    logger.error(f"All {len(settings.models)} upstream models failed")
    return last_result
