"""FastAPI application and routes for the thinkproxy."""

import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .backends import call_backend, call_with_fallback, is_success
from .config import Settings, load_config
from .enrich import build_upstream_request
from .models import ChatCompletionRequest, ModelCard, ModelList
from .translate import StreamTranslator, outbound_model, translate_completion, translate_stream
from .utils import error_response, mask_credential

logger = logging.getLogger(__name__)

SERVICE_NAME = "JanitorAI DeepSeek R1 Proxy"

TEST_PAYLOAD = {
    "messages": [
        {
            "role": "system",
            "content": "You are a charismatic fantasy character in a roleplaying game.",
        },
        {
            "role": "user",
            "content": "*I approach you in the tavern* Hello there, stranger. "
            "Care for a drink and a tale?",
        },
    ],
    "temperature": 0.85,
    "max_tokens": 300,
}

DIAGNOSE_PAYLOAD = {
    "messages": [{"role": "user", "content": "ping"}],
    "max_tokens": 5,
}


def failure_response(result: Dict[str, Any]) -> Response:
    """Report the last failed upstream attempt to the client."""
    error = result["content"].get("error") if isinstance(result["content"], dict) else None
    message = error.get("message") if isinstance(error, dict) else None

    if result.get("source") == "proxy":
        return error_response(
            f"All upstream models failed: {message or 'unknown error'}",
            error_type="proxy_error",
            status_code=500,
        )

    status_code = result["status_code"]
    return error_response(
        message or "Internal server error",
        error_type="invalid_request_error",
        status_code=status_code,
        code=status_code,
    )


async def handle_chat_completion(request: Request, force_model: Optional[str] = None) -> Response:
    settings: Settings = request.app.state.settings

    body = await request.body()
    try:
        request_data = json.loads(body)
        if not isinstance(request_data, dict):
            raise ValueError("request body must be a JSON object")
        if force_model:
            request_data["model"] = force_model
        chat_request = ChatCompletionRequest.model_validate(request_data)
    except (json.JSONDecodeError, ValueError, ValidationError) as e:
        logger.warning(f"Rejected chat completion request: {str(e)}")
        return error_response(
            "Invalid JSON" if isinstance(e, json.JSONDecodeError) else str(e),
            error_type="invalid_request_error",
            status_code=400,
        )

    last_message = chat_request.messages[-1].content if chat_request.messages else ""
    logger.info(
        f"Received chat request: {len(chat_request.messages)} messages, "
        f"last: {(last_message or '')[:100]!r}"
    )

    payload = build_upstream_request(chat_request, settings)
    model = outbound_model(settings, chat_request.model)
    is_stream = payload["stream"]

    result = await call_with_fallback(settings, payload, stream=is_stream)
    if not is_success(result):
        return failure_response(result)

    if is_stream:
        translator = StreamTranslator(settings, model)
        return StreamingResponse(
            translate_stream(result["content"], translator),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    completion = translate_completion(result["content"], settings, model)
    logger.info(
        f"Response sent via {result['model']}, "
        f"token count: {completion['usage'].get('total_tokens', 0)}"
    )
    return Response(
        content=json.dumps(completion),
        status_code=200,
        media_type="application/json",
    )


def create_app(settings: Settings) -> FastAPI:
    app = FastAPI(title="thinkproxy")
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def status():
        """Service status and feature flags"""
        return {
            "status": "online",
            "service": SERVICE_NAME,
            "model": settings.primary_model,
            "fallback_models": settings.models,
            "reasoning_display": settings.show_reasoning,
            "thinking_mode": settings.thinking_mode,
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    @app.get("/v1/models")
    async def list_models():
        created = int(time.time())
        ids = ["deepseek-r1", "gpt-4"]
        if settings.advertised_model and settings.advertised_model not in ids:
            ids.append(settings.advertised_model)
        return ModelList(data=[ModelCard(id=i, created=created) for i in ids]).model_dump()

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Response:
        """
        Primary endpoint for OpenAI-compatible clients:
        - Clamps sampling parameters and injects the roleplay prompt
        - Tries each upstream candidate model in turn
        - Folds reasoning into the content, streaming or not
        """
        return await handle_chat_completion(request)

    @app.post("/janitor/v1/chat")
    async def janitor_chat(request: Request) -> Response:
        return await handle_chat_completion(request, force_model="deepseek-r1")

    @app.post("/test")
    async def smoke_test():
        """Send a fixed roleplay prompt upstream and return the raw parts"""
        payload = {**TEST_PAYLOAD, "model": settings.primary_model}
        result = await call_with_fallback(settings, payload)
        if not is_success(result):
            error = result["content"].get("error") if isinstance(result["content"], dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            return Response(
                content=json.dumps({
                    "success": False,
                    "error": message or "Upstream request failed",
                    "details": result["content"],
                }),
                status_code=500,
                media_type="application/json",
            )

        choices = result["content"].get("choices") or [{}]
        message = choices[0].get("message") or {}
        return {
            "success": True,
            "model": result["model"],
            "response": message.get("content"),
            "reasoning": message.get("reasoning_content"),
            "tokens": result["content"].get("usage"),
        }

    @app.get("/diagnose")
    async def diagnose():
        """Try every endpoint and candidate model combination"""
        results = []
        for endpoint in settings.diagnose_endpoints:
            url = f"{endpoint.rstrip('/')}/chat/completions"
            for model in settings.models:
                result = await call_backend(settings, {**DIAGNOSE_PAYLOAD, "model": model}, url=url)
                entry = {
                    "endpoint": endpoint,
                    "model": model,
                    "success": is_success(result),
                    "status_code": result["status_code"],
                }
                if not entry["success"]:
                    error = result["content"].get("error") if isinstance(result["content"], dict) else None
                    entry["error"] = error.get("message") if isinstance(error, dict) else str(result["content"])
                results.append(entry)

        working = [r for r in results if r["success"]]
        logger.info(f"Diagnosis complete: {len(working)}/{len(results)} combinations working")
        return {
            "api_key_configured": bool(settings.api_key),
            "api_key_prefix": mask_credential(settings.api_key),
            "results": results,
            "working": [{"endpoint": r["endpoint"], "model": r["model"]} for r in working],
        }

    return app


app = create_app(load_config())


def main():
    import uvicorn

    settings = app.state.settings
    logger.info("=== thinkproxy ===")
    logger.info(f"Port: {settings.port}")
    logger.info(f"Models: {', '.join(settings.models)}")
    logger.info(
        f"Reasoning Display: "
        f"{'ENABLED (with <think> tags)' if settings.show_reasoning else 'DISABLED'}"
    )
    logger.info(f"Thinking Mode: {'ENABLED' if settings.thinking_mode else 'DISABLED'}")
    logger.info(f"Chat endpoint: http://localhost:{settings.port}/v1/chat/completions")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
