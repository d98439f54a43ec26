"""Data models and schemas for the thinkproxy."""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """Chat message model."""
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant"]
    content: Optional[str] = ""


class ChatCompletionRequest(BaseModel):
    """
    Inbound chat completion request.

    Numeric fields left as None are filled in from the configured defaults
    when the upstream request is built.
    """
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    model: Optional[str] = "deepseek-r1"
    messages: List[Message] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: Optional[bool] = False


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ResponseMessage(BaseModel):
    role: str = "assistant"
    content: str = ""


class Choice(BaseModel):
    """Choice model for chat completions."""
    index: int = 0
    message: Optional[ResponseMessage] = None
    finish_reason: Optional[str] = None


class ChatCompletionResponse(BaseModel):
    """Response model for chat completions."""
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Optional[Dict[str, Any]] = None


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str = "nvidia-nim"


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard]
