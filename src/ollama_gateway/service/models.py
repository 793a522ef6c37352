"""
Pydantic models for the gateway HTTP API.

Field names follow the JSON contract consumed by the chat UI, so response
models use camelCase where the UI expects it.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from ..models.message import ConversationMessage


# Configuration constants
SERVICE_VERSION = "0.1.0"


# =============================================================================
# Requests
# =============================================================================

class ChatMessage(BaseModel):
    """One chat turn as sent by the UI."""
    role: Literal["system", "user", "assistant"] = "user"
    content: str | list[dict[str, Any]] | None = None
    images: list[str] = Field(default_factory=list, description="Base64 encoded images")

    def to_conversation(self) -> ConversationMessage:
        return ConversationMessage.from_dict(self.model_dump())


class ChatRequest(BaseModel):
    model: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    stream: bool = False

    def conversation(self) -> list[ConversationMessage]:
        return [m.to_conversation() for m in self.messages]


class GenerateRequest(BaseModel):
    model: str | None = None
    prompt: str = ""
    images: list[str] = Field(default_factory=list)
    stream: bool = False


class ResumeRequest(ChatRequest):
    partial_response: str = Field(..., min_length=1, description="Text received before the cut-off")


class ProgressiveRequest(ChatRequest):
    chunk_size: int | None = Field(default=None, gt=0, description="Characters per emitted chunk")


class ModelRequest(BaseModel):
    model: str | None = None


# =============================================================================
# Responses
# =============================================================================

class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str = ""
    supportsImages: bool = False


class ModelsResponse(BaseModel):
    success: bool = True
    models: list[ModelInfo]
    totalAvailable: int


class LoadedModelInfo(BaseModel):
    name: str
    size: int = 0
    sizeVram: int = 0
    digest: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class LoadedModelsResponse(BaseModel):
    success: bool = True
    loadedModels: list[LoadedModelInfo]
    count: int


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class UnloadResponse(MessageResponse):
    unloadedCount: int


class SwitchResponse(UnloadResponse):
    activeModel: str


class ChatResponse(BaseModel):
    success: bool = True
    message: dict[str, Any] | None = None
    model: str
    modelName: str
    complexity: str
    maxTokens: int


class GenerateResponse(BaseModel):
    success: bool = True
    response: str = ""
    model: str
    modelName: str
    complexity: str
    maxTokens: int


class ResumeResponse(BaseModel):
    success: bool = True
    message: dict[str, Any] | None = None
    mode: Literal["resumption"] = "resumption"
    model: str
