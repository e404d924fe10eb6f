from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# --- Requests ---


class GenerationOptions(BaseModel):
    includeThoughts: bool | None = None


class GenerationConfig(BaseModel):
    # Optional model override for the FINAL phase
    model: str | None = None
    systemInstruction: str | None = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    model_config = {"extra": "allow"}


class GenerationRequest(BaseModel):
    contents: list[dict[str, Any]]
    model: str
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    chatId: str | None = None
    requestId: str | None = None


# --- Responses ---


class ModelInfo(BaseModel):
    id: str
    base_model: str


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
