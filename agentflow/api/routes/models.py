from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from agentflow.api.deps import get_available_models, get_default_model
from agentflow.models.schemas import ModelInfo, ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models():
    """List the agent models the workflow can run on."""
    models = get_available_models()
    return ModelsResponse(models=[ModelInfo(**m) for m in models])


@router.get("/default", response_class=PlainTextResponse)
async def default_model():
    return get_default_model()
