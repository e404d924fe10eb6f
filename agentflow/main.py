from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentflow.api.routes import generation, models
from agentflow.config import settings
from agentflow.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_service.log_event(
        event_type="startup",
        message="agentflow started",
        base_model=settings.agent_base_model,
        max_cycles=settings.agent_max_cycles,
    )
    yield


app = FastAPI(
    title="agentflow",
    description="Multi-phase research agent on top of streaming Gemini generation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(generation.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "agentflow"}
