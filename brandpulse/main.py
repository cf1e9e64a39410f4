from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from brandpulse.api.routes import analysis
from brandpulse.config import settings
from brandpulse.models.schemas import HealthResponse
from brandpulse.services import database


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    yield
    # Shutdown
    await database.drain_pending_writes()
    await database.close_pool()


app = FastAPI(
    title="BrandPulse",
    description="Multi-market brand visibility analysis across Gemini and OpenAI",
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
app.include_router(analysis.router)


@app.get("/api/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="ok",
        database=bool(settings.database_url),
        providers={
            "gemini": bool(settings.gemini_api_key),
            "openai": bool(settings.openai_api_key),
        },
    )
