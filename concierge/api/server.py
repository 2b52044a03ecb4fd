from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from core.config import ConfigManager
from core.errors import ProviderUnavailable, SynthesisFailed, TurnFailed, ValidationError


def create_app(engine, config_manager: ConfigManager) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(title="Voice Shopping Concierge", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store references for route handlers
    app.state.engine = engine
    app.state.config_manager = config_manager

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(TurnFailed)
    async def turn_failed(request: Request, exc: TurnFailed):
        return JSONResponse(status_code=422, content={"error": str(exc)})

    @app.exception_handler(SynthesisFailed)
    async def synthesis_failed(request: Request, exc: SynthesisFailed):
        # Non-transient means the request itself was rejected (e.g. unknown voice)
        status = 503 if exc.transient else 400
        return JSONResponse(status_code=status, content={"error": str(exc), "service": exc.service})

    @app.exception_handler(ProviderUnavailable)
    async def provider_unavailable(request: Request, exc: ProviderUnavailable):
        logger.error("Request failed, {}", exc)
        return JSONResponse(status_code=503, content={"error": str(exc), "service": exc.service})

    from api.routes.voice import router as voice_router

    app.include_router(voice_router, prefix="/api/voice", tags=["voice"])

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "llm_provider": config_manager.config.provider.llm,
            "llm_configured": config_manager.has_llm,
            "elevenlabs_configured": config_manager.has_elevenlabs,
            "orchestrator": engine.stats(),
        }

    return app
