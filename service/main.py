"""
Main FastAPI Application

REST API for discovering local models, loading them and chatting with the loaded language model.
"""

import sys
from typing import Dict, List, Optional, Any
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from loguru import logger
import uvicorn

from hetu.config import Settings, load_settings
from hetu.descriptors import ModelCategory
from hetu.session import GenerationOutcome, GenerationStatus, SessionManager


# Global session manager instance
session_manager: Optional[SessionManager] = None


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def build_session_manager(settings: Settings) -> SessionManager:
    """Create the inference backend and the session manager that owns it."""
    from hetu.transformers_backend import TransformersBackend

    backend = TransformersBackend(
        device=settings.device,
        max_new_tokens=settings.max_new_tokens,
        temperature=settings.temperature,
        top_p=settings.top_p,
    )
    backend.initialize()
    return SessionManager.from_settings(backend, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    global session_manager

    settings = load_settings()
    configure_logging(settings.log_level)

    # Startup
    logger.info("Starting Hetu model service...")
    session_manager = build_session_manager(settings)
    await session_manager.initialize()

    yield

    # Shutdown
    logger.info("Shutting down Hetu model service...")
    if session_manager and session_manager.state.language_ready:
        await session_manager.unload_language_model()
    session_manager = None


# Create FastAPI app
app = FastAPI(
    title="Hetu Model Service",
    description="Local model discovery and chat over on-device language models",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models
class LoadModelRequest(BaseModel):
    path: str = Field(..., description="Path of a discovered model file")


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="User message")
    stream: bool = Field(True, description="Stream response")


class HealthResponse(BaseModel):
    status: str
    message: str
    backend_available: bool
    language_model: Optional[str] = None
    speech_model: Optional[str] = None


def _require_session() -> SessionManager:
    if not session_manager:
        raise HTTPException(status_code=503, detail="Session manager not initialized")
    return session_manager


# Health check endpoint
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    if not session_manager:
        return HealthResponse(
            status="error",
            message="Session manager not initialized",
            backend_available=False
        )

    state = session_manager.state
    return HealthResponse(
        status="healthy",
        message="Service is running",
        backend_available=state.backend_available,
        language_model=state.loaded_language_model_name if state.language_ready else None,
        speech_model=state.loaded_speech_model_name if state.speech_ready else None
    )


# Session snapshot endpoint
@app.get("/session")
async def get_session():
    """Get the full session state."""
    return _require_session().state.to_dict()


# List discovered models
@app.get("/models")
async def list_models(category: Optional[ModelCategory] = None) -> List[Dict[str, Any]]:
    """Get discovered models, optionally only one category."""
    manager = _require_session()
    if category is None:
        models = manager.state.discovered_models
    else:
        models = manager.models_for(category)
    return [m.to_dict() for m in models]


# Rescan model folders
@app.post("/models/scan")
async def scan_models() -> List[Dict[str, Any]]:
    """Re-run model discovery."""
    models = await _require_session().scan_models()
    return [m.to_dict() for m in models]


# Load model
@app.post("/models/load")
async def load_model(request: LoadModelRequest):
    """Load a discovered model into the slot for its category."""
    manager = _require_session()

    descriptor = manager.find_model(request.path)
    if descriptor is None:
        raise HTTPException(status_code=404, detail=f"Model {request.path} not found")

    if not await manager.load(descriptor):
        raise HTTPException(
            status_code=400,
            detail=manager.state.last_error or f"Failed to load model {descriptor.name}"
        )

    state = manager.state
    if descriptor.category == ModelCategory.LANGUAGE:
        model_id = state.loaded_language_model_id
    else:
        model_id = state.loaded_speech_model_id

    return {
        "success": True,
        "model_name": descriptor.name,
        "model_id": model_id,
        "category": descriptor.category.value
    }


# Unload language model
@app.post("/models/unload")
async def unload_model():
    """Unload the language model."""
    manager = _require_session()
    await manager.unload_language_model()
    return {"success": True, "message": "Model unloaded", "error": manager.state.last_error}


# Chat endpoint
@app.post("/chat")
async def chat(request: ChatRequest):
    """Chat with the loaded language model."""
    manager = _require_session()

    if request.stream:
        async def generate():
            outcome = GenerationOutcome()
            async for fragment in manager.generate(request.message, outcome):
                yield f"data: {fragment}\n\n"
            if outcome.status == GenerationStatus.NO_MODEL:
                yield f"data: {outcome.response}\n\n"
            elif outcome.error:
                yield f"data: Error: {outcome.error}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
        )

    outcome = GenerationOutcome()
    await manager.run_generation(request.message, outcome)
    if outcome.status == GenerationStatus.REJECTED:
        raise HTTPException(status_code=409, detail=outcome.error)
    if outcome.status == GenerationStatus.FAILED:
        raise HTTPException(status_code=500, detail=outcome.error)

    return {"response": outcome.response, "error": outcome.error}


# Error slot
@app.delete("/error")
async def clear_error():
    """Dismiss the last error."""
    _require_session().clear_error()
    return {"success": True}


# Conversation history
@app.delete("/chat/history")
async def reset_history():
    """Start the conversation over."""
    if not _require_session().reset_conversation():
        raise HTTPException(status_code=409, detail="A response is being generated")
    return {"success": True}


# WebSocket endpoint
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: str = "default"):
    """WebSocket endpoint for real-time chat."""
    from service.websocket import handle_websocket
    await handle_websocket(websocket, client_id)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Hetu Model Service",
        "version": "1.0.0",
        "description": "Local model discovery and chat over on-device language models",
        "endpoints": {
            "health": "/health",
            "session": "/session",
            "models": "/models",
            "chat": "/chat",
            "websocket": "/ws"
        }
    }


if __name__ == "__main__":
    settings = load_settings()
    uvicorn.run(
        "service.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower()
    )
