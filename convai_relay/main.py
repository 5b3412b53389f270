"""
FastAPI server for the ElevenLabs ConvAI relay.

This module initializes and configures the FastAPI application that sits
between a web/voice frontend and the ElevenLabs conversational AI API. It
exposes:
- REST endpoints to list projects, assemble knowledge bases and push them to
  the ConvAI webhook or render them to speech
- A speech-to-text passthrough and a receiver for ConvAI knowledge base webhooks
- The /ws WebSocket endpoint that proxies a realtime conversation session
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
import websockets
from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from convai_relay.config.constants import (
    ACCEPTED_SIGNATURE_HEADERS,
    API_KEY_HEADER,
    DEFAULT_AUDIO_MIME,
    LOGGER_NAME,
    PUSH_MODE_TTS,
)
from convai_relay.config.logging_config import configure_logging
from convai_relay.config.settings import Settings
from convai_relay.errors import InvalidRequestError, RelayError, UpstreamFetchError
from convai_relay.handlers.push_handlers import MEDIA_PREFIX, PushDispatcher
from convai_relay.handlers.webhook_handlers import ConvaiWebhookHandler
from convai_relay.models.schemas import (
    KnowledgeBase,
    ProjectSummary,
    PushRequest,
    RealtimeQuery,
    RealtimeSessionPayload,
    TtsRequest,
)
from convai_relay.services.elevenlabs_client import ElevenLabsClient
from convai_relay.services.negotiator import SessionNegotiator
from convai_relay.services.projects import ProjectStore
from convai_relay.websocket_manager import WebSocketManager

logger = logging.getLogger(LOGGER_NAME)

APP_NAME = "ConvAI Relay"
APP_DESCRIPTION = "Relay between web/voice frontends and the ElevenLabs ConvAI API"
APP_VERSION = "1.0.0"


def redact(value: str) -> str:
    """Preview a secret: first and last four characters of long values, stars otherwise."""
    if not value:
        return ""
    if len(value) > 10:
        return f"{value[:4]}…{value[-4:]}"
    return "*" * len(value)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    connect: Callable[..., Any] = websockets.connect,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Relay configuration; read from the environment when omitted
        transport: Optional httpx transport shared by every outbound HTTP call
        connect: WebSocket connect function used for upstream sessions

    Returns:
        FastAPI: The configured application
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    client = ElevenLabsClient(settings, transport=transport)
    store = ProjectStore(settings, transport=transport)
    negotiator = SessionNegotiator(settings, client)
    dispatcher = PushDispatcher(settings, store, client, transport=transport)
    webhook_handler = ConvaiWebhookHandler(settings, client)
    websocket_manager = WebSocketManager(settings, negotiator, store, connect=connect)

    app = FastAPI(title=APP_NAME, description=APP_DESCRIPTION, version=APP_VERSION)
    app.state.settings = settings
    app.state.websocket_manager = websocket_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", API_KEY_HEADER, *ACCEPTED_SIGNATURE_HEADERS],
    )

    settings.output_dir.mkdir(parents=True, exist_ok=True)
    app.mount(MEDIA_PREFIX.rstrip("/"), StaticFiles(directory=str(settings.output_dir)), name="media")

    def base_url(request: Request) -> str:
        return (settings.public_base_url or str(request.base_url)).rstrip("/")

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = []
        for item in exc.errors():
            location = ".".join(str(part) for part in item.get("loc", ()))
            problems.append(f"{location}: {item.get('msg')}")
        error = InvalidRequestError(f"Invalid request body: {'; '.join(problems)}")
        logger.warning(f"{request.method} {request.url.path} rejected: {error.message}")
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "not_found", "path": request.url.path})
        return JSONResponse(status_code=exc.status_code, content={"error": "http_error", "message": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": str(exc)})

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint proxying one ConvAI conversation.

        Query parameters `project`, `agent_id` and `model` select the knowledge
        base used as context and the upstream agent.
        """
        await websocket_manager.handle_websocket(websocket)

    @app.get("/")
    async def root():
        """Root endpoint to display basic information about the API."""
        return {
            "name": APP_NAME,
            "description": APP_DESCRIPTION,
            "version": APP_VERSION,
            "endpoints": {
                "/projects": "List available projects",
                "/kb/{key}": "Assemble a project's knowledge base",
                "/push": "Push a knowledge base to ConvAI or render it to speech",
                "/tts": "Render a knowledge base to an MP3 file",
                "/realtime/{project}": "Bootstrap payload for a realtime session",
                "/stt": "Speech-to-text passthrough",
                "/convai-hook": "ConvAI knowledge base webhook receiver",
                "/diag": "Redacted configuration snapshot",
                "/health": "Health check endpoint",
                "/ws": "WebSocket proxy to the ElevenLabs ConvAI realtime endpoint",
            },
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring system status.

        Returns:
            dict: Service status, whether an API key is configured and the number of live sessions
        """
        return {
            "status": "healthy",
            "api_key_configured": bool(settings.api_key),
            "active_sessions": len(websocket_manager.active_sessions),
        }

    @app.get("/projects", response_model=List[ProjectSummary])
    async def list_projects():
        return store.list_projects()

    @app.get("/kb/{key}", response_model=KnowledgeBase)
    async def get_kb(key: str):
        return await store.assemble_kb(key)

    @app.post("/push")
    async def push(body: PushRequest, request: Request):
        """Push a project's knowledge base using the requested mode."""
        if not body.project or not body.mode:
            raise InvalidRequestError("project and mode required")
        result = await dispatcher.push(body.project, body.mode)
        if result.mode == PUSH_MODE_TTS and result.file.startswith(MEDIA_PREFIX):
            result = result.model_copy(update={"file": f"{base_url(request)}{result.file}"})
        return result.model_dump()

    @app.post("/tts")
    async def tts(body: TtsRequest, request: Request):
        if not body.project:
            raise InvalidRequestError("project required")
        file_name = await dispatcher.tts(body.project)
        return {"url": f"{base_url(request)}{MEDIA_PREFIX}{file_name}"}

    @app.get("/realtime/{project}", response_model=RealtimeSessionPayload)
    async def realtime_session(project: str, request: Request):
        """Return what a client needs to open a proxied realtime session for `project`.

        `ws` is this relay's own /ws endpoint, not the provider's: sessions go through
        the proxy so that credentials stay server-side.
        """
        kb = await store.assemble_kb(project)
        ws_base = base_url(request)
        if ws_base.startswith("https://"):
            ws_base = "wss://" + ws_base[len("https://"):]
        elif ws_base.startswith("http://"):
            ws_base = "ws://" + ws_base[len("http://"):]
        return RealtimeSessionPayload(
            ws=f"{ws_base}/ws",
            query=RealtimeQuery(model=settings.model_id, agent_id=settings.agent_id),
            initial_knowledge_base=kb,
            meta={"project": project},
        )

    @app.get("/diag")
    async def diag() -> Dict[str, Any]:
        """Redacted snapshot of the provider configuration."""
        return {
            "ELEVENLABS_BASE": settings.base_host,
            "have_API_KEY": bool(settings.api_key),
            "API_KEY_preview": redact(settings.api_key),
            "AGENT_ID": settings.agent_id,
            "MODEL": settings.model_id,
            "WEBHOOK_URL": settings.webhook_url,
            "have_WEBHOOK_SECRET": bool(settings.webhook_secret),
        }

    @app.post("/stt")
    async def speech_to_text(
        audio: Optional[UploadFile] = File(None),
        model_id: Optional[str] = Form(None),
    ):
        """Forward an uploaded recording to ElevenLabs speech-to-text."""
        if audio is None:
            raise InvalidRequestError("No audio file provided")
        content = await audio.read()
        logger.info(f"STT request: {audio.filename} ({len(content)} bytes, {audio.content_type})")
        return await client.speech_to_text(
            audio.filename or "audio.webm",
            content,
            audio.content_type or DEFAULT_AUDIO_MIME,
            model_id=model_id,
        )

    @app.post("/convai-hook")
    async def convai_hook(request: Request):
        """Receive a knowledge base webhook and attach it to the configured agent."""
        raw_body = await request.body()
        logger.info(f"ConvAI webhook received ({len(raw_body)} bytes)")
        try:
            update = await webhook_handler.handle(raw_body, request.headers)
        except UpstreamFetchError as e:
            logger.error(f"Knowledge base update failed: {e.message}")
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "knowledge_base_update_failed",
                    "message": e.message,
                },
            )
        return {
            "success": True,
            "message": "Knowledge base updated and associated with agent",
            "details": update.model_dump(),
        }

    return app


app = create_app()
websocket_manager = app.state.websocket_manager
