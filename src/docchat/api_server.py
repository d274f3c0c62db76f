"""
FastAPI service layer for the DocChat conversational RAG system.

Exposes POST /chat (streamed answer + source headers), GET /metrics and
GET /health.

Run with:
    uvicorn docchat.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from .auth import Authenticator
from .clients import ServiceClients, build_clients
from .errors import AuthError, PipelineError
from .metrics import MetricsCollector, metrics_collector
from .multiplexer import encode_body
from .observability import bind_request, get_logger
from .pipeline import PipelineOrchestrator, PipelineResult

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class ChatMessageIn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageIn] = Field(default_factory=list, description="Conversation so far, newest last")
    chat_id: str = Field(..., alias="chatId", description="Document id; also the vector index namespace")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def require_auth(request: Request) -> None:
    request.app.state.authenticator(request)


def _error_response(exc: PipelineError) -> Response:
    if isinstance(exc, AuthError):
        return Response(status_code=exc.status_code)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _stream_body(result: PipelineResult, started: float, metrics: MetricsCollector):
    stream = result.stream
    try:
        async with contextlib.aclosing(encode_body(stream)) as body:
            async for data in body:
                yield data
    finally:
        latency_ms = (time.perf_counter() - started) * 1000.0
        error = stream.error
        cancelled = isinstance(error, asyncio.CancelledError)
        metrics.record_request(
            latency_ms,
            success=stream.completed,
            error_kind="" if error is None or cancelled else getattr(error, "kind", type(error).__name__),
            sources=len(result.source_manifest),
            fragments=stream.fragments,
            streamed=not cancelled,
            cancelled=cancelled,
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    clients: ServiceClients | None = None,
    authenticator: Any = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the shared client handles once at startup unless injected."""
        if app.state.clients is None:
            app.state.clients = build_clients()
        if not app.state.clients.ready:
            logger.warning(
                "pipeline_not_ready",
                detail="LLM or vector index unavailable; POST /chat returns 503.",
            )
        yield  # Application is running.

    app = FastAPI(
        title="DocChat API",
        description="Conversational question answering over a single indexed document",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.clients = clients
    app.state.authenticator = authenticator or Authenticator()
    app.state.metrics = metrics or metrics_collector

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(_request: Request, exc: PipelineError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError):
        first = (exc.errors() or [{}])[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request body.")
        return JSONResponse({"error": f"{location}: {message}" if location else message}, status_code=400)

    @app.post("/chat", dependencies=[Depends(require_auth)])
    async def chat_endpoint(payload: ChatRequest, request: Request):
        """Answer the newest message about document ``chatId`` as a text stream."""
        clients = request.app.state.clients
        metrics: MetricsCollector = request.app.state.metrics
        if clients is None or not clients.ready:
            return JSONResponse(
                {"error": "Chat pipeline is not initialized. Ensure the LLM and vector index are available."},
                status_code=503,
            )

        bind_request(request_id=uuid.uuid4().hex[:12], chat_id=payload.chat_id)
        start = time.perf_counter()
        try:
            result = await PipelineOrchestrator(clients).run(payload.messages, payload.chat_id)
        except PipelineError as exc:
            metrics.record_request((time.perf_counter() - start) * 1000.0, success=False, error_kind=exc.kind)
            raise
        except Exception as exc:
            metrics.record_request((time.perf_counter() - start) * 1000.0, success=False, error_kind="internal")
            logger.exception("chat_request_failed")
            raise PipelineError(str(exc)) from exc

        return StreamingResponse(
            _stream_body(result, start, metrics),
            media_type="text/plain; charset=utf-8",
            headers=result.headers,
            background=BackgroundTask(result.stream.aclose),
        )

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        """Return aggregated service metrics."""
        return request.app.state.metrics.get_summary()

    @app.get("/health")
    async def health_endpoint(request: Request):
        clients = request.app.state.clients
        return {"status": "ok", "ready": bool(clients is not None and clients.ready)}

    return app


app = create_app()
