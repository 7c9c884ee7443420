"""FastAPI application relaying prompts to a hosted model over SSE."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .config import Settings, load_settings
from .errors import InvalidRequest, RelayError
from .models import Message, PromptRequest, ReferenceDoc, StreamMetadata
from .prompts import DEFAULT_INSTRUCTION, normalize_request, parse_references_param
from .relay import StreamRelay, TextStreamer
from .store import ConversationLog, new_session_id, utc_now_iso
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# -----------------------------
# Utilities
# -----------------------------
def _log_request(references: Sequence[ReferenceDoc], messages: Sequence[Message]) -> None:
    if references:
        logger.info("%d reference document(s) supplied", len(references))
        for i, ref in enumerate(references, 1):
            logger.info("[%d] %s (%s)", i, ref.title, ref.url)
    else:
        logger.info("No reference documents supplied")
    logger.debug("System prompt:\n%s", messages[0].content if messages else "")
    logger.info("Relaying %d message(s) upstream", len(messages))


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    upstream: Optional[TextStreamer] = None,
    log: Optional[ConversationLog] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or load_settings(config_path)

    # Services
    upstream = upstream or UpstreamClient(settings.upstream)
    log = log or ConversationLog(settings.storage.log_dir)
    instruction = settings.relay.system_prompt or DEFAULT_INSTRUCTION
    model_label = settings.upstream.display_model

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        aclose = getattr(upstream, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(title="Prompt Relay", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.server.cors_origins) or ["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.state.settings = settings
    app.state.upstream = upstream
    app.state.log = log

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return _error(exc.status_code, exc.message)

    async def relay_response(
        request: Request,
        prompt: Optional[str],
        messages: Optional[List[Message]],
        references: List[ReferenceDoc],
    ) -> StreamingResponse:
        normalized = normalize_request(prompt, messages, references, instruction)
        _log_request(normalized.references, normalized.messages)

        shown_refs: List[Dict[str, Any]] = [r.to_public() for r in normalized.references]
        if not shown_refs:
            shown_refs = [dict(r) for r in settings.relay.default_references]

        metadata = StreamMetadata(
            timestamp=utc_now_iso(),
            source=settings.relay.source,
            prompt=normalized.user_input,
            model=model_label,
            sessionId=new_session_id(),
            references=shown_refs,
        )
        relay = StreamRelay(
            upstream,
            metadata,
            normalized.messages,
            is_disconnected=request.is_disconnected,
        )
        await relay.start()

        def record() -> None:
            if relay.completed:
                log.record_exchange(metadata, relay.text)

        return StreamingResponse(
            relay.events(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(record),
        )

    async def guarded(coro) -> Any:
        try:
            return await coro
        except RelayError:
            raise
        except Exception:
            logger.exception("Error while starting the relay")
            return _error(500, "An error occurred while processing the request")

    @app.get("/")
    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "message": "Server is running"}

    @app.post("/api/streaming-data")
    async def streaming_data_post(request: Request, body: Optional[PromptRequest] = None):
        body = body or PromptRequest()
        return await guarded(
            relay_response(request, body.prompt, body.messages, body.references or [])
        )

    @app.get("/api/streaming-data")
    async def streaming_data_get(
        request: Request,
        prompt: Optional[str] = None,
        references: Optional[str] = None,
    ):
        if not prompt:
            raise InvalidRequest("Prompt is required")
        refs = parse_references_param(references)
        return await guarded(relay_response(request, prompt, None, refs))

    @app.get("/api/history")
    def history() -> Any:
        try:
            return log.list_recent(settings.storage.history_limit)
        except OSError as e:
            logger.error("Error retrieving history: %s", e)
            return _error(500, "Failed to retrieve conversation history")

    return app
