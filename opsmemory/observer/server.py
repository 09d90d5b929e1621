"""
Observer Server

FastAPI server that receives live meeting events and serves the documents
synthesized from them.

Endpoints:
- WS   /ws/observe?meetingId=...: event stream in, replies + broadcasts out
- POST /meetings/{meeting_id}/events: same events over plain HTTP
- GET  /meetings/{meeting_id}/documents/{kind}: current document
- GET  /meetings/{meeting_id}/documents/{kind}/versions[/{version}]
- POST /meetings/{meeting_id}/documents/{kind}/rollback | status | analyze
- GET  /meetings/{meeting_id}/session, POST .../session/{advance|pause|resume|toggle|complete}
- GET  /meetings/{meeting_id}/clarifications, POST /clarifications/{id}/{answer|skip}
- GET  /meetings/{meeting_id}/observations
- DELETE /meetings/{meeting_id}: cascade delete
- GET  /health, GET /stats
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from ..common.config import OpsMemoryConfig, ensure_directories, load_config
from ..common.errors import (
    ConfigurationError,
    NotFoundError,
    OpsMemoryError,
    StorageError,
    SynthesisError,
    WorkflowError,
)
from ..common.llm_client import LLMClient
from ..common.schemas import (
    ClarificationStatus,
    DocumentKind,
    DocumentStatus,
    InboundEvent,
    OutboundEvent,
)
from .broadcaster import Listener
from .document_store import DocumentStore
from .engine import ObservationEngine
from .rate_gate import Clock
from .screen_analyzer import ScreenAnalyzer
from .synthesizer import DocumentSynthesizer, TemplateLoader

logger = logging.getLogger("opsmemory.observer.server")


# Global state
config: Optional[OpsMemoryConfig] = None
engine: Optional[ObservationEngine] = None


def init_components(
    cfg: OpsMemoryConfig,
    llm: Optional[LLMClient] = None,
    store: Optional[DocumentStore] = None,
    clock: Clock = time.monotonic,
) -> ObservationEngine:
    """Build the engine and its collaborators and install them as server globals."""
    global config, engine

    config = cfg
    llm = llm or LLMClient.from_config(cfg.llm)
    if not llm.is_available:
        logger.warning("LLM provider %s not configured; captures will be answered with errors", cfg.llm.provider)

    if store is None:
        store = DocumentStore(Path(cfg.store.path).expanduser() if cfg.store.path else None)

    engine = ObservationEngine(
        analyzer=ScreenAnalyzer(llm, timeout=cfg.llm.timeout),
        synthesizer=DocumentSynthesizer(
            llm,
            TemplateLoader(Path(cfg.observer.templates_dir).expanduser() if cfg.observer.templates_dir else None),
            timeout=cfg.llm.timeout,
        ),
        store=store,
        config=cfg.observer,
        clock=clock,
    )
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ensure_directories()
    cfg = load_config()
    init_components(cfg)
    logger.info("Observer ready (provider: %s, store: %s)", cfg.llm.provider, cfg.store.path or "memory")

    yield

    logger.info("Observer shutting down")
    if engine is not None:
        await engine.shutdown()


app = FastAPI(
    title="OpsMemory Observer",
    description="Live meeting observation to versioned operating documents",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# Request Models & error mapping
# =============================================================================

class RollbackRequest(BaseModel):
    version: int


class StatusRequest(BaseModel):
    status: DocumentStatus


class AnswerRequest(BaseModel):
    answer: str


_STATUS_CODES = [
    (NotFoundError, 404),
    (WorkflowError, 409),
    (ConfigurationError, 503),
    (SynthesisError, 502),
    (StorageError, 500),
]


@app.exception_handler(OpsMemoryError)
async def opsmemory_error_handler(request: Request, exc: OpsMemoryError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _engine() -> ObservationEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


def _kind(kind: str) -> DocumentKind:
    try:
        return DocumentKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown document kind: {kind}")


# =============================================================================
# Event intake
# =============================================================================

async def _pump(websocket: WebSocket, listener: Listener) -> None:
    """Forward broadcasts for this connection's meeting until cancelled"""
    while True:
        event = await listener.next()
        await websocket.send_json(event.to_wire())


@app.websocket("/ws/observe")
async def observe_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    meeting_id = str(websocket.query_params.get("meetingId", "")).strip()
    if not meeting_id or engine is None:
        detail = "meetingId is required" if not meeting_id else "Engine not initialized"
        await websocket.send_json(OutboundEvent.error(detail).to_wire())
        await websocket.close(code=1008)
        return

    current = engine
    listener = current.connections.register(meeting_id)
    sender = asyncio.create_task(_pump(websocket, listener))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                event = InboundEvent.model_validate_json(raw)
            except ValidationError as e:
                await websocket.send_json(OutboundEvent.error(f"invalid event: {e.error_count()} errors").to_wire())
                continue

            event = event.model_copy(update={"meeting_id": meeting_id})
            for reply in await current.handle_event(event):
                await websocket.send_json(reply.to_wire())
    except WebSocketDisconnect:
        logger.debug("Listener disconnected from meeting %s", meeting_id)
    finally:
        current.connections.unregister(listener)
        sender.cancel()
        # retrieves a send failure instead of leaving it unobserved
        await asyncio.gather(sender, return_exceptions=True)


@app.post("/meetings/{meeting_id}/events")
async def post_event(meeting_id: str, event: InboundEvent):
    """Submit one event over HTTP; returns the replies the sender would get"""
    event = event.model_copy(update={"meeting_id": meeting_id})
    replies = await _engine().handle_event(event)
    return {"replies": [r.to_wire() for r in replies]}


# =============================================================================
# Documents
# =============================================================================

@app.get("/meetings/{meeting_id}/documents/{kind}")
async def get_document(meeting_id: str, kind: str):
    document = _engine().store.require_document(meeting_id, _kind(kind))
    return document.model_dump(mode="json")


@app.get("/meetings/{meeting_id}/documents/{kind}/versions")
async def list_versions(meeting_id: str, kind: str):
    store = _engine().store
    document = store.require_document(meeting_id, _kind(kind))
    versions = store.list_versions(document.id)
    return {
        "document_id": document.id,
        "current_version": document.version,
        "versions": [
            {
                "version": v.version,
                "change_summary": v.change_summary,
                "created_by": v.created_by,
                "created_at": v.created_at.isoformat(),
            }
            for v in versions
        ],
    }


@app.get("/meetings/{meeting_id}/documents/{kind}/versions/{version}")
async def get_version(meeting_id: str, kind: str, version: int):
    store = _engine().store
    document = store.require_document(meeting_id, _kind(kind))
    return store.get_version(document.id, version).model_dump(mode="json")


@app.post("/meetings/{meeting_id}/documents/{kind}/rollback")
async def rollback_document(meeting_id: str, kind: str, request: RollbackRequest):
    document = _engine().rollback(meeting_id, _kind(kind), request.version)
    return document.model_dump(mode="json")


@app.post("/meetings/{meeting_id}/documents/{kind}/status")
async def set_document_status(meeting_id: str, kind: str, request: StatusRequest):
    document = _engine().set_document_status(meeting_id, _kind(kind), request.status)
    return {"document_id": document.id, "status": document.status.value}


@app.post("/meetings/{meeting_id}/documents/{kind}/analyze")
async def analyze_document(meeting_id: str, kind: str):
    """Force a synthesis pass for one document"""
    version = await _engine().analyze(meeting_id, _kind(kind))
    if version is None:
        return {"status": "busy"}
    return {"status": "updated", "version": version.version, "change_summary": version.change_summary}


# =============================================================================
# Observation session workflow
# =============================================================================

@app.get("/meetings/{meeting_id}/session")
async def get_session(meeting_id: str):
    return _engine().workflow.require(meeting_id).model_dump(mode="json")


@app.post("/meetings/{meeting_id}/session/advance")
async def advance_session(meeting_id: str):
    session, version = await _engine().advance_phase(meeting_id)
    body = session.model_dump(mode="json")
    if version is not None:
        body["document_version"] = version.version
    return body


@app.post("/meetings/{meeting_id}/session/{action}")
async def change_session_status(meeting_id: str, action: str):
    workflow = _engine().workflow
    operations = {
        "pause": workflow.pause,
        "resume": workflow.resume,
        "toggle": workflow.toggle,
        "complete": workflow.complete,
    }
    if action not in operations:
        raise HTTPException(status_code=404, detail=f"Unknown session action: {action}")
    return operations[action](meeting_id).model_dump(mode="json")


# =============================================================================
# Clarifications & observations
# =============================================================================

@app.get("/meetings/{meeting_id}/clarifications")
async def list_clarifications(meeting_id: str, status: Optional[ClarificationStatus] = None):
    items = _engine().clarifications.list(meeting_id, status)
    return {"count": len(items), "items": [c.model_dump(mode="json") for c in items]}


@app.post("/clarifications/{clarification_id}/answer")
async def answer_clarification(clarification_id: str, request: AnswerRequest):
    return _engine().clarifications.answer(clarification_id, request.answer).model_dump(mode="json")


@app.post("/clarifications/{clarification_id}/skip")
async def skip_clarification(clarification_id: str):
    return _engine().clarifications.skip(clarification_id).model_dump(mode="json")


@app.get("/meetings/{meeting_id}/observations")
async def list_observations(meeting_id: str):
    items = _engine().store.list_observations(meeting_id)
    return {"count": len(items), "items": [o.model_dump(mode="json") for o in items]}


@app.delete("/meetings/{meeting_id}")
async def delete_meeting(meeting_id: str):
    removed = await _engine().delete_meeting(meeting_id)
    return {"status": "deleted", "meeting_id": meeting_id, "removed": removed}


# =============================================================================
# Health & stats
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "observer",
        "initialized": engine is not None,
        "llm_available": engine.analyzer.is_available if engine else False,
        "active_sessions": engine.sessions.active_count() if engine else 0,
    }


@app.get("/stats")
async def get_stats():
    """Get observer statistics"""
    stats = {
        "service": "observer",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if engine is not None:
        stats["store"] = engine.get_stats()
    return stats


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Observer server"""
    import uvicorn

    cfg = load_config()
    logger.info("Starting server on %s:%d", cfg.server.host, cfg.server.port)
    uvicorn.run(
        "opsmemory.observer.server:app",
        host=cfg.server.host,
        port=cfg.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
