"""FastAPI HTTP API for mneme."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from mneme.config import Config
from mneme.engine import KnowledgeEngine
from mneme.exceptions import (
    MnemeError,
    NotFoundError,
    ProviderDisabledError,
    ProviderError,
    StorageError,
    ValidationError,
)
from mneme.log import setup_logging

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-ID"

_STATUS_BY_ERROR: list[tuple[type[MnemeError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ProviderDisabledError, 503),
    (ProviderError, 502),
    (StorageError, 500),
]


def status_for(exc: MnemeError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


# --- Request Models ---

class RememberRequest(BaseModel):
    text: str
    conversation_id: str = ""
    background: bool = False


class RecallRequest(BaseModel):
    query: str
    entity_type: str | None = None
    time_range: str | None = None
    limit: int = 10


class AddMemoryRequest(BaseModel):
    content: str
    type: str = "fact"
    category: str = ""
    importance: int = 5


class CreateEntityRequest(BaseModel):
    name: str
    type: str = "concept"
    description: str = ""
    importance: int = 5


class ForgetRequest(BaseModel):
    type: str
    id: str
    confirm: bool = False


class PathRequest(BaseModel):
    source: str
    target: str
    max_depth: int = Field(default=3, ge=1, le=10)


# --- App factory ---

_engine: KnowledgeEngine | None = None


def get_engine() -> KnowledgeEngine:
    if _engine is None:
        raise HTTPException(status_code=500, detail="Knowledge engine not initialized")
    return _engine


def create_app(
    data_dir: str | None = None,
    config: Config | None = None,
    engine: KnowledgeEngine | None = None,
    schedule_compaction: bool = False,
) -> FastAPI:
    global _engine
    config = config or (engine.config if engine is not None else Config())
    if data_dir:
        config.data_dir = Path(data_dir)
    setup_logging(config.logging)
    _engine = engine or KnowledgeEngine(config)
    default_user = config.api.default_user

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        task = None
        if schedule_compaction:
            task = asyncio.create_task(get_engine().compressor.schedule(stop_event=stop))
        yield
        stop.set()
        if task is not None:
            await task
        await get_engine().workers.drain()

    app = FastAPI(
        title="mneme Knowledge API",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Bearer token auth middleware
    token = config.api.bearer_token

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in ("/api/v1/health", "/docs", "/openapi.json"):
            return await call_next(request)
        if token:
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != token:
                return ORJSONResponse({"detail": "Unauthorized"}, status_code=401)
        return await call_next(request)

    @app.exception_handler(MnemeError)
    async def mneme_error_handler(request: Request, exc: MnemeError):
        status = status_for(exc)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return ORJSONResponse(
            {"detail": str(exc), "error": type(exc).__name__}, status_code=status
        )

    def user_id(request: Request) -> str:
        uid = request.headers.get(USER_HEADER, "").strip() or default_user
        if not uid:
            raise ValidationError(f"{USER_HEADER} header is required")
        return uid

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "mneme"}

    @app.post("/api/v1/remember")
    async def remember(req: RememberRequest, user: str = Depends(user_id),
                       engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        if req.background:
            engine.submit_extraction(user, req.text, req.conversation_id)
            return {"queued": True}
        return await engine.remember(user, req.text, conversation_id=req.conversation_id)

    @app.post("/api/v1/recall")
    async def recall(req: RecallRequest, user: str = Depends(user_id),
                     engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return await engine.recall(
            user, req.query, entity_type=req.entity_type,
            time_range=req.time_range, limit=req.limit,
        )

    @app.get("/api/v1/entities")
    async def list_entities(entity_type: str | None = None, limit: int = 20,
                            user: str = Depends(user_id),
                            engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.list_entities(user, entity_type=entity_type, limit=limit)

    @app.post("/api/v1/entities")
    async def create_entity(req: CreateEntityRequest, user: str = Depends(user_id),
                            engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.create_entity(
            user, req.name, type=req.type,
            description=req.description, importance=req.importance,
        )

    @app.get("/api/v1/entities/{name}")
    async def get_entity(name: str, user: str = Depends(user_id),
                         engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.get_entity(user, name)

    @app.post("/api/v1/memories")
    async def add_memory(req: AddMemoryRequest, user: str = Depends(user_id),
                         engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return await engine.add_memory(
            user, req.content, type=req.type,
            category=req.category, importance=req.importance,
        )

    @app.get("/api/v1/stats")
    async def stats(user: str = Depends(user_id),
                    engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.get_stats(user)

    @app.post("/api/v1/forget")
    async def forget(req: ForgetRequest, user: str = Depends(user_id),
                     engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.forget(user, req.type, req.id, confirm=req.confirm)

    @app.post("/api/v1/path")
    async def find_path(req: PathRequest, user: str = Depends(user_id),
                        engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return engine.find_path(user, req.source, req.target, max_depth=req.max_depth)

    @app.post("/api/v1/compact")
    async def compact(user: str = Depends(user_id),
                      engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return await engine.compact(user)

    @app.post("/api/v1/reindex")
    async def reindex(only_missing: bool = False, user: str = Depends(user_id),
                      engine: KnowledgeEngine = Depends(get_engine)) -> dict[str, Any]:
        return await engine.reindex(user, only_missing=only_missing)

    return app
