"""Main application setup for the document indexing service.

This module constructs the FastAPI application, mounts the indexing and
search routers, maps engine errors to HTTP responses and exposes utility
endpoints for health checks and collection management.  All state lives
in the ``IndexService`` attached to ``app.state.service`` for the
lifetime of the application.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from docindex.collection_manager import CollectionState
from docindex.config import Settings, settings as default_settings
from docindex.errors import (
    ChunkValidationError,
    CollectionNotFound,
    DocIndexError,
    EmbeddingProviderError,
    PartialInsertFailure,
    SchemaInconsistency,
    SearchUnavailable,
)
from docindex.ingest import get_service, ingest_router
from docindex.query import query_router
from docindex.service import IndexService
from docindex.vector_store import StatusCode, VectorStoreError

log = logging.getLogger("docindex.api")

ERROR_STATUS = [
    (CollectionNotFound, 404),
    (ChunkValidationError, 422),
    (SchemaInconsistency, 409),
    (EmbeddingProviderError, 502),
    (SearchUnavailable, 503),
    (PartialInsertFailure, 500),
]


async def handle_engine_error(request: Request, exc: DocIndexError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    body: Dict[str, Any] = {"error": exc.__class__.__name__, "detail": str(exc)}
    if isinstance(exc, ChunkValidationError):
        body["errors"] = exc.errors
    if isinstance(exc, PartialInsertFailure):
        body["inserted_ids"] = exc.inserted_ids
        body["failed_rows"] = exc.failed
    log.error(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(status_code=status, content=body)


async def handle_store_error(request: Request, exc: VectorStoreError) -> JSONResponse:
    status = 400 if exc.code == StatusCode.ILLEGAL_ARGUMENT else 500
    log.error(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(status_code=status, content={"error": exc.code.name, "detail": exc.message})


def create_app(config: Optional[Settings] = None, service: Optional[IndexService] = None) -> FastAPI:
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or IndexService.from_settings(config)
        log.info(f"Vector store at {config.vector_store_uri}; embeddings {config.embed_provider}/{config.embed_model}")
        try:
            yield
        finally:
            await app.state.service.aclose()

    app = FastAPI(title="Document Indexing Service", version="1.0", lifespan=lifespan)
    app.add_exception_handler(DocIndexError, handle_engine_error)
    app.add_exception_handler(VectorStoreError, handle_store_error)
    app.include_router(ingest_router)
    app.include_router(query_router)

    @app.get("/health")
    def health() -> dict:
        """Return a simple health status."""
        return {"status": "ok"}

    @app.get("/indexer/collections")
    async def list_collections(svc: IndexService = Depends(get_service)) -> dict:
        """List collections with their lifecycle state."""
        names: List[str] = await asyncio.to_thread(svc.store.list_collections)
        states: Dict[str, CollectionState] = {name: await svc.collections.state(name) for name in names}
        return {"collections": [{"name": n, "state": s.value} for n, s in states.items()]}

    @app.post("/indexer/collections/{name}/release")
    async def release_collection(name: str, svc: IndexService = Depends(get_service)) -> dict:
        """Free serving memory for a collection; the next search reloads it."""
        await svc.collections.release(name)
        return {"collection": name, "state": CollectionState.RELEASED.value}

    return app


# Configure logging according to settings
logging.basicConfig(
    level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = create_app()
