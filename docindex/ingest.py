"""API endpoints for document indexing and removal.

``POST /indexer/documents`` accepts the chunks of one parsed document and
indexes them into the global collection plus the board and user scoped
collections named in the request.  ``DELETE /indexer/documents/{file_id}``
removes the document's rows from the same set of collections.  Both
report one outcome per collection; a failure in one collection never
hides the others.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query, Request, Response

from docindex.errors import PartialInsertFailure
from docindex.models import (
    Chunk,
    CollectionOutcome,
    IndexRequest,
    IndexResponse,
    IndexResult,
    RemoveResponse,
)
from docindex.service import IndexService

log = logging.getLogger("docindex.api.ingest")

ingest_router = APIRouter(prefix="/indexer", tags=["indexer"])


def get_service(request: Request) -> IndexService:
    return request.app.state.service


def _overall(outcomes: List[CollectionOutcome], response: Response) -> str:
    failed = sum(1 for o in outcomes if o.status != "ok")
    if not failed:
        return "ok"
    if failed == len(outcomes):
        response.status_code = 500
        return "failed"
    response.status_code = 207
    return "partial"


def _index_outcome(name: str, outcome: Union[IndexResult, Exception]) -> CollectionOutcome:
    if isinstance(outcome, IndexResult):
        return CollectionOutcome(collection=name, status="ok", inserted=outcome.inserted)
    if isinstance(outcome, PartialInsertFailure):
        return CollectionOutcome(
            collection=name,
            status="failed",
            inserted=len(outcome.inserted_ids),
            error=str(outcome),
            failed_rows=outcome.failed,
        )
    return CollectionOutcome(collection=name, status="failed", error=f"{outcome.__class__.__name__}: {outcome}")


@ingest_router.post("/documents", response_model=IndexResponse)
async def index_document(
    payload: IndexRequest,
    response: Response,
    service: IndexService = Depends(get_service),
) -> IndexResponse:
    """Index the chunks of one document.

    ``file_id`` and, when given, ``user_id`` are stamped into every
    chunk's metadata before indexing.
    """
    chunks: List[Chunk] = []
    for c in payload.chunks:
        meta = dict(c.metadata)
        meta["file_id"] = payload.file_id
        if payload.user_id is not None:
            meta["user_id"] = [payload.user_id]
        chunks.append(Chunk(text=c.text, metadata=meta))

    names = service.target_collections(payload.board_id, payload.user_id)
    log.info(f"Indexing file_id={payload.file_id} ({len(chunks)} chunks) into {names}")
    results = await service.indexer.index_into_collections(names, chunks, payload.file_id)

    outcomes = [_index_outcome(name, results[name]) for name in names]
    dropped = next((r.dropped for r in results.values() if isinstance(r, IndexResult)), 0)
    status = _overall(outcomes, response)
    return IndexResponse(status=status, file_id=payload.file_id, dropped=dropped, collections=outcomes)


@ingest_router.delete("/documents/{file_id}", response_model=RemoveResponse)
async def remove_document(
    file_id: int,
    response: Response,
    board_id: Optional[int] = Query(None),
    user_id: Optional[int] = Query(None),
    include_artifacts: bool = Query(True),
    service: IndexService = Depends(get_service),
) -> RemoveResponse:
    """Remove a document's rows from its collections."""
    names = service.target_collections(board_id, user_id, include_artifacts=include_artifacts)
    results: Dict[str, Union[int, Exception]] = await service.maintenance.remove_from_collections(names, file_id)
    outcomes = []
    for name in names:
        outcome = results[name]
        if isinstance(outcome, Exception):
            outcomes.append(
                CollectionOutcome(collection=name, status="failed", error=f"{outcome.__class__.__name__}: {outcome}")
            )
        else:
            outcomes.append(CollectionOutcome(collection=name, status="ok", removed=outcome))
    status = _overall(outcomes, response) if outcomes else "ok"
    return RemoveResponse(status=status, file_id=file_id, collections=outcomes)
