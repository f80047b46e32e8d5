"""Pydantic models for engine data and API request/response payloads.

``Chunk`` and ``ChunkMetadata`` describe what callers hand to the
indexer; ``SearchHit`` is what the retrieval engine hands back.  The
remaining models wrap those for the HTTP layer.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docindex.schema import (
    CATEGORY_MAX_LENGTH,
    FILENAME_MAX_LENGTH,
    FILETYPE_MAX_LENGTH,
    INT32_MAX,
    INT32_MIN,
    INT64_MAX,
    INT64_MIN,
    TEXT_MAX_LENGTH,
    USER_ID_MAX_CAPACITY,
    utf8_max_length,
)

DEFAULT_CATEGORY = "unknown"

Int64 = Annotated[int, Field(ge=INT64_MIN, le=INT64_MAX)]
ChunkText = Annotated[str, utf8_max_length(TEXT_MAX_LENGTH)]


class Chunk(BaseModel):
    """One span of a parsed document, as produced by the external chunker."""
    text: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChunkMetadata(BaseModel):
    """Per-row metadata normalised to the collection layout.

    Unknown keys are rejected.  Absent, ``None`` or empty values fall back
    to the defaults so that ``category`` is never empty.
    """
    model_config = ConfigDict(extra="forbid")

    file_id: Int64
    filename: Annotated[str, utf8_max_length(FILENAME_MAX_LENGTH)] = ""
    filetype: Annotated[str, utf8_max_length(FILETYPE_MAX_LENGTH)] = ""
    page_number: int = Field(0, ge=INT32_MIN, le=INT32_MAX)
    category: Annotated[str, utf8_max_length(CATEGORY_MAX_LENGTH)] = DEFAULT_CATEGORY
    user_id: List[Int64] = Field(default_factory=list, max_length=USER_ID_MAX_CAPACITY)

    @field_validator("filename", "filetype", mode="before")
    @classmethod
    def _blank_string(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("page_number", mode="before")
    @classmethod
    def _default_page(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_CATEGORY
        return v

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_ids(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [u for u in v if u is not None]
        return [v]

    @field_validator("user_id")
    @classmethod
    def _unique_user_ids(cls, v: List[int]) -> List[int]:
        return list(dict.fromkeys(v))


class HitMetadata(BaseModel):
    filename: str
    page_number: int


class SearchHit(BaseModel):
    """A ranked search result with its provenance."""
    content: str
    metadata: HitMetadata
    id: int
    file_id: int
    category: str
    distance: float


class IndexResult(BaseModel):
    collection: str
    file_id: Optional[int] = None
    inserted_ids: List[int] = Field(default_factory=list)
    dropped: int = 0

    @property
    def inserted(self) -> int:
        return len(self.inserted_ids)


# ---------- API payloads ----------

class IndexRequest(BaseModel):
    file_id: int
    board_id: Optional[int] = None
    user_id: Optional[int] = None
    chunks: List[Chunk] = Field(..., min_length=1)


class CollectionOutcome(BaseModel):
    collection: str
    status: str
    inserted: int = 0
    removed: int = 0
    error: Optional[str] = None
    failed_rows: Optional[Dict[int, str]] = None


class IndexResponse(BaseModel):
    status: str
    file_id: int
    dropped: int = 0
    collections: List[CollectionOutcome]


class RemoveResponse(BaseModel):
    status: str
    file_id: int
    collections: List[CollectionOutcome]


class SearchResponse(BaseModel):
    collection: str
    results: List[SearchHit]
    sources: List[str]
