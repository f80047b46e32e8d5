"""Exception taxonomy for the indexing engine.

Every failure that crosses a component boundary is one of the classes
below.  Recoverable conditions (a missing collection during indexing)
are handled inside the component; everything else propagates to the
caller as an explicit failure.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class DocIndexError(Exception):
    """Base class for all engine errors."""


class CollectionNotFound(DocIndexError):
    def __init__(self, collection: str) -> None:
        super().__init__(f"Collection '{collection}' does not exist")
        self.collection = collection


class SchemaInconsistency(DocIndexError):
    """The collection exists with a field layout or index set we cannot use."""

    def __init__(self, collection: str, detail: str) -> None:
        super().__init__(f"Collection '{collection}' is inconsistent: {detail}")
        self.collection = collection
        self.detail = detail


class CollectionSetupError(SchemaInconsistency):
    """Collection creation stopped part-way, e.g. an index failed after the collection was created."""


class EmbeddingProviderError(DocIndexError):
    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class PartialInsertFailure(DocIndexError):
    """Some rows of a bulk insert were rejected by the store.

    ``inserted_ids`` are the ids of rows that were written; ``failed`` maps
    the position of each rejected row (in the submitted batch) to the
    store's reason.
    """

    def __init__(self, collection: str, inserted_ids: List[int], failed: Dict[int, str]) -> None:
        super().__init__(
            f"Insert into '{collection}' rejected {len(failed)} row(s), wrote {len(inserted_ids)}"
        )
        self.collection = collection
        self.inserted_ids = list(inserted_ids)
        self.failed = dict(failed)


class SearchUnavailable(DocIndexError):
    def __init__(self, collection: str, code: Optional[int] = None, reason: str = "") -> None:
        super().__init__(f"Search on '{collection}' unavailable (code={code}): {reason}")
        self.collection = collection
        self.code = code
        self.reason = reason


class ChunkValidationError(DocIndexError, ValueError):
    """Caller supplied chunks that do not fit the collection schema.

    ``errors`` maps the chunk position in the request to its problems.
    """

    def __init__(self, errors: Dict[int, List[str]]) -> None:
        summary = "; ".join(f"chunk {i}: {', '.join(msgs)}" for i, msgs in sorted(errors.items()))
        super().__init__(f"Invalid chunks: {summary}")
        self.errors = errors
